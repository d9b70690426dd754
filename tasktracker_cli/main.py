from __future__ import annotations

import sys
from datetime import datetime, timezone
from typing import Any

import click
import typer

from . import __version__
from .api_client import api_request
from .cli_shared import (
    SESSION_KIND,
    TASKTRACKER_API_URL,
    GlobalOpts,
    OpError,
    UsageError,
    _env_or_none,
    _jwt_payload,
    _load_session,
    _parse_iso8601,
    _print_json,
    _require_str,
    _rich_error,
    _session_id_token,
    _session_path,
    _write_secure_json,
)

app = typer.Typer(
    name="tasktracker",
    help="Personal task tracker client.",
    no_args_is_help=True,
    add_completion=False,
)
auth_app = typer.Typer(help="Register, sign in and inspect the current user", no_args_is_help=True)
tasks_app = typer.Typer(help="Create, list, update and delete your tasks", no_args_is_help=True)

TASK_STATUSES = ("pending", "in-progress", "completed")
TASK_PRIORITIES = ("low", "medium", "high")
app.add_typer(auth_app, name="auth")
app.add_typer(tasks_app, name="tasks")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"tasktracker {__version__}")
        raise typer.Exit(code=0)


@app.callback()
def app_callback(
    ctx: typer.Context,
    api_url: str | None = typer.Option(None, "--api-url", help=f"API base URL (or {TASKTRACKER_API_URL})"),
    session_file: str | None = typer.Option(None, "--session-file", help="Path to the saved session"),
    json_output: bool = typer.Option(False, "--json", help="Emit raw JSON API responses"),
    pretty: bool = typer.Option(False, "--pretty", help="Indent JSON output"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    del version
    ctx.obj = GlobalOpts(
        api_url=str(api_url or _env_or_none(TASKTRACKER_API_URL) or "").strip(),
        session_path=_session_path(session_file),
        json_output=bool(json_output),
        pretty=bool(pretty),
    )


def _g(ctx: typer.Context) -> GlobalOpts:
    obj = ctx.find_root().obj
    if not isinstance(obj, GlobalOpts):
        raise UsageError("internal error: global options missing")
    return obj


def _api_url(g: GlobalOpts) -> str:
    if g.api_url:
        return g.api_url
    if g.session_path.exists():
        saved = str(_load_session(g.session_path).get("apiUrl") or "").strip()
        if saved:
            return saved
    return _require_str(None, "API URL", hint=f"pass --api-url or set {TASKTRACKER_API_URL}")


def _authed_request(g: GlobalOpts, **kwargs: Any) -> dict[str, Any]:
    return api_request(api_url=_api_url(g), id_token=_session_id_token(g.session_path), **kwargs)


def _cell(value: Any) -> str:
    text = str(value or "").strip()
    return text or "-"


def _local_short_timestamp(value: Any) -> str:
    raw = str(value or "").strip()
    dt = _parse_iso8601(raw)
    if dt is None:
        return raw or "-"
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def _print_table(*, headers: list[str], rows: list[list[str]], empty_message: str) -> None:
    if not rows:
        sys.stdout.write(f"{empty_message}\n")
        return
    widths: list[int] = [len(h) for h in headers]
    for row in rows:
        for i, val in enumerate(row):
            widths[i] = max(widths[i], len(val))
    sys.stdout.write("  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)) + "\n")
    sys.stdout.write("  ".join("-" * widths[i] for i in range(len(headers))) + "\n")
    for row in rows:
        sys.stdout.write("  ".join(row[i].ljust(widths[i]) for i in range(len(headers))) + "\n")


def _print_task(task: dict[str, Any]) -> None:
    for label, key in (
        ("id", "id"),
        ("title", "title"),
        ("status", "status"),
        ("priority", "priority"),
        ("category", "category"),
        ("due", "dueDate"),
        ("description", "description"),
    ):
        sys.stdout.write(f"{label}: {_cell(task.get(key))}\n")
    sys.stdout.write(f"created: {_local_short_timestamp(task.get('createdAt'))}\n")
    sys.stdout.write(f"updated: {_local_short_timestamp(task.get('updatedAt'))}\n")


def _task_rows(items: list[Any]) -> list[list[str]]:
    rows: list[list[str]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        rows.append(
            [
                _cell(item.get("id")),
                _cell(item.get("status")),
                _cell(item.get("priority")),
                _cell(item.get("dueDate")),
                _cell(item.get("category")),
                _cell(item.get("title")),
            ]
        )
    return rows


def _patch_from_options(**options: Any) -> dict[str, Any]:
    patch = {k: v for k, v in options.items() if v is not None}
    if patch.get("dueDate") == "":
        patch["dueDate"] = None
    return patch


@auth_app.command("register", help="Create an account.")
def auth_register(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", help="Email address (used to sign in)"),
    name: str = typer.Option(..., "--name", help="Display name"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True, confirmation_prompt=True),
) -> None:
    g = _g(ctx)
    out = api_request(
        method="POST",
        api_url=_api_url(g),
        path="/auth/register",
        body_obj={"email": email, "name": name, "password": password},
    )
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return
    user = out.get("user") if isinstance(out.get("user"), dict) else {}
    sys.stdout.write(f"registered {_cell(user.get('email'))} id={_cell(user.get('id'))}\n")


@auth_app.command("login", help="Sign in and save the session locally.")
def auth_login(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", help="Email address"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
) -> None:
    g = _g(ctx)
    api_url = _api_url(g)
    out = api_request(
        method="POST",
        api_url=api_url,
        path="/auth/login",
        body_obj={"email": email, "password": password},
    )
    if out.get("challengeName"):
        raise OpError(f"sign-in requires an additional challenge: {out.get('challengeName')}")
    tokens = out.get("tokens") if isinstance(out.get("tokens"), dict) else {}
    id_token = str(tokens.get("idToken") or "")
    if not id_token:
        raise OpError("login response did not include an idToken")
    claims = _jwt_payload(id_token)
    _write_secure_json(
        path=g.session_path,
        obj={
            "kind": SESSION_KIND,
            "apiUrl": api_url,
            "email": email,
            "sub": str(claims.get("sub") or ""),
            "savedAt": datetime.now(timezone.utc).isoformat(),
            "tokens": tokens,
        },
    )
    if g.json_output:
        _print_json({"kind": "tasktracker.login.v1", "sessionPath": str(g.session_path)}, pretty=g.pretty)
        return
    sys.stdout.write(f"logged in as {email}; session saved to {g.session_path}\n")


@auth_app.command("whoami", help="Show the signed-in user.")
def auth_whoami(ctx: typer.Context) -> None:
    g = _g(ctx)
    out = _authed_request(g, method="GET", path="/auth/me")
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return
    user = out.get("user") if isinstance(out.get("user"), dict) else {}
    sys.stdout.write(f"{_cell(user.get('name'))} <{_cell(user.get('email'))}> id={_cell(user.get('id'))}\n")


@auth_app.command("logout", help="Forget the saved session.")
def auth_logout(ctx: typer.Context) -> None:
    g = _g(ctx)
    existed = g.session_path.exists()
    if existed:
        g.session_path.unlink()
    sys.stdout.write("logged out\n" if existed else "no saved session\n")


@tasks_app.command("add", help="Create a task.")
def tasks_add(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Task title"),
    description: str | None = typer.Option(None, "--description", "-d"),
    priority: str | None = typer.Option(None, "--priority", "-p", help="low|medium|high"),
    status: str | None = typer.Option(None, "--status", "-s", help="pending|in-progress|completed"),
    due: str | None = typer.Option(None, "--due", help="Due date (YYYY-MM-DD)"),
    category: str | None = typer.Option(None, "--category", "-c"),
) -> None:
    g = _g(ctx)
    body = _patch_from_options(
        title=title,
        description=description,
        priority=priority,
        status=status,
        dueDate=due,
        category=category,
    )
    out = _authed_request(g, method="POST", path="/tasks", body_obj=body)
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(f"created task {_cell(task.get('id'))} [{_cell(task.get('status'))}] {_cell(task.get('title'))}\n")


def _choice_or_none(value: str | None, *, option: str, choices: tuple[str, ...]) -> str | None:
    if value is None:
        return None
    v = value.strip().lower()
    if v not in choices:
        raise UsageError(f"{option} must be one of: {', '.join(choices)}")
    return v


def _matches_filters(item: Any, *, status: str | None, priority: str | None, search: str) -> bool:
    if not isinstance(item, dict):
        return False
    if status and item.get("status") != status:
        return False
    if priority and item.get("priority") != priority:
        return False
    if search:
        haystack = " ".join(str(item.get(k) or "") for k in ("title", "description", "category")).lower()
        return search in haystack
    return True


@tasks_app.command("list", help="List your tasks, newest first.")
def tasks_list(
    ctx: typer.Context,
    limit: int | None = typer.Option(None, "--limit", help="Page size (default 20, max 100)"),
    next_token: str | None = typer.Option(None, "--next-token", help="Pagination token from a prior page"),
    all_pages: bool = typer.Option(False, "--all", help="Follow pagination until the last page"),
    status: str | None = typer.Option(None, "--status", "-s", help="Only tasks with this status"),
    priority: str | None = typer.Option(None, "--priority", "-p", help="Only tasks with this priority"),
    search: str | None = typer.Option(None, "--search", help="Case-insensitive match on title, description or category"),
) -> None:
    g = _g(ctx)
    status = _choice_or_none(status, option="--status", choices=TASK_STATUSES)
    priority = _choice_or_none(priority, option="--priority", choices=TASK_PRIORITIES)
    needle = (search or "").strip().lower()
    filtered = bool(status or priority or needle)
    items: list[Any] = []
    token = next_token or ""
    while True:
        out = _authed_request(g, method="GET", path="/tasks", query={"limit": limit, "nextToken": token})
        page_items = out.get("items")
        if isinstance(page_items, list):
            if filtered:
                page_items = [i for i in page_items if _matches_filters(i, status=status, priority=priority, search=needle)]
            items.extend(page_items)
        token = str(out.get("nextToken") or "")
        if not all_pages or not token:
            break

    if g.json_output:
        _print_json({"items": items, "count": len(items), "nextToken": token}, pretty=g.pretty)
        return
    _print_table(
        headers=["ID", "STATUS", "PRIORITY", "DUE", "CATEGORY", "TITLE"],
        rows=_task_rows(items),
        empty_message="No tasks.",
    )
    sys.stdout.write(f"items: {len(items)}\n")
    if token:
        sys.stdout.write(f"next-token: {token}\n")
        sys.stdout.write(f"rerun with: tasktracker tasks list --next-token '{token}'\n")


@tasks_app.command("show", help="Show one task.")
def tasks_show(ctx: typer.Context, task_id: str = typer.Argument(..., help="Task ID")) -> None:
    g = _g(ctx)
    out = _authed_request(g, method="GET", path=f"/tasks/{task_id}")
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return
    _print_task(out.get("task") if isinstance(out.get("task"), dict) else {})


@tasks_app.command("update", help="Change fields of a task. Only the given fields are sent.")
def tasks_update(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task ID"),
    title: str | None = typer.Option(None, "--title"),
    description: str | None = typer.Option(None, "--description", "-d"),
    priority: str | None = typer.Option(None, "--priority", "-p", help="low|medium|high"),
    status: str | None = typer.Option(None, "--status", "-s", help="pending|in-progress|completed"),
    due: str | None = typer.Option(None, "--due", help="Due date (YYYY-MM-DD); empty string clears it"),
    category: str | None = typer.Option(None, "--category", "-c"),
) -> None:
    g = _g(ctx)
    patch = _patch_from_options(
        title=title,
        description=description,
        priority=priority,
        status=status,
        dueDate=due,
        category=category,
    )
    if not patch:
        raise UsageError("provide at least one field to update")
    out = _authed_request(g, method="PATCH", path=f"/tasks/{task_id}", body_obj=patch)
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(f"updated task {_cell(task.get('id'))} fields={','.join(sorted(patch))}\n")


@tasks_app.command("done", help="Mark a task completed.")
def tasks_done(ctx: typer.Context, task_id: str = typer.Argument(..., help="Task ID")) -> None:
    g = _g(ctx)
    out = _authed_request(g, method="PATCH", path=f"/tasks/{task_id}", body_obj={"status": "completed"})
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(f"completed task {_cell(task.get('id'))} {_cell(task.get('title'))}\n")


@tasks_app.command("rm", help="Delete a task.")
def tasks_rm(ctx: typer.Context, task_id: str = typer.Argument(..., help="Task ID")) -> None:
    g = _g(ctx)
    out = _authed_request(g, method="DELETE", path=f"/tasks/{task_id}")
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return
    task = out.get("task") if isinstance(out.get("task"), dict) else {}
    sys.stdout.write(f"deleted task {_cell(task.get('id'))} {_cell(task.get('title'))}\n")


@tasks_app.command("summary", help="Counts by status and priority.")
def tasks_summary(ctx: typer.Context) -> None:
    g = _g(ctx)
    out = _authed_request(g, method="GET", path="/tasks/summary")
    if g.json_output:
        _print_json(out, pretty=g.pretty)
        return
    rows = [
        [label, str(int(out.get(key) or 0))]
        for label, key in (
            ("total", "total"),
            ("pending", "pending"),
            ("in-progress", "inProgress"),
            ("completed", "completed"),
            ("high", "high"),
            ("medium", "medium"),
            ("low", "low"),
        )
    ]
    _print_table(headers=["BUCKET", "COUNT"], rows=rows, empty_message="No tasks.")


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        result = app(args=argv, prog_name="tasktracker", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.exceptions.Abort:
        _rich_error("aborted")
        return 1
    except click.ClickException as e:
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _rich_error(str(e))
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
