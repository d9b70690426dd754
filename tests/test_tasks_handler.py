import base64
import importlib
import json
import sys

from botocore.exceptions import ClientError

from fakes import FakeTasksTable


def _load_handler(monkeypatch, *, table_name: str = "Tasks"):
    monkeypatch.setenv("TASKS_TABLE_NAME", table_name)
    monkeypatch.setenv("TASKS_SCHEMA_VERSION", "2026-03-01")
    monkeypatch.setenv("TASKS_IDENTITY_MODE", "unverified")
    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")
    import tasks_handler as mod
    from task_service import TaskService
    from task_store import TaskStore

    mod = importlib.reload(mod)
    table = FakeTasksTable()
    monkeypatch.setattr(mod, "_service", TaskService(TaskStore(table)))
    return mod, table


def _token(sub: str) -> str:
    payload = base64.urlsafe_b64encode(json.dumps({"sub": sub}).encode()).decode().rstrip("=")
    return f"eyJhbGciOiJub25lIn0.{payload}.sig"


def _event(
    *,
    method: str,
    path: str,
    sub: str | None = "user-1",
    body=None,
    qs: dict | None = None,
    raw_body: str | None = None,
    via_authorizer: bool = True,
):
    event = {
        "httpMethod": method,
        "path": path,
        "headers": {},
        "body": raw_body if raw_body is not None else (json.dumps(body) if body is not None else None),
        "queryStringParameters": qs or None,
        "requestContext": {"requestId": "req-1"},
    }
    if sub is not None:
        if via_authorizer:
            event["requestContext"]["authorizer"] = {"claims": {"sub": sub}}
        else:
            event["headers"]["Authorization"] = f"Bearer {_token(sub)}"
    return event


def _call(mod, event):
    out = mod.handler(event, None)
    body = json.loads(out["body"]) if out["body"] else None
    return int(out["statusCode"]), body


def test_create_returns_201_with_defaults(monkeypatch):
    mod, table = _load_handler(monkeypatch)
    status, body = _call(mod, _event(method="POST", path="/v1/tasks", body={"title": "Buy milk"}))

    assert status == 201
    task = body["task"]
    assert task["title"] == "Buy milk"
    assert task["priority"] == "medium"
    assert task["status"] == "pending"
    assert task["ownerId"] == "user-1"
    assert body["requestId"] == "req-1"
    assert body["schemaVersion"] == "2026-03-01"
    assert task["id"] in table.items


def test_missing_identity_is_401(monkeypatch):
    mod, table = _load_handler(monkeypatch)
    status, body = _call(mod, _event(method="POST", path="/v1/tasks", sub=None, body={"title": "x"}))
    assert status == 401
    assert body["errorCode"] == "UNAUTHORIZED"
    assert table.items == {}


def test_bearer_token_identity(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    status, body = _call(
        mod,
        _event(method="POST", path="/prod/v1/tasks", body={"title": "x"}, sub="user-7", via_authorizer=False),
    )
    assert status == 201
    assert body["task"]["ownerId"] == "user-7"


def test_validation_errors_are_400_with_details(monkeypatch):
    mod, table = _load_handler(monkeypatch)
    status, body = _call(mod, _event(method="POST", path="/v1/tasks", body={"title": "", "priority": "urgent"}))
    assert status == 400
    assert body["errorCode"] == "VALIDATION_FAILED"
    assert {d["field"] for d in body["details"]} == {"title", "priority"}
    assert table.items == {}


def test_invalid_json_body_is_400(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    status, body = _call(mod, _event(method="POST", path="/v1/tasks", raw_body="{not json"))
    assert status == 400
    assert body["errorCode"] == "INVALID_BODY"
    status, body = _call(mod, _event(method="POST", path="/v1/tasks"))
    assert status == 400
    assert body["errorCode"] == "INVALID_BODY"


def test_base64_body_is_decoded(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    event = _event(
        method="POST",
        path="/v1/tasks",
        raw_body=base64.b64encode(json.dumps({"title": "encoded"}).encode()).decode(),
    )
    event["isBase64Encoded"] = True
    status, body = _call(mod, event)
    assert status == 201
    assert body["task"]["title"] == "encoded"


def test_list_uses_pagination_contract(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    for i in range(3):
        _call(mod, _event(method="POST", path="/v1/tasks", body={"title": f"t{i}"}))

    status, body = _call(mod, _event(method="GET", path="/v1/tasks", qs={"limit": "2"}))
    assert status == 200
    assert body["limit"] == 2
    assert body["count"] == 2
    assert [t["title"] for t in body["items"]] == ["t2", "t1"]
    assert body["nextToken"]

    status, body = _call(mod, _event(method="GET", path="/v1/tasks", qs={"limit": "2", "nextToken": body["nextToken"]}))
    assert status == 200
    assert [t["title"] for t in body["items"]] == ["t0"]
    assert body["nextToken"] == ""


def test_list_clamps_limit(monkeypatch):
    mod, table = _load_handler(monkeypatch)
    status, body = _call(mod, _event(method="GET", path="/v1/tasks", qs={"limit": "500"}))
    assert status == 200
    assert body["limit"] == 100
    assert table.calls[-1][1]["Limit"] == 100


def test_list_rejects_invalid_next_token(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    status, body = _call(mod, _event(method="GET", path="/v1/tasks", qs={"nextToken": "%%%not-base64%%%"}))
    assert status == 400
    assert body["errorCode"] == "INVALID_NEXT_TOKEN"


def test_other_users_task_is_404(monkeypatch):
    mod, table = _load_handler(monkeypatch)
    _, created = _call(mod, _event(method="POST", path="/v1/tasks", body={"title": "private"}))
    task_id = created["task"]["id"]

    for method, body in (("GET", None), ("PATCH", {"title": "stolen"}), ("DELETE", None)):
        status, out = _call(mod, _event(method=method, path=f"/v1/tasks/{task_id}", sub="user-2", body=body))
        assert status == 404
        assert out["errorCode"] == "TASK_NOT_FOUND"
    assert table.items[task_id]["title"] == "private"


def test_get_update_delete_roundtrip(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    _, created = _call(mod, _event(method="POST", path="/v1/tasks", body={"title": "Buy milk", "category": "home"}))
    task_id = created["task"]["id"]

    status, body = _call(mod, _event(method="GET", path=f"/v1/tasks/{task_id}"))
    assert status == 200
    assert body["task"]["title"] == "Buy milk"

    status, body = _call(mod, _event(method="PUT", path=f"/v1/tasks/{task_id}", body={"status": "completed"}))
    assert status == 200
    assert body["task"]["status"] == "completed"
    assert body["task"]["category"] == "home"

    status, body = _call(mod, _event(method="DELETE", path=f"/v1/tasks/{task_id}"))
    assert status == 200
    assert body["task"]["id"] == task_id

    status, _ = _call(mod, _event(method="GET", path=f"/v1/tasks/{task_id}"))
    assert status == 404


def test_update_rejects_empty_and_immutable_patch(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    _, created = _call(mod, _event(method="POST", path="/v1/tasks", body={"title": "x"}))
    task_id = created["task"]["id"]

    status, body = _call(mod, _event(method="PATCH", path=f"/v1/tasks/{task_id}", body={}))
    assert status == 400
    assert body["errorCode"] == "VALIDATION_FAILED"

    status, body = _call(mod, _event(method="PATCH", path=f"/v1/tasks/{task_id}", body={"ownerId": "user-2"}))
    assert status == 400
    assert body["details"][0]["field"] == "ownerId"


def test_summary_route(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    _call(mod, _event(method="POST", path="/v1/tasks", body={"title": "a", "priority": "high"}))
    _call(mod, _event(method="POST", path="/v1/tasks", body={"title": "b", "status": "completed"}))

    status, body = _call(mod, _event(method="GET", path="/v1/tasks/summary"))
    assert status == 200
    assert body["total"] == 2
    assert body["high"] == 1
    assert body["completed"] == 1
    assert body["pending"] == 1


def test_unknown_route_and_method(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    status, body = _call(mod, _event(method="GET", path="/v1/other"))
    assert status == 404
    assert body["errorCode"] == "NOT_FOUND"

    status, body = _call(mod, _event(method="GET", path="/v1/tasks/a/b"))
    assert status == 404

    status, body = _call(mod, _event(method="DELETE", path="/v1/tasks"))
    assert status == 405
    assert body["errorCode"] == "METHOD_NOT_ALLOWED"


def test_preflight_needs_no_identity(monkeypatch):
    mod, _ = _load_handler(monkeypatch)
    out = mod.handler(_event(method="OPTIONS", path="/v1/tasks", sub=None), None)
    assert int(out["statusCode"]) == 204
    assert out["body"] == ""
    assert out["headers"]["access-control-allow-origin"] == "*"


def test_store_failure_is_500_and_logged(monkeypatch, capsys):
    mod, table = _load_handler(monkeypatch)

    def boom(**_kwargs):
        raise ClientError({"Error": {"Code": "InternalServerError", "Message": "down"}}, "PutItem")

    monkeypatch.setattr(table, "put_item", boom)
    status, body = _call(mod, _event(method="POST", path="/v1/tasks", body={"title": "x"}))
    assert status == 500
    assert body["errorCode"] == "STORE_ERROR"

    log = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert log["event"] == "task_tracker_tasks"
    assert log["outcome"] == "error"
    assert log["error"]["type"] == "ClientError"


def test_wide_event_log_has_no_body_or_token(monkeypatch, capsys):
    mod, _ = _load_handler(monkeypatch)
    _call(
        mod,
        _event(method="POST", path="/v1/tasks", body={"title": "secret title"}, sub="user-9", via_authorizer=False),
    )
    line = capsys.readouterr().out.strip().splitlines()[-1]
    log = json.loads(line)
    assert log["route"] == "create"
    assert log["status_code"] == 201
    assert log["principal"] == {"sub": "user-9"}
    assert log["outcome"] == "success"
    assert "secret title" not in line
    assert "Bearer" not in line


def test_missing_table_name_is_misconfigured(monkeypatch):
    mod, _ = _load_handler(monkeypatch, table_name="")
    status, body = _call(mod, _event(method="GET", path="/v1/tasks"))
    assert status == 500
    assert body["errorCode"] == "MISCONFIGURED"


class _Context:
    def __init__(self, remaining_ms: int):
        self.remaining_ms = remaining_ms

    def get_remaining_time_in_millis(self):
        return self.remaining_ms


def test_store_timeout_follows_invocation_deadline(monkeypatch):
    monkeypatch.setenv("TASKS_STORE_TIMEOUT_SECONDS", "5")
    mod, _ = _load_handler(monkeypatch)
    assert mod._store_timeout(None) is None
    assert mod._store_timeout(_Context(2500)) == 2.0
    assert mod._store_timeout(_Context(100)) == 0.001
    assert mod._store_timeout(_Context(60000)) == 5.0


def test_handler_passes_deadline_to_store(monkeypatch):
    from task_service import TaskService
    from task_store import TaskStore

    mod, _ = _load_handler(monkeypatch)
    table = FakeTasksTable()
    seen = []

    def tables(timeout):
        seen.append(timeout)
        return table

    monkeypatch.setattr(mod, "_service", TaskService(TaskStore(table, tables=tables)))
    out = mod.handler(_event(method="POST", path="/v1/tasks", body={"title": "Ship it"}), _Context(3000))
    assert out["statusCode"] == 201
    assert seen == [2.5]


def test_update_that_never_gets_a_newer_stamp_is_store_error(monkeypatch, capsys):
    mod, table = _load_handler(monkeypatch)
    _, created = _call(mod, _event(method="POST", path="/v1/tasks", body={"title": "x"}))
    task_id = created["task"]["id"]
    real_update = table.update_item

    def racing_update(**kwargs):
        table.items[task_id]["updatedAt"] = kwargs["ExpressionAttributeValues"][":updatedAt"]
        return real_update(**kwargs)

    monkeypatch.setattr(table, "update_item", racing_update)
    capsys.readouterr()
    status, body = _call(mod, _event(method="PATCH", path=f"/v1/tasks/{task_id}", body={"title": "y"}))
    assert status == 500
    assert body["errorCode"] == "STORE_ERROR"
    assert table.items[task_id]["title"] == "x"
    log = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert log["error"]["type"] == "StaleTimestampError"
