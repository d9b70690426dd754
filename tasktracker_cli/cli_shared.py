from __future__ import annotations

import base64
import json
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rich.console import Console


class TaskTrackerError(Exception):
    pass


class UsageError(TaskTrackerError):
    pass


class OpError(TaskTrackerError):
    pass


TASKTRACKER_API_URL = "TASKTRACKER_API_URL"
TASKTRACKER_SESSION_FILE = "TASKTRACKER_SESSION_FILE"
DEFAULT_SESSION_FILE = "~/.config/tasktracker/session.json"
SESSION_KIND = "tasktracker.session.v1"

_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}", highlight=False)


@dataclass(frozen=True)
class GlobalOpts:
    api_url: str
    session_path: Path
    json_output: bool = False
    pretty: bool = False


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _require_str(val: str | None, name: str, *, hint: str) -> str:
    v = (val or "").strip()
    if not v:
        raise UsageError(f"missing {name} ({hint})")
    return v


def _session_path(raw: str | None) -> Path:
    return Path(raw or _env_or_none(TASKTRACKER_SESSION_FILE) or DEFAULT_SESSION_FILE).expanduser()


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _jwt_payload(token: str) -> dict[str, Any]:
    parts = (token or "").split(".")
    if len(parts) < 2:
        raise OpError("invalid JWT: expected at least 2 dot-separated parts")
    payload_b64 = parts[1]
    payload_b64 += "=" * (-len(payload_b64) % 4)
    try:
        raw = base64.urlsafe_b64decode(payload_b64.encode("utf-8"))
        val = json.loads(raw.decode("utf-8"))
    except Exception as e:
        raise OpError(f"invalid JWT payload: {e}") from e
    if not isinstance(val, dict):
        raise OpError("invalid JWT payload: expected JSON object")
    return val


def _parse_iso8601(val: str) -> datetime | None:
    s = (val or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _write_secure_json(*, path: Path, obj: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        raise OpError(f"failed to apply 0600 permissions to {path}: {e}") from e


def _load_session(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise UsageError(f"not logged in (no session at {path}; run 'tasktracker auth login')")
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise UsageError(f"invalid session file {path}: {e}") from e
    if not isinstance(doc, dict) or doc.get("kind") != SESSION_KIND:
        raise UsageError(f"invalid session file {path}: unexpected kind")
    return doc


def _session_id_token(path: Path) -> str:
    doc = _load_session(path)
    tokens = doc.get("tokens") if isinstance(doc.get("tokens"), dict) else {}
    id_token = str(tokens.get("idToken") or "").strip()
    if not id_token:
        raise UsageError(f"session at {path} has no idToken; run 'tasktracker auth login'")
    exp = _jwt_payload(id_token).get("exp")
    if isinstance(exp, (int, float)) and exp <= datetime.now(timezone.utc).timestamp():
        raise UsageError("session expired; run 'tasktracker auth login'")
    return id_token
