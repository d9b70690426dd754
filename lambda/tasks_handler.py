from __future__ import annotations

import base64
import json
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError

from identity import CognitoJwtVerifier
from identity import IdentityVerifier
from identity import UnverifiedClaimsVerifier
from identity import caller_identity
from task_service import TaskService
from task_service import page_limit
from task_store import DEFAULT_OWNER_INDEX
from task_store import InvalidCursorError
from task_store import StaleTimestampError
from task_store import TaskStore
from task_store import TimeoutTables
from task_validation import validate_create
from task_validation import validate_update

TASKS_TABLE_NAME = os.environ.get("TASKS_TABLE_NAME", "")
TASKS_OWNER_INDEX = os.environ.get("TASKS_OWNER_INDEX", DEFAULT_OWNER_INDEX)
SCHEMA_VERSION = os.environ.get("TASKS_SCHEMA_VERSION", "2026-03-01")
IDENTITY_MODE = os.environ.get("TASKS_IDENTITY_MODE", "jwks").strip().lower()
USER_POOL_ID = os.environ.get("USER_POOL_ID", "")
USER_POOL_CLIENT_ID = os.environ.get("USER_POOL_CLIENT_ID", "")
STORE_TIMEOUT_SECONDS = float(os.environ.get("TASKS_STORE_TIMEOUT_SECONDS", "5"))
STORE_MAX_ATTEMPTS = int(os.environ.get("TASKS_STORE_MAX_ATTEMPTS", "3"))
# Held back from the invocation deadline for building and logging the response.
RESPONSE_RESERVE_MS = 500

ROUTE_PREFIX = ["v1", "tasks"]
CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "content-type,authorization,x-amz-date,x-api-key,x-amz-security-token",
    "access-control-allow-methods": "GET,POST,PUT,PATCH,DELETE,OPTIONS",
}

_service: TaskService | None = None
_verifier: IdentityVerifier | None = None


def _aws_region() -> str:
    return str(os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or "").strip()


def _task_service() -> TaskService:
    global _service
    if _service is None:
        tables = TimeoutTables(
            TASKS_TABLE_NAME,
            region=_aws_region(),
            max_timeout_seconds=STORE_TIMEOUT_SECONDS,
            max_attempts=STORE_MAX_ATTEMPTS,
        )
        _service = TaskService(TaskStore(tables(), owner_index=TASKS_OWNER_INDEX, tables=tables))
    return _service


def _identity_verifier() -> IdentityVerifier | None:
    global _verifier
    if _verifier is None:
        if IDENTITY_MODE == "unverified":
            _verifier = UnverifiedClaimsVerifier()
        elif USER_POOL_ID and USER_POOL_CLIENT_ID:
            _verifier = CognitoJwtVerifier(
                user_pool_id=USER_POOL_ID,
                client_id=USER_POOL_CLIENT_ID,
                region=_aws_region(),
            )
    return _verifier


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _response(status_code: int, body: dict[str, Any] | None, request_id: str) -> dict[str, Any]:
    headers = {"content-type": "application/json", "cache-control": "no-store", **CORS_HEADERS}
    if body is None:
        return {"statusCode": int(status_code), "headers": headers, "body": ""}
    payload = dict(body)
    payload.setdefault("requestId", request_id)
    payload.setdefault("schemaVersion", SCHEMA_VERSION)
    return {"statusCode": int(status_code), "headers": headers, "body": json.dumps(payload)}


def _error(
    status_code: int,
    code: str,
    message: str,
    request_id: str,
    details: list[dict[str, str]] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"errorCode": code, "message": message}
    if details:
        body["details"] = details
    return _response(status_code, body, request_id)


def _request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if isinstance(rc, dict):
        rid = str(rc.get("requestId") or "").strip()
        if rid:
            return rid
    return str(uuid.uuid4())


def _parse_body(event: dict[str, Any]) -> tuple[Any, str | None]:
    raw = event.get("body")
    if raw is None:
        return None, "request body is required"
    if not isinstance(raw, str):
        return None, "request body must be a JSON object"
    if bool(event.get("isBase64Encoded")):
        try:
            raw = base64.b64decode(raw.encode("utf-8")).decode("utf-8")
        except Exception:
            return None, "request body base64 decode failed"
    if not raw.strip():
        return None, "request body is required"
    try:
        return json.loads(raw), None
    except Exception:
        return None, "request body must be valid JSON"


def _path_segments(event: dict[str, Any]) -> list[str]:
    p = str(event.get("path") or "").strip()
    segments = [s for s in p.split("/") if s]
    # Tolerate stage or custom-domain base path prefixes.
    for i in range(len(segments) - 1):
        if segments[i : i + 2] == ROUTE_PREFIX:
            return segments[i:]
    return segments


def _query_param(event: dict[str, Any], key: str) -> str:
    qs = event.get("queryStringParameters") or {}
    if not isinstance(qs, dict):
        return ""
    val = qs.get(key)
    return str(val).strip() if val is not None else ""


def _create_task(event: dict[str, Any], request_id: str, owner_id: str, timeout: float | None) -> dict[str, Any]:
    data, err = _parse_body(event)
    if err:
        return _error(400, "INVALID_BODY", err, request_id)
    value, errors = validate_create(data)
    if errors:
        return _error(400, "VALIDATION_FAILED", "validation failed", request_id, details=errors)
    assert value is not None
    task = _task_service().create(value, owner_id, timeout=timeout)
    return _response(201, {"task": task.to_json()}, request_id)


def _list_tasks(event: dict[str, Any], request_id: str, owner_id: str, timeout: float | None) -> dict[str, Any]:
    limit = page_limit(_query_param(event, "limit"))
    try:
        page = _task_service().list(
            owner_id,
            limit=limit,
            cursor=_query_param(event, "nextToken") or None,
            timeout=timeout,
        )
    except InvalidCursorError:
        return _error(400, "INVALID_NEXT_TOKEN", "invalid nextToken", request_id)
    return _response(
        200,
        {
            "items": [t.to_json() for t in page.items],
            "count": page.count,
            "limit": limit,
            "nextToken": page.cursor or "",
        },
        request_id,
    )


def _task_summary(request_id: str, owner_id: str, timeout: float | None) -> dict[str, Any]:
    return _response(200, _task_service().summary(owner_id, timeout=timeout), request_id)


def _get_task(request_id: str, owner_id: str, task_id: str, timeout: float | None) -> dict[str, Any]:
    task = _task_service().get(task_id, owner_id, timeout=timeout)
    if task is None:
        return _error(404, "TASK_NOT_FOUND", f"task not found: {task_id}", request_id)
    return _response(200, {"task": task.to_json()}, request_id)


def _update_task(
    event: dict[str, Any],
    request_id: str,
    owner_id: str,
    task_id: str,
    timeout: float | None,
) -> dict[str, Any]:
    data, err = _parse_body(event)
    if err:
        return _error(400, "INVALID_BODY", err, request_id)
    patch, errors = validate_update(data)
    if errors:
        return _error(400, "VALIDATION_FAILED", "validation failed", request_id, details=errors)
    assert patch is not None
    task = _task_service().update(task_id, owner_id, patch, timeout=timeout)
    if task is None:
        return _error(404, "TASK_NOT_FOUND", f"task not found: {task_id}", request_id)
    return _response(200, {"task": task.to_json()}, request_id)


def _delete_task(request_id: str, owner_id: str, task_id: str, timeout: float | None) -> dict[str, Any]:
    task = _task_service().delete(task_id, owner_id, timeout=timeout)
    if task is None:
        return _error(404, "TASK_NOT_FOUND", f"task not found: {task_id}", request_id)
    return _response(200, {"task": task.to_json()}, request_id)


def _route(
    event: dict[str, Any],
    request_id: str,
    wide_event: dict[str, Any],
    timeout: float | None = None,
) -> dict[str, Any]:
    method = str(event.get("httpMethod") or "").upper()
    segments = _path_segments(event)
    wide_event["method"] = method

    if segments[:2] != ROUTE_PREFIX or len(segments) > 3:
        wide_event["route"] = "unknown"
        return _error(404, "NOT_FOUND", f"route not found: {method} {event.get('path') or ''}", request_id)

    if method == "OPTIONS":
        wide_event["route"] = "preflight"
        return _response(204, None, request_id)

    owner_id = caller_identity(event, _identity_verifier())
    wide_event["principal"] = {"sub": owner_id}
    if not owner_id:
        wide_event["outcome"] = "unauthorized"
        return _error(401, "UNAUTHORIZED", "valid authentication token required", request_id)

    # /v1/tasks
    if len(segments) == 2:
        if method == "POST":
            wide_event["route"] = "create"
            return _create_task(event, request_id, owner_id, timeout)
        if method == "GET":
            wide_event["route"] = "list"
            return _list_tasks(event, request_id, owner_id, timeout)

    # /v1/tasks/summary
    elif segments[2] == "summary" and method == "GET":
        wide_event["route"] = "summary"
        return _task_summary(request_id, owner_id, timeout)

    # /v1/tasks/{id}
    else:
        task_id = segments[2]
        wide_event["task_id"] = task_id
        if method == "GET":
            wide_event["route"] = "get"
            return _get_task(request_id, owner_id, task_id, timeout)
        if method in {"PUT", "PATCH"}:
            wide_event["route"] = "update"
            return _update_task(event, request_id, owner_id, task_id, timeout)
        if method == "DELETE":
            wide_event["route"] = "delete"
            return _delete_task(request_id, owner_id, task_id, timeout)

    wide_event["route"] = "unknown"
    return _error(405, "METHOD_NOT_ALLOWED", f"method not allowed: {method}", request_id)


def _store_timeout(context: Any) -> float | None:
    remaining = getattr(context, "get_remaining_time_in_millis", None)
    if not callable(remaining):
        return None
    budget_ms = int(remaining()) - RESPONSE_RESERVE_MS
    return min(STORE_TIMEOUT_SECONDS, max(budget_ms, 1) / 1000)


def _outcome(status_code: int) -> str:
    if status_code < 400:
        return "success"
    if status_code == 401:
        return "unauthorized"
    if status_code == 404:
        return "not_found"
    if status_code < 500:
        return "invalid_request"
    return "error"


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _request_id(event)
    wide_event: dict[str, Any] = {
        "event": "task_tracker_tasks",
        "schema_version": SCHEMA_VERSION,
        "request_id": request_id,
        "ts": _now_iso(),
    }
    out: dict[str, Any] = {}

    try:
        if not TASKS_TABLE_NAME:
            wide_event["outcome"] = "misconfigured"
            out = _error(500, "MISCONFIGURED", "TASKS_TABLE_NAME is required", request_id)
            return out
        out = _route(event, request_id, wide_event, _store_timeout(context))
        return out
    except (ClientError, BotoCoreError, StaleTimestampError) as e:
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
        out = _error(500, "STORE_ERROR", "task store request failed", request_id)
        return out
    except Exception as e:
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
        out = _error(500, "INTERNAL_ERROR", "internal error", request_id)
        return out
    finally:
        status_code = int(out.get("statusCode") or 500)
        wide_event["status_code"] = status_code
        wide_event.setdefault("outcome", _outcome(status_code))
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        # Never log request bodies or tokens.
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
