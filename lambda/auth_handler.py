from __future__ import annotations

import json
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.exceptions import ClientError

from identity import authorizer_claims
from task_validation import validate_login
from task_validation import validate_register

USER_POOL_ID = os.environ.get("USER_POOL_ID", "")
USER_POOL_CLIENT_ID = os.environ.get("USER_POOL_CLIENT_ID", "")
SCHEMA_VERSION = os.environ.get("AUTH_SCHEMA_VERSION", "2026-03-01")

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "content-type,authorization,x-amz-date,x-api-key,x-amz-security-token",
    "access-control-allow-methods": "GET,POST,OPTIONS",
}

# Cognito error code -> (status, errorCode, message)
REGISTER_ERRORS = {
    "UsernameExistsException": (409, "USER_EXISTS", "user with this email already exists"),
    "InvalidPasswordException": (400, "INVALID_PASSWORD", "password does not meet requirements"),
}
LOGIN_ERRORS = {
    "NotAuthorizedException": (401, "UNAUTHORIZED", "invalid email or password"),
    "UserNotFoundException": (404, "USER_NOT_FOUND", "user not found"),
    "UserNotConfirmedException": (403, "USER_NOT_CONFIRMED", "user account not confirmed"),
}

_cognito_client: Any | None = None


def _aws_region() -> str | None:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")


def _cognito() -> Any:
    global _cognito_client
    if _cognito_client is None:
        _cognito_client = boto3.client("cognito-idp", region_name=_aws_region())
    return _cognito_client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _response(status_code: int, body: dict[str, Any], request_id: str) -> dict[str, Any]:
    payload = dict(body)
    payload.setdefault("requestId", request_id)
    payload.setdefault("schemaVersion", SCHEMA_VERSION)
    return {
        "statusCode": int(status_code),
        "headers": {"content-type": "application/json", "cache-control": "no-store", **CORS_HEADERS},
        "body": json.dumps(payload, default=str),
    }


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


def _parse_json_body(event: dict[str, Any]) -> dict[str, Any] | None:
    raw = event.get("body")
    if raw is None or not str(raw).strip():
        return None
    try:
        parsed = json.loads(str(raw))
    except Exception:
        return None
    return parsed if isinstance(parsed, dict) else None


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code") or "")


def _attr(attributes: list[dict[str, Any]] | None, name: str) -> str:
    for a in attributes or []:
        if isinstance(a, dict) and a.get("Name") == name:
            return str(a.get("Value") or "")
    return ""


def _register(body: dict[str, Any], request_id: str, wide_event: dict[str, Any]) -> dict[str, Any]:
    value, errors = validate_register(body)
    if errors:
        return _error(400, "VALIDATION_FAILED", "validation failed", request_id, details=errors)
    assert value is not None
    email = value["email"]
    try:
        created = _cognito().admin_create_user(
            UserPoolId=USER_POOL_ID,
            Username=email,
            UserAttributes=[
                {"Name": "email", "Value": email},
                {"Name": "name", "Value": value["name"]},
                {"Name": "email_verified", "Value": "true"},
            ],
            MessageAction="SUPPRESS",
        )
        _cognito().admin_set_user_password(
            UserPoolId=USER_POOL_ID,
            Username=email,
            Password=value["password"],
            Permanent=True,
        )
    except ClientError as e:
        mapped = REGISTER_ERRORS.get(_error_code(e))
        if mapped is None:
            raise
        return _error(mapped[0], mapped[1], mapped[2], request_id)

    user = created.get("User") or {}
    attributes = user.get("Attributes") or []
    sub = _attr(attributes, "sub")
    wide_event["principal"] = {"sub": sub}
    return _response(
        201,
        {
            "user": {
                "id": sub or str(user.get("Username") or ""),
                "email": _attr(attributes, "email") or email,
                "name": _attr(attributes, "name") or value["name"],
                "status": str(user.get("UserStatus") or ""),
            }
        },
        request_id,
    )


def _login(body: dict[str, Any], request_id: str) -> dict[str, Any]:
    value, errors = validate_login(body)
    if errors:
        return _error(400, "VALIDATION_FAILED", "validation failed", request_id, details=errors)
    assert value is not None
    try:
        resp = _cognito().initiate_auth(
            ClientId=USER_POOL_CLIENT_ID,
            AuthFlow="USER_PASSWORD_AUTH",
            AuthParameters={"USERNAME": value["email"], "PASSWORD": value["password"]},
        )
    except ClientError as e:
        mapped = LOGIN_ERRORS.get(_error_code(e))
        if mapped is None:
            raise
        return _error(mapped[0], mapped[1], mapped[2], request_id)

    challenge = str(resp.get("ChallengeName") or "")
    if challenge:
        return _response(
            200,
            {
                "challengeName": challenge,
                "session": str(resp.get("Session") or ""),
                "message": "additional authentication required",
            },
            request_id,
        )

    auth_result = resp.get("AuthenticationResult") or {}
    try:
        expires_in = int(auth_result.get("ExpiresIn") or 0)
    except Exception:
        expires_in = 0
    return _response(
        200,
        {
            "tokens": {
                "accessToken": str(auth_result.get("AccessToken") or ""),
                "idToken": str(auth_result.get("IdToken") or ""),
                "refreshToken": str(auth_result.get("RefreshToken") or ""),
                "tokenType": str(auth_result.get("TokenType") or ""),
                "expiresIn": expires_in,
            }
        },
        request_id,
    )


def _me(event: dict[str, Any], request_id: str, wide_event: dict[str, Any]) -> dict[str, Any]:
    claims = authorizer_claims(event)
    sub = str(claims.get("sub") or "").strip()
    wide_event["principal"] = {"sub": sub}
    if not sub:
        return _error(401, "UNAUTHORIZED", "valid authentication token required", request_id)
    username = str(claims.get("cognito:username") or claims.get("username") or sub)
    try:
        resp = _cognito().admin_get_user(UserPoolId=USER_POOL_ID, Username=username)
    except ClientError as e:
        if _error_code(e) == "UserNotFoundException":
            return _error(404, "USER_NOT_FOUND", "user not found", request_id)
        raise
    attributes = resp.get("UserAttributes") or []
    return _response(
        200,
        {
            "user": {
                "id": sub,
                "email": _attr(attributes, "email"),
                "name": _attr(attributes, "name"),
                "status": str(resp.get("UserStatus") or ""),
                "createdAt": resp.get("UserCreateDate"),
                "lastModified": resp.get("UserLastModifiedDate"),
            }
        },
        request_id,
    )


def _route(event: dict[str, Any], request_id: str, wide_event: dict[str, Any]) -> dict[str, Any]:
    method = str(event.get("httpMethod") or "").upper()
    path = str(event.get("path") or "")
    segments = [s for s in path.split("/") if s]
    if "auth" in segments:
        segments = segments[segments.index("auth") :]
    action = segments[1] if len(segments) == 2 else ""

    if method == "OPTIONS":
        wide_event["action"] = "preflight"
        return {"statusCode": 204, "headers": dict(CORS_HEADERS), "body": ""}

    if method == "GET" and action == "me":
        wide_event["action"] = "me"
        return _me(event, request_id, wide_event)

    if method != "POST" or segments[:1] != ["auth"] or len(segments) > 2:
        wide_event["action"] = "unknown"
        return _error(404, "NOT_FOUND", f"route not found: {method} {path}", request_id)

    body = _parse_json_body(event)
    if body is None:
        return _error(400, "INVALID_BODY", "request body must be a JSON object", request_id)
    # POST /v1/auth with {"action": ...} is kept for older clients.
    action = action or str(body.get("action") or "").strip()
    wide_event["action"] = action or "unknown"
    if action == "register":
        return _register(body, request_id, wide_event)
    if action == "login":
        return _login(body, request_id)
    return _error(400, "INVALID_ACTION", "supported actions: register, login", request_id)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _request_id(event)
    wide_event: dict[str, Any] = {
        "event": "task_tracker_auth",
        "schema_version": SCHEMA_VERSION,
        "request_id": request_id,
        "ts": _now_iso(),
    }
    out: dict[str, Any] = {}

    try:
        if not USER_POOL_ID or not USER_POOL_CLIENT_ID:
            wide_event["outcome"] = "misconfigured"
            out = _error(500, "MISCONFIGURED", "user pool env vars are required", request_id)
            return out
        out = _route(event, request_id, wide_event)
        return out
    except Exception as e:
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
        out = _error(500, "INTERNAL_ERROR", "authentication request failed", request_id)
        return out
    finally:
        status_code = int(out.get("statusCode") or 500)
        wide_event["status_code"] = status_code
        if "outcome" not in wide_event:
            wide_event["outcome"] = "success" if status_code < 400 else ("error" if status_code >= 500 else "rejected")
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        # Never log passwords or issued tokens.
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
