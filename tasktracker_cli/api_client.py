from __future__ import annotations

import json
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .cli_shared import OpError


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            return int(status), hdrs, resp.read()
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise OpError(f"http request failed: {e}") from e


def api_request(
    *,
    method: str,
    api_url: str,
    path: str,
    id_token: str = "",
    query: dict[str, Any] | None = None,
    body_obj: dict[str, Any] | None = None,
) -> dict[str, Any]:
    base = api_url.rstrip("/")
    p = path if path.startswith("/") else f"/{path}"
    query_clean = {
        k: str(v)
        for k, v in (query or {}).items()
        if v is not None and str(v).strip() != ""
    }
    url = f"{base}{p}"
    if query_clean:
        url += f"?{urlencode(query_clean)}"

    headers: dict[str, str] = {}
    if id_token:
        headers["authorization"] = f"Bearer {id_token}"
    body_bytes = None
    if body_obj is not None:
        body_bytes = json.dumps(body_obj, separators=(",", ":")).encode("utf-8")
        headers["content-type"] = "application/json"

    status, _hdrs, data = _http_request(method=method, url=url, headers=headers, body=body_bytes)
    text = data.decode("utf-8", errors="replace")
    parsed: Any
    try:
        parsed = json.loads(text) if text else {}
    except ValueError:
        parsed = {"raw": text}

    if status < 200 or status >= 300:
        if isinstance(parsed, dict):
            msg = str(parsed.get("message") or parsed.get("errorCode") or text).strip()
            details = parsed.get("details")
            if isinstance(details, list) and details:
                msg += " (" + "; ".join(
                    str(d.get("message") or d) for d in details if isinstance(d, dict)
                ) + ")"
        else:
            msg = str(parsed)
        raise OpError(f"request failed: status={status} method={method} path={p} message={msg}")

    if isinstance(parsed, dict):
        return parsed
    return {"result": parsed}
