from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from task_model import MAX_CATEGORY_LENGTH
from task_model import MAX_DESCRIPTION_LENGTH
from task_model import MAX_TITLE_LENGTH
from task_model import MUTABLE_FIELDS
from task_model import PRIORITY_MEDIUM
from task_model import STATUS_PENDING
from task_model import VALID_PRIORITIES
from task_model import VALID_STATUSES

MIN_PASSWORD_LENGTH = 8
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 100

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

Errors = list[dict[str, str]]


def _err(errors: Errors, field: str, message: str) -> None:
    errors.append({"field": field, "message": message})


def _is_iso_date(value: str) -> bool:
    s = value.strip()
    if not s:
        return False
    try:
        date.fromisoformat(s)
        return True
    except ValueError:
        pass
    try:
        datetime.fromisoformat(s.replace("Z", "+00:00"))
        return True
    except ValueError:
        return False


def _check_string(
    errors: Errors,
    data: dict[str, Any],
    field: str,
    *,
    min_len: int,
    max_len: int,
) -> None:
    if field not in data:
        return
    val = data[field]
    if not isinstance(val, str):
        _err(errors, field, f'"{field}" must be a string')
        return
    if len(val) < min_len:
        if min_len == 1:
            _err(errors, field, f'"{field}" is not allowed to be empty')
        else:
            _err(errors, field, f'"{field}" length must be at least {min_len} characters long')
    elif len(val) > max_len:
        _err(errors, field, f'"{field}" length must be less than or equal to {max_len} characters long')


def _check_choice(errors: Errors, data: dict[str, Any], field: str, choices: tuple[str, ...]) -> None:
    if field not in data:
        return
    if data[field] not in choices:
        _err(errors, field, f'"{field}" must be one of [{", ".join(choices)}]')


def _check_due_date(errors: Errors, data: dict[str, Any]) -> None:
    if "dueDate" not in data or data["dueDate"] is None:
        return
    val = data["dueDate"]
    if not isinstance(val, str) or not _is_iso_date(val):
        _err(errors, "dueDate", '"dueDate" must be in ISO 8601 date format')


def _check_task_fields(data: dict[str, Any], errors: Errors) -> None:
    for key in data:
        if key not in MUTABLE_FIELDS:
            _err(errors, str(key), f'"{key}" is not allowed')
    _check_string(errors, data, "title", min_len=1, max_len=MAX_TITLE_LENGTH)
    _check_string(errors, data, "description", min_len=0, max_len=MAX_DESCRIPTION_LENGTH)
    _check_choice(errors, data, "priority", VALID_PRIORITIES)
    _check_choice(errors, data, "status", VALID_STATUSES)
    _check_due_date(errors, data)
    _check_string(errors, data, "category", min_len=0, max_len=MAX_CATEGORY_LENGTH)


def _normalized(data: dict[str, Any]) -> dict[str, Any]:
    out = {k: data[k] for k in MUTABLE_FIELDS if k in data}
    if isinstance(out.get("dueDate"), str):
        out["dueDate"] = out["dueDate"].strip()
    return out


def validate_create(data: Any) -> tuple[dict[str, Any] | None, Errors]:
    if not isinstance(data, dict):
        return None, [{"field": "", "message": "request body must be a JSON object"}]
    errors: Errors = []
    if "title" not in data:
        _err(errors, "title", '"title" is required')
    _check_task_fields(data, errors)
    if errors:
        return None, errors
    value = {
        "description": "",
        "priority": PRIORITY_MEDIUM,
        "status": STATUS_PENDING,
        "dueDate": None,
        "category": "",
    }
    value.update(_normalized(data))
    return value, []


def validate_update(data: Any) -> tuple[dict[str, Any] | None, Errors]:
    if not isinstance(data, dict):
        return None, [{"field": "", "message": "request body must be a JSON object"}]
    errors: Errors = []
    if not data:
        _err(errors, "", "request body must contain at least 1 field")
    _check_task_fields(data, errors)
    if errors:
        return None, errors
    return _normalized(data), []


def _check_email(errors: Errors, data: dict[str, Any]) -> None:
    email = data.get("email")
    if email is None or email == "":
        _err(errors, "email", '"email" is required')
    elif not isinstance(email, str) or not _EMAIL_RE.match(email):
        _err(errors, "email", '"email" must be a valid email')


def validate_register(data: Any) -> tuple[dict[str, Any] | None, Errors]:
    if not isinstance(data, dict):
        return None, [{"field": "", "message": "request body must be a JSON object"}]
    errors: Errors = []
    _check_email(errors, data)
    if not data.get("password"):
        _err(errors, "password", '"password" is required')
    else:
        _check_string(errors, data, "password", min_len=MIN_PASSWORD_LENGTH, max_len=256)
    if not data.get("name"):
        _err(errors, "name", '"name" is required')
    else:
        _check_string(errors, data, "name", min_len=MIN_NAME_LENGTH, max_len=MAX_NAME_LENGTH)
    if errors:
        return None, errors
    return {
        "email": str(data["email"]).strip().lower(),
        "password": data["password"],
        "name": str(data["name"]).strip(),
    }, []


def validate_login(data: Any) -> tuple[dict[str, Any] | None, Errors]:
    if not isinstance(data, dict):
        return None, [{"field": "", "message": "request body must be a JSON object"}]
    errors: Errors = []
    _check_email(errors, data)
    if not data.get("password") or not isinstance(data.get("password"), str):
        _err(errors, "password", '"password" is required')
    if errors:
        return None, errors
    return {"email": str(data["email"]).strip().lower(), "password": data["password"]}, []
