from __future__ import annotations

import base64
import json
import math
from collections.abc import Iterator
from typing import Any, Callable

import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeDeserializer
from botocore.config import Config
from botocore.exceptions import ClientError

from task_model import IMMUTABLE_FIELDS

DEFAULT_OWNER_INDEX = "ownerId-createdAt-index"
OWNED_CONDITION = "attribute_exists(#id) AND #ownerId = :ownerId"
# updatedAt is a fixed-format UTC string, so string order is time order.
OWNED_NEWER_CONDITION = f"{OWNED_CONDITION} AND #updatedAt < :updatedAt"


class InvalidCursorError(ValueError):
    pass


class StaleTimestampError(Exception):
    """The stored record already carries an updatedAt at or after ours."""

    def __init__(self, stored_updated_at: str) -> None:
        super().__init__(f"stored updatedAt {stored_updated_at} is not older than the new stamp")
        self.stored_updated_at = stored_updated_at


def build_tasks_table(
    table_name: str,
    *,
    region: str | None = None,
    timeout_seconds: float = 5,
    max_attempts: int = 3,
) -> Any:
    config = Config(
        connect_timeout=timeout_seconds,
        read_timeout=timeout_seconds,
        retries={"max_attempts": max_attempts, "mode": "standard"},
    )
    return boto3.resource("dynamodb", region_name=region or None, config=config).Table(table_name)


class TimeoutTables:
    """Table handles for one table name, one per whole-second timeout.

    botocore fixes timeouts per client, so a per-call budget is served by a
    small cache of clients bounded by ``max_timeout_seconds``.
    """

    def __init__(
        self,
        table_name: str,
        *,
        region: str | None = None,
        max_timeout_seconds: float = 5,
        max_attempts: int = 3,
    ) -> None:
        self._table_name = table_name
        self._region = region
        self._max_seconds = max(1, math.ceil(max_timeout_seconds))
        self._max_attempts = max_attempts
        self._tables: dict[int, Any] = {}

    def seconds_for(self, timeout_seconds: float | None) -> int:
        if timeout_seconds is None:
            return self._max_seconds
        return max(1, min(self._max_seconds, math.ceil(timeout_seconds)))

    def __call__(self, timeout_seconds: float | None = None) -> Any:
        seconds = self.seconds_for(timeout_seconds)
        table = self._tables.get(seconds)
        if table is None:
            table = build_tasks_table(
                self._table_name,
                region=self._region,
                timeout_seconds=seconds,
                max_attempts=self._max_attempts,
            )
            self._tables[seconds] = table
        return table


def is_condition_failure(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _condition_failure_item(exc: ClientError) -> dict[str, Any]:
    # ReturnValuesOnConditionCheckFailure puts the item, in wire format, on the error.
    raw = exc.response.get("Item")
    if not isinstance(raw, dict):
        return {}
    deserializer = TypeDeserializer()
    item: dict[str, Any] = {}
    for k, v in raw.items():
        try:
            item[k] = deserializer.deserialize(v)
        except (TypeError, ValueError):
            item[k] = v
    return item


def encode_cursor(key: dict[str, Any] | None) -> str | None:
    if not key:
        return None
    raw = json.dumps(key, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str | None, *, owner_id: str) -> dict[str, Any] | None:
    s = (cursor or "").strip()
    if not s:
        return None
    padded = s + ("=" * (-len(s) % 4))
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        parsed = json.loads(raw.decode("utf-8"))
    except Exception as e:
        raise InvalidCursorError(f"invalid cursor: {e}") from e
    if not isinstance(parsed, dict) or not parsed:
        raise InvalidCursorError("cursor must decode to a non-empty object")
    if any(not isinstance(v, str) for v in parsed.values()):
        raise InvalidCursorError("cursor values must be strings")
    # A cursor can only resume the owner's own partition of the index.
    if parsed.get("ownerId") != owner_id:
        raise InvalidCursorError("cursor does not belong to this listing")
    return parsed


class TaskStore:
    """DynamoDB access for task records.

    The table is keyed by ``id``; ``owner_index`` is a GSI on
    ``(ownerId, createdAt)`` used for newest-first listings. Owner-scoped
    writes are single conditional requests, so the ownership check and the
    mutation cannot interleave with another writer.

    Every operation takes an optional ``timeout`` (seconds). When ``tables``
    is given it maps that budget to a table handle whose client aborts the
    in-flight request once the budget is spent; otherwise ``table`` is used.
    """

    def __init__(
        self,
        table: Any,
        *,
        owner_index: str = DEFAULT_OWNER_INDEX,
        tables: Callable[[float | None], Any] | None = None,
    ) -> None:
        self._table = table
        self._owner_index = owner_index
        self._tables = tables

    def _t(self, timeout: float | None) -> Any:
        if timeout is None or self._tables is None:
            return self._table
        return self._tables(timeout)

    def get(self, task_id: str, *, timeout: float | None = None) -> dict[str, Any] | None:
        resp = self._t(timeout).get_item(Key={"id": task_id})
        item = resp.get("Item")
        return item if isinstance(item, dict) else None

    def put(self, item: dict[str, Any], *, timeout: float | None = None) -> None:
        self._t(timeout).put_item(Item=item)

    def update_owned(
        self,
        task_id: str,
        owner_id: str,
        changes: dict[str, Any],
        *,
        updated_at: str,
        timeout: float | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``changes`` if ``owner_id`` owns the task.

        Returns ``None`` when the task is absent or owned by someone else.
        Raises ``StaleTimestampError`` when the owner matches but the stored
        ``updatedAt`` is not older than ``updated_at``; nothing is written.
        """
        if not changes:
            raise ValueError("update requires at least one attribute")
        blocked = sorted(set(changes) & {*IMMUTABLE_FIELDS, "updatedAt"})
        if blocked:
            raise ValueError(f"attributes cannot be updated: {', '.join(blocked)}")

        expr_names = {"#id": "id", "#ownerId": "ownerId", "#updatedAt": "updatedAt"}
        expr_values: dict[str, Any] = {":ownerId": owner_id, ":updatedAt": updated_at}
        assignments: list[str] = []
        for i, (name, value) in enumerate(sorted(changes.items())):
            expr_names[f"#f{i}"] = name
            expr_values[f":v{i}"] = value
            assignments.append(f"#f{i} = :v{i}")
        assignments.append("#updatedAt = :updatedAt")

        try:
            out = self._t(timeout).update_item(
                Key={"id": task_id},
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression=OWNED_NEWER_CONDITION,
                ExpressionAttributeNames=expr_names,
                ExpressionAttributeValues=expr_values,
                ReturnValues="ALL_NEW",
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except ClientError as e:
            if not is_condition_failure(e):
                raise
            current = _condition_failure_item(e)
            if current.get("ownerId") == owner_id:
                raise StaleTimestampError(str(current.get("updatedAt") or "")) from e
            return None
        return out.get("Attributes") or None

    def delete_owned(self, task_id: str, owner_id: str, *, timeout: float | None = None) -> dict[str, Any] | None:
        try:
            out = self._t(timeout).delete_item(
                Key={"id": task_id},
                ConditionExpression=OWNED_CONDITION,
                ExpressionAttributeNames={"#id": "id", "#ownerId": "ownerId"},
                ExpressionAttributeValues={":ownerId": owner_id},
                ReturnValues="ALL_OLD",
            )
        except ClientError as e:
            if is_condition_failure(e):
                return None
            raise
        return out.get("Attributes") or None

    def query_owner(
        self,
        owner_id: str,
        *,
        limit: int,
        cursor: str | None = None,
        timeout: float | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        kwargs: dict[str, Any] = {
            "IndexName": self._owner_index,
            "KeyConditionExpression": Key("ownerId").eq(owner_id),
            "ScanIndexForward": False,  # newest first
            "Limit": limit,
        }
        start_key = decode_cursor(cursor, owner_id=owner_id)
        if start_key:
            kwargs["ExclusiveStartKey"] = start_key
        page = self._t(timeout).query(**kwargs)
        items = [i for i in (page.get("Items") or []) if isinstance(i, dict)]
        return items, encode_cursor(page.get("LastEvaluatedKey"))

    def iter_owner(
        self,
        owner_id: str,
        *,
        projection: tuple[str, ...] = (),
        timeout: float | None = None,
    ) -> Iterator[dict[str, Any]]:
        table = self._t(timeout)
        start_key: dict[str, Any] | None = None
        while True:
            kwargs: dict[str, Any] = {
                "IndexName": self._owner_index,
                "KeyConditionExpression": Key("ownerId").eq(owner_id),
            }
            if projection:
                kwargs["ProjectionExpression"] = ", ".join(f"#p{i}" for i in range(len(projection)))
                kwargs["ExpressionAttributeNames"] = {f"#p{i}": name for i, name in enumerate(projection)}
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            page = table.query(**kwargs)
            for item in page.get("Items") or []:
                if isinstance(item, dict):
                    yield item
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return
