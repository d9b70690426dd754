from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from task_model import PRIORITY_HIGH
from task_model import PRIORITY_LOW
from task_model import PRIORITY_MEDIUM
from task_model import STATUS_COMPLETED
from task_model import STATUS_IN_PROGRESS
from task_model import STATUS_PENDING
from task_model import Task
from task_store import StaleTimestampError
from task_store import TaskStore

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
# Re-stamps allowed when another writer's clock ran ahead of ours.
MAX_STAMP_ATTEMPTS = 3


def page_limit(raw: Any) -> int:
    if raw is None or raw == "":
        return DEFAULT_PAGE_LIMIT
    try:
        n = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_PAGE_LIMIT
    if n < 1:
        return DEFAULT_PAGE_LIMIT
    return min(n, MAX_PAGE_LIMIT)


class UtcClock:
    """Fixed-format UTC timestamps, strictly increasing within the process."""

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def now_iso(self) -> str:
        with self._lock:
            current = self._now().astimezone(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
        return current.strftime(TIMESTAMP_FORMAT)

    def advance_past(self, stamp: str) -> None:
        try:
            seen = datetime.strptime(stamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            return
        with self._lock:
            if self._last is None or seen > self._last:
                self._last = seen


@dataclass(frozen=True)
class TaskPage:
    items: list[Task]
    cursor: str | None

    @property
    def count(self) -> int:
        return len(self.items)


class TaskService:
    """Owner-scoped task operations.

    ``get``, ``update`` and ``delete`` return ``None`` both when the task does
    not exist and when it belongs to another owner, so callers cannot learn
    which task ids other users hold. Every method takes an optional ``timeout`` in
    seconds that bounds each store request it makes.
    """

    def __init__(self, store: TaskStore, *, clock: UtcClock | None = None) -> None:
        self._store = store
        self._clock = clock or UtcClock()

    def create(self, data: dict[str, Any], owner_id: str, *, timeout: float | None = None) -> Task:
        now = self._clock.now_iso()
        task = Task(
            id=str(uuid.uuid4()),
            ownerId=owner_id,
            title=str(data["title"]),
            description=str(data.get("description") or ""),
            priority=str(data.get("priority") or PRIORITY_MEDIUM),
            status=str(data.get("status") or STATUS_PENDING),
            dueDate=data.get("dueDate") or None,
            category=str(data.get("category") or ""),
            createdAt=now,
            updatedAt=now,
        )
        self._store.put(task.to_item(), timeout=timeout)
        return task

    def get(self, task_id: str, owner_id: str, *, timeout: float | None = None) -> Task | None:
        item = self._store.get(task_id, timeout=timeout)
        if not item or item.get("ownerId") != owner_id:
            return None
        return Task.from_item(item)

    def list(
        self,
        owner_id: str,
        *,
        limit: Any = None,
        cursor: str | None = None,
        timeout: float | None = None,
    ) -> TaskPage:
        items, next_cursor = self._store.query_owner(
            owner_id,
            limit=page_limit(limit),
            cursor=cursor,
            timeout=timeout,
        )
        return TaskPage(items=[Task.from_item(i) for i in items], cursor=next_cursor)

    def update(
        self,
        task_id: str,
        owner_id: str,
        patch: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Task | None:
        changes = dict(patch)
        for attempt in range(1, MAX_STAMP_ATTEMPTS + 1):
            try:
                item = self._store.update_owned(
                    task_id,
                    owner_id,
                    changes,
                    updated_at=self._clock.now_iso(),
                    timeout=timeout,
                )
            except StaleTimestampError as e:
                # Another instance stamped this task with a later clock.
                if attempt == MAX_STAMP_ATTEMPTS:
                    raise
                self._clock.advance_past(e.stored_updated_at)
                continue
            return Task.from_item(item) if item else None
        return None

    def delete(self, task_id: str, owner_id: str, *, timeout: float | None = None) -> Task | None:
        item = self._store.delete_owned(task_id, owner_id, timeout=timeout)
        return Task.from_item(item) if item else None

    def summary(self, owner_id: str, *, timeout: float | None = None) -> dict[str, int]:
        counts = {
            "total": 0,
            "pending": 0,
            "inProgress": 0,
            "completed": 0,
            "high": 0,
            "medium": 0,
            "low": 0,
        }
        status_keys = {
            STATUS_PENDING: "pending",
            STATUS_IN_PROGRESS: "inProgress",
            STATUS_COMPLETED: "completed",
        }
        for item in self._store.iter_owner(owner_id, projection=("status", "priority"), timeout=timeout):
            counts["total"] += 1
            status_key = status_keys.get(str(item.get("status") or ""))
            if status_key:
                counts[status_key] += 1
            priority = str(item.get("priority") or "")
            if priority in (PRIORITY_HIGH, PRIORITY_MEDIUM, PRIORITY_LOW):
                counts[priority] += 1
        return counts
