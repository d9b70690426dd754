from __future__ import annotations

from dataclasses import dataclass
from typing import Any

PRIORITY_LOW = "low"
PRIORITY_MEDIUM = "medium"
PRIORITY_HIGH = "high"
VALID_PRIORITIES = (PRIORITY_LOW, PRIORITY_MEDIUM, PRIORITY_HIGH)

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
VALID_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MAX_CATEGORY_LENGTH = 50

MUTABLE_FIELDS = ("title", "description", "priority", "status", "dueDate", "category")
# Set once by the service; never accepted from a patch.
IMMUTABLE_FIELDS = ("id", "ownerId", "createdAt")


@dataclass(frozen=True)
class Task:
    id: str
    ownerId: str
    title: str
    description: str = ""
    priority: str = PRIORITY_MEDIUM
    status: str = STATUS_PENDING
    dueDate: str | None = None
    category: str = ""
    createdAt: str = ""
    updatedAt: str = ""

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Task":
        due = item.get("dueDate")
        return cls(
            id=str(item.get("id") or ""),
            ownerId=str(item.get("ownerId") or ""),
            title=str(item.get("title") or ""),
            description=str(item.get("description") or ""),
            priority=str(item.get("priority") or PRIORITY_MEDIUM),
            status=str(item.get("status") or STATUS_PENDING),
            dueDate=str(due) if due else None,
            category=str(item.get("category") or ""),
            createdAt=str(item.get("createdAt") or ""),
            updatedAt=str(item.get("updatedAt") or ""),
        )

    def to_item(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ownerId": self.ownerId,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "dueDate": self.dueDate,
            "category": self.category,
            "createdAt": self.createdAt,
            "updatedAt": self.updatedAt,
        }

    def to_json(self) -> dict[str, Any]:
        return self.to_item()
