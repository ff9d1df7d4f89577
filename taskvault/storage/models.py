from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ordinal used when sorting by priority
PRIORITY_RANK = {Priority.LOW.value: 0, Priority.MEDIUM.value: 1, Priority.HIGH.value: 2}


class TaskSortField(str, Enum):
    """Sortable task columns, keyed by their public (camelCase) name."""

    CREATED_AT = "createdAt"
    UPDATED_AT = "updatedAt"
    DUE_DATE = "dueDate"
    PRIORITY = "priority"
    TITLE = "title"
    COMPLETED = "completed"

    @property
    def attribute(self) -> str:
        return _SORT_ATTRIBUTES[self]


_SORT_ATTRIBUTES = {
    TaskSortField.CREATED_AT: "created_at",
    TaskSortField.UPDATED_AT: "updated_at",
    TaskSortField.DUE_DATE: "due_date",
    TaskSortField.PRIORITY: "priority",
    TaskSortField.TITLE: "title",
    TaskSortField.COMPLETED: "completed",
}


@dataclass
class User:
    id: str
    name: str
    email: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserCredential:
    """Secrets kept apart from the user record; never serialized outward."""

    user_id: str
    password_hash: str
    refresh_token_hash: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None

    def has_live_refresh_token(self, now: datetime) -> bool:
        return bool(
            self.refresh_token_hash
            and self.refresh_token_expires_at
            and self.refresh_token_expires_at > now
        )


@dataclass
class Task:
    id: str
    user: str
    title: str
    description: Optional[str] = None
    completed: bool = False
    due_date: Optional[datetime] = None
    priority: str = Priority.MEDIUM.value
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TaskQuery:
    """Owner-scoped list query with equality filters, one sort key and paging."""

    user_id: str
    completed: Optional[bool] = None
    priority: Optional[str] = None
    sort: TaskSortField = TaskSortField.CREATED_AT
    descending: bool = True
    page: int = 1
    limit: int = 10

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class TaskPage:
    items: List[Task]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0
