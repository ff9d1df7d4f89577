from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from taskvault.storage.models import Priority, Task, TaskPage, User

NAME_MAX_LENGTH = 50
TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class RequestModel(CamelModel):
    model_config = ConfigDict(extra="forbid")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Please add a valid email")
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    normalized = unicodedata.normalize("NFKC", cleaned.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Please add a valid email")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please add a valid email")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please add a valid email")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please add a valid email")
    return normalized


def _strip(value):
    return value.strip() if isinstance(value, str) else value


def _parse_due_date(value):
    # bare calendar dates mean midnight UTC
    if isinstance(value, str) and _DATE_ONLY.match(value.strip()):
        return f"{value.strip()}T00:00:00+00:00"
    return value


# -- requests -----------------------------------------------------------------


class RegisterRequest(RequestModel):
    name: str = Field(..., min_length=1, max_length=NAME_MAX_LENGTH)
    email: str
    password: str = Field(
        ..., min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH
    )

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value):
        return _strip(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(RequestModel):
    email: str
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshTokenRequest(RequestModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class TaskCreateRequest(RequestModel):
    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    completed: bool = False
    due_date: Optional[datetime] = None
    priority: Priority = Priority.MEDIUM

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value):
        return _strip(value)

    @field_validator("due_date", mode="before")
    @classmethod
    def _normalize_due_date(cls, value):
        return _parse_due_date(value)


class TaskUpdateRequest(RequestModel):
    """Partial update; only the keys the client sent are applied."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    completed: Optional[bool] = None
    due_date: Optional[datetime] = None
    priority: Optional[Priority] = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value):
        return _strip(value)

    @field_validator("due_date", mode="before")
    @classmethod
    def _normalize_due_date(cls, value):
        return _parse_due_date(value)

    def changes(self) -> dict:
        values = self.model_dump(exclude_unset=True)
        if isinstance(values.get("priority"), Priority):
            values["priority"] = values["priority"].value
        return values


# -- responses ----------------------------------------------------------------


class ErrorBody(BaseModel):
    message: str
    code: str
    trace: Optional[str] = None


class ErrorEnvelope(BaseModel):
    success: Literal[False] = False
    error: ErrorBody


class UserResponse(CamelModel):
    id: str
    name: str
    email: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User, *, include_created: bool = False) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            created_at=user.created_at if include_created else None,
        )


class AuthResponse(CamelModel):
    success: bool = True
    token: str
    refresh_token: str
    user: UserResponse


class MeResponse(CamelModel):
    success: bool = True
    user: UserResponse


class TaskResponse(CamelModel):
    id: str
    user: str
    title: str
    description: Optional[str] = None
    completed: bool
    due_date: Optional[datetime] = None
    priority: Priority
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            user=task.user,
            title=task.title,
            description=task.description,
            completed=task.completed,
            due_date=task.due_date,
            priority=Priority(task.priority),
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class TaskEnvelope(CamelModel):
    success: bool = True
    data: TaskResponse


class Pagination(CamelModel):
    total: int
    page: int
    limit: int
    total_pages: int


class TaskListResponse(CamelModel):
    success: bool = True
    pagination: Pagination
    count: int
    data: List[TaskResponse]

    @classmethod
    def from_page(cls, page: TaskPage) -> "TaskListResponse":
        return cls(
            pagination=Pagination(
                total=page.total,
                page=page.page,
                limit=page.limit,
                total_pages=page.total_pages,
            ),
            count=len(page.items),
            data=[TaskResponse.from_task(task) for task in page.items],
        )


class EmptyResponse(CamelModel):
    success: bool = True
    data: dict = Field(default_factory=dict)


class HealthResponse(CamelModel):
    status: str
    environment: str
    database: str
    timestamp: datetime
