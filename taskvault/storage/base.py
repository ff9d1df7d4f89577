from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from taskvault.storage.models import Task, TaskPage, TaskQuery, User, UserCredential


class CredentialStore(Protocol):
    """User records plus the secrets the auth service keeps beside them."""

    def create_user(self, name: str, email: str, password_hash: str) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_credential(self, user_id: str) -> Optional[UserCredential]:
        ...

    def set_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        ...

    def find_user_by_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[User]:
        ...

    def rotate_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        """Swap the stored digest only if it still equals ``expected_hash``."""
        ...

    def clear_refresh_token(self, user_id: str) -> None:
        ...


class TaskStore(Protocol):
    def create_task(
        self,
        user_id: str,
        *,
        title: str,
        description: Optional[str] = None,
        completed: bool = False,
        due_date: Optional[datetime] = None,
        priority: str = "medium",
    ) -> Task:
        ...

    def get_task(self, task_id: str) -> Optional[Task]:
        ...

    def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        ...

    def delete_task(self, task_id: str) -> bool:
        ...

    def list_tasks(self, query: TaskQuery) -> TaskPage:
        ...


class Store(CredentialStore, TaskStore, Protocol):
    def ping(self) -> bool:
        ...

    def close(self) -> None:
        ...
