from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from taskvault.logging import get_logger
from taskvault.storage.common import (
    ensure_aware,
    generate_uuid,
    normalize_email,
    parse_identifier,
)
from taskvault.storage.errors import ConstraintViolation
from taskvault.storage.models import (
    PRIORITY_RANK,
    Task,
    TaskPage,
    TaskQuery,
    TaskSortField,
    User,
    UserCredential,
    utcnow,
)

_UPDATABLE_TASK_FIELDS = {"title", "description", "completed", "due_date", "priority"}


class MemoryStore:
    """In-process store used for tests and single-node development.

    When ``fs_root`` is given every mutation is written to
    ``<fs_root>/state/memory_store.json`` and reloaded on construction.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.tasks: Dict[str, Task] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_state_loaded",
                    users=len(self.users),
                    tasks=len(self.tasks),
                )

    # -- users & credentials -------------------------------------------------

    def create_user(self, name: str, email: str, password_hash: str) -> User:
        normalized = normalize_email(email)
        with self._mutation():
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=generate_uuid(), name=name, email=normalized)
            self.users[user.id] = user
            self.credentials[user.id] = UserCredential(
                user_id=user.id, password_hash=password_hash
            )
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def get_credential(self, user_id: str) -> Optional[UserCredential]:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            return replace(credential) if credential else None

    def set_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._mutation():
            credential = self.credentials.get(user_id)
            if credential is None:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            credential.refresh_token_hash = token_hash
            credential.refresh_token_expires_at = expires_at

    def find_user_by_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            for credential in self.credentials.values():
                if credential.refresh_token_hash == token_hash and credential.has_live_refresh_token(now):
                    user = self.users.get(credential.user_id)
                    return replace(user) if user else None
            return None

    def rotate_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        with self._mutation():
            credential = self.credentials.get(user_id)
            if (
                credential is None
                or credential.refresh_token_hash != expected_hash
                or not credential.has_live_refresh_token(now)
            ):
                return False
            credential.refresh_token_hash = new_hash
            credential.refresh_token_expires_at = expires_at
            return True

    def clear_refresh_token(self, user_id: str) -> None:
        with self._mutation():
            credential = self.credentials.get(user_id)
            if credential is None or credential.refresh_token_hash is None:
                return
            credential.refresh_token_hash = None
            credential.refresh_token_expires_at = None

    # -- tasks ---------------------------------------------------------------

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
        with self._mutation():
            if user_id not in self.users:
                raise ConstraintViolation("task owner does not exist", {"field": "user"})
            now = utcnow()
            task = Task(
                id=generate_uuid(),
                user=user_id,
                title=title,
                description=description,
                completed=completed,
                due_date=ensure_aware(due_date),
                priority=priority,
                created_at=now,
                updated_at=now,
            )
            self.tasks[task.id] = task
            return replace(task)

    def get_task(self, task_id: str) -> Optional[Task]:
        key = parse_identifier(task_id, "task")
        with self._data_lock:
            task = self.tasks.get(key)
            return replace(task) if task else None

    def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        key = parse_identifier(task_id, "task")
        unknown = set(changes) - _UPDATABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f"cannot update task fields: {sorted(unknown)}")
        with self._mutation():
            task = self.tasks.get(key)
            if task is None:
                return None
            for name, value in changes.items():
                setattr(task, name, ensure_aware(value) if name == "due_date" else value)
            task.updated_at = utcnow()
            return replace(task)

    def delete_task(self, task_id: str) -> bool:
        key = parse_identifier(task_id, "task")
        with self._mutation():
            removed = self.tasks.pop(key, None)
            if removed is None:
                return False
            return True

    def list_tasks(self, query: TaskQuery) -> TaskPage:
        with self._data_lock:
            matches = [
                task
                for task in self.tasks.values()
                if task.user == query.user_id
                and (query.completed is None or task.completed == query.completed)
                and (query.priority is None or task.priority == query.priority)
            ]
            ordered = self._sort_tasks(matches, query.sort, query.descending)
            window = ordered[query.offset : query.offset + query.limit]
            return TaskPage(
                items=[replace(task) for task in window],
                total=len(matches),
                page=query.page,
                limit=query.limit,
            )

    @staticmethod
    def _sort_tasks(
        tasks: List[Task], sort: TaskSortField, descending: bool
    ) -> List[Task]:
        attribute = sort.attribute

        def _value(task: Task) -> Any:
            value = getattr(task, attribute)
            if sort == TaskSortField.PRIORITY:
                return PRIORITY_RANK.get(value, 0)
            return value

        # tasks without a value (only dueDate can be empty) always go last
        present = [t for t in tasks if getattr(t, attribute) is not None]
        missing = [t for t in tasks if getattr(t, attribute) is None]
        present.sort(key=lambda t: (_value(t), t.id), reverse=descending)
        missing.sort(key=lambda t: t.id, reverse=descending)
        return present + missing

    # -- lifecycle -----------------------------------------------------------

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # -- persistence ---------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Hold the lock for a write and snapshot the result to disk.

        If the snapshot cannot be written the in-memory records are put back
        as they were, so memory and disk never disagree.
        """
        with self._data_lock:
            if self.fs_root is None:
                yield
                return
            saved = (
                {key: replace(user) for key, user in self.users.items()},
                {key: replace(cred) for key, cred in self.credentials.items()},
                {key: replace(task) for key, task in self.tasks.items()},
            )
            try:
                yield
                self._persist_state()
            except Exception:
                self.users, self.credentials, self.tasks = saved
                raise

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_aware(datetime.fromisoformat(raw)) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            name=data["name"],
            email=data["email"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_credential(self, credential: UserCredential) -> dict:
        return {
            "user_id": credential.user_id,
            "password_hash": credential.password_hash,
            "refresh_token_hash": credential.refresh_token_hash,
            "refresh_token_expires_at": self._serialize_datetime(
                credential.refresh_token_expires_at
            ),
        }

    def _deserialize_credential(self, data: dict) -> UserCredential:
        return UserCredential(
            user_id=data["user_id"],
            password_hash=data["password_hash"],
            refresh_token_hash=data.get("refresh_token_hash"),
            refresh_token_expires_at=self._deserialize_datetime(
                data.get("refresh_token_expires_at")
            ),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "user": task.user,
            "title": task.title,
            "description": task.description,
            "completed": task.completed,
            "due_date": self._serialize_datetime(task.due_date),
            "priority": task.priority,
            "created_at": self._serialize_datetime(task.created_at),
            "updated_at": self._serialize_datetime(task.updated_at),
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=data["id"],
            user=data["user"],
            title=data["title"],
            description=data.get("description"),
            completed=bool(data.get("completed", False)),
            due_date=self._deserialize_datetime(data.get("due_date")),
            priority=data.get("priority", "medium"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )


__all__ = ["MemoryStore"]
