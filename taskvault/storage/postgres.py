from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskvault.logging import get_logger
from taskvault.storage.common import (
    ensure_aware,
    generate_uuid,
    normalize_email,
    parse_identifier,
    safe_row_value,
)
from taskvault.storage.errors import ConstraintViolation, InvalidIdentifier
from taskvault.storage.models import (
    Task,
    TaskPage,
    TaskQuery,
    TaskSortField,
    User,
    UserCredential,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        refresh_token_hash TEXT,
        refresh_token_expires_at TIMESTAMPTZ,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS user_auth_credential_refresh_idx
        ON user_auth_credential (refresh_token_hash)
        WHERE refresh_token_hash IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS task (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title VARCHAR(100) NOT NULL,
        description VARCHAR(500),
        completed BOOLEAN NOT NULL DEFAULT false,
        due_date TIMESTAMPTZ,
        priority TEXT NOT NULL DEFAULT 'medium'
            CHECK (priority IN ('low', 'medium', 'high')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_user_created_idx ON task (user_id, created_at DESC)",
)

# whitelisted ORDER BY expressions; never interpolate caller input
_SORT_SQL = {
    TaskSortField.CREATED_AT: "created_at",
    TaskSortField.UPDATED_AT: "updated_at",
    TaskSortField.DUE_DATE: "due_date",
    TaskSortField.PRIORITY: (
        "CASE priority WHEN 'low' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END"
    ),
    TaskSortField.TITLE: "title",
    TaskSortField.COMPLETED: "completed",
}

_UPDATABLE_TASK_COLUMNS = {
    "title": "title",
    "description": "description",
    "completed": "completed",
    "due_date": "due_date",
    "priority": "priority",
}


class PostgresStore:
    """Postgres-backed credential and task store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and indexes that are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            created_at=ensure_aware(row["created_at"]),
        )

    @staticmethod
    def _task_from_row(row: Dict[str, Any]) -> Task:
        return Task(
            id=str(row["id"]),
            user=str(row["user_id"]),
            title=row["title"],
            description=safe_row_value(row, "description"),
            completed=bool(row["completed"]),
            due_date=ensure_aware(safe_row_value(row, "due_date")),
            priority=row["priority"],
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
        )

    # -- users & credentials -------------------------------------------------

    def create_user(self, name: str, email: str, password_hash: str) -> User:
        user_id = generate_uuid()
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email)
                    VALUES (%s, %s, %s)
                    RETURNING id, name, email, created_at
                    """,
                    (user_id, name, normalized),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash)
                    VALUES (%s, %s)
                    """,
                    (user_id, password_hash),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            key = parse_identifier(user_id, "user")
        except InvalidIdentifier:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, email, created_at FROM app_user WHERE id = %s",
                (key,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, email, created_at FROM app_user WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_credential(self, user_id: str) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, password_hash, refresh_token_hash, refresh_token_expires_at
                FROM user_auth_credential WHERE user_id = %s
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return UserCredential(
            user_id=str(row["user_id"]),
            password_hash=str(row["password_hash"]),
            refresh_token_hash=row.get("refresh_token_hash"),
            refresh_token_expires_at=ensure_aware(row.get("refresh_token_expires_at")),
        )

    def set_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_auth_credential
                SET refresh_token_hash = %s, refresh_token_expires_at = %s, last_updated_at = now()
                WHERE user_id = %s
                """,
                (token_hash, expires_at, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def find_user_by_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.id, u.name, u.email, u.created_at
                FROM user_auth_credential c JOIN app_user u ON u.id = c.user_id
                WHERE c.refresh_token_hash = %s AND c.refresh_token_expires_at > %s
                """,
                (token_hash, now),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_auth_credential
                SET refresh_token_hash = %s, refresh_token_expires_at = %s, last_updated_at = now()
                WHERE user_id = %s AND refresh_token_hash = %s AND refresh_token_expires_at > %s
                RETURNING user_id
                """,
                (new_hash, expires_at, user_id, expected_hash, now),
            ).fetchone()
        return row is not None

    def clear_refresh_token(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_auth_credential
                SET refresh_token_hash = NULL, refresh_token_expires_at = NULL, last_updated_at = now()
                WHERE user_id = %s AND refresh_token_hash IS NOT NULL
                """,
                (user_id,),
            )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO task (id, user_id, title, description, completed, due_date, priority)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        user_id,
                        title,
                        description,
                        completed,
                        ensure_aware(due_date),
                        priority,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("task owner does not exist", {"field": "user"}) from exc
        return self._task_from_row(row)

    def get_task(self, task_id: str) -> Optional[Task]:
        key = parse_identifier(task_id, "task")
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM task WHERE id = %s", (key,)).fetchone()
        return self._task_from_row(row) if row else None

    def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        key = parse_identifier(task_id, "task")
        unknown = set(changes) - set(_UPDATABLE_TASK_COLUMNS)
        if unknown:
            raise ValueError(f"cannot update task fields: {sorted(unknown)}")
        if "due_date" in changes:
            changes = {**changes, "due_date": ensure_aware(changes["due_date"])}
        assignments = [f"{_UPDATABLE_TASK_COLUMNS[name]} = %s" for name in changes]
        assignments.append("updated_at = now()")
        params = [*changes.values(), key]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE task SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._task_from_row(row) if row else None

    def delete_task(self, task_id: str) -> bool:
        key = parse_identifier(task_id, "task")
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM task WHERE id = %s", (key,))
            return cur.rowcount > 0

    def list_tasks(self, query: TaskQuery) -> TaskPage:
        clauses = ["user_id = %s"]
        params: list[Any] = [query.user_id]
        if query.completed is not None:
            clauses.append("completed = %s")
            params.append(query.completed)
        if query.priority is not None:
            clauses.append("priority = %s")
            params.append(query.priority)
        where = " AND ".join(clauses)
        direction = "DESC" if query.descending else "ASC"
        order_by = f"{_SORT_SQL[query.sort]} {direction} NULLS LAST, id {direction}"
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM task WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM task WHERE {where} ORDER BY {order_by} LIMIT %s OFFSET %s",
                [*params, query.limit, query.offset],
            ).fetchall()
        return TaskPage(
            items=[self._task_from_row(row) for row in rows],
            total=int(total_row["total"]) if total_row else 0,
            page=query.page,
            limit=query.limit,
        )

    # -- lifecycle -----------------------------------------------------------

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()
