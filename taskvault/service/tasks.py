from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from taskvault.config import Settings
from taskvault.logging import get_logger
from taskvault.service.errors import ForbiddenError, NotFoundError, ValidationError
from taskvault.storage.base import TaskStore
from taskvault.storage.models import Priority, Task, TaskPage, TaskQuery, TaskSortField

logger = get_logger(__name__)

_ACTION_VERBS = {"read": "access", "update": "update", "delete": "delete"}
_REQUIRED_TASK_FIELDS = ("title", "completed", "priority")


class TaskService:
    """Owner-scoped task CRUD.

    Single-task operations go through :meth:`_get_owned_task`, which reports a
    missing task before it checks ownership.
    """

    def __init__(self, store: TaskStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    async def list_tasks(
        self,
        user_id: str,
        *,
        completed: Optional[bool] = None,
        priority: Optional[str] = None,
        sort: Optional[str] = None,
        sort_dir: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> TaskPage:
        query = self._build_query(
            user_id,
            completed=completed,
            priority=priority,
            sort=sort,
            sort_dir=sort_dir,
            page=page,
            limit=limit,
        )
        return await asyncio.to_thread(self.store.list_tasks, query)

    async def get_task(self, user_id: str, task_id: str) -> Task:
        return await self._get_owned_task(user_id, task_id, "read")

    async def create_task(
        self,
        user_id: str,
        *,
        title: str,
        description: Optional[str] = None,
        completed: bool = False,
        due_date: Optional[datetime] = None,
        priority: Optional[str] = None,
    ) -> Task:
        task = await asyncio.to_thread(
            self.store.create_task,
            user_id,
            title=title,
            description=description,
            completed=completed,
            due_date=due_date,
            priority=self._validate_priority(priority) or Priority.MEDIUM.value,
        )
        logger.info("task_created", task_id=task.id, user_id=user_id)
        return task

    async def update_task(
        self, user_id: str, task_id: str, changes: Dict[str, Any]
    ) -> Task:
        await self._get_owned_task(user_id, task_id, "update")
        for name in _REQUIRED_TASK_FIELDS:
            if name in changes and changes[name] is None:
                raise ValidationError(f"{name} cannot be empty", detail={"field": name})
        if "priority" in changes:
            changes = {**changes, "priority": self._validate_priority(changes["priority"])}
        updated = await asyncio.to_thread(self.store.update_task, task_id, changes)
        if updated is None:
            # deleted between the ownership check and the write
            raise NotFoundError("Task not found")
        logger.info("task_updated", task_id=task_id, user_id=user_id, fields=sorted(changes))
        return updated

    async def delete_task(self, user_id: str, task_id: str) -> None:
        await self._get_owned_task(user_id, task_id, "delete")
        await asyncio.to_thread(self.store.delete_task, task_id)
        logger.info("task_deleted", task_id=task_id, user_id=user_id)

    async def _get_owned_task(self, user_id: str, task_id: str, action: str) -> Task:
        task = await asyncio.to_thread(self.store.get_task, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        if task.user != user_id:
            logger.warning(
                "task_access_denied", task_id=task_id, user_id=user_id, action=action
            )
            if self.settings.strict_task_visibility:
                raise NotFoundError("Task not found")
            raise ForbiddenError(
                f"Not authorized to {_ACTION_VERBS.get(action, action)} this task"
            )
        return task

    def _build_query(
        self,
        user_id: str,
        *,
        completed: Optional[bool],
        priority: Optional[str],
        sort: Optional[str],
        sort_dir: Optional[str],
        page: int,
        limit: Optional[int],
    ) -> TaskQuery:
        if sort:
            try:
                sort_field = TaskSortField(sort)
            except ValueError as exc:
                allowed = ", ".join(field.value for field in TaskSortField)
                raise ValidationError(
                    f"sort must be one of: {allowed}", detail={"field": "sort"}
                ) from exc
            # explicit sort fields default to ascending
            descending = (sort_dir or "asc").lower() == "desc"
        else:
            sort_field = TaskSortField.CREATED_AT
            descending = (sort_dir or "desc").lower() == "desc"
        if sort_dir and sort_dir.lower() not in {"asc", "desc"}:
            raise ValidationError("sortDir must be asc or desc", detail={"field": "sortDir"})
        if page < 1:
            raise ValidationError("page must be at least 1", detail={"field": "page"})
        size = limit if limit is not None else self.settings.default_page_size
        if size < 1:
            raise ValidationError("limit must be at least 1", detail={"field": "limit"})
        return TaskQuery(
            user_id=user_id,
            completed=completed,
            priority=self._validate_priority(priority),
            sort=sort_field,
            descending=descending,
            page=page,
            limit=min(size, self.settings.max_page_size),
        )

    @staticmethod
    def _validate_priority(priority: Optional[str]) -> Optional[str]:
        if priority is None:
            return None
        try:
            return Priority(priority).value
        except ValueError as exc:
            raise ValidationError(
                "priority must be one of: low, medium, high", detail={"field": "priority"}
            ) from exc
