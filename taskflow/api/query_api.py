"""Read-side facade over the repository.

Async accessors always read the live index. The ``*_sync`` accessors serve
a snapshot that is at most ``CACHE_TTL_SECONDS`` old; a stale read returns
the previous snapshot and refreshes it in the background.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from taskflow.date_utils import add_days_ms, today_ms
from taskflow.db.repository import TaskRepository
from taskflow.events import EventBus, Events
from taskflow.models import Task

logger = logging.getLogger("taskflow.query")

CACHE_TTL_SECONDS = 0.1


def _contexts_and_projects(tasks: list[Task]) -> dict[str, list[str]]:
    contexts: set[str] = set()
    projects: set[str] = set()
    for task in tasks:
        if task.metadata.context:
            contexts.add(task.metadata.context)
        if task.metadata.project:
            projects.add(task.metadata.project)
        if task.metadata.tgProject is not None and task.metadata.tgProject.name:
            projects.add(task.metadata.tgProject.name)
    return {"contexts": sorted(contexts), "projects": sorted(projects)}


def _is_overdue(task: Task, today: int) -> bool:
    due = task.metadata.dueDate
    return not task.completed and due is not None and due < today


class QueryAPI:
    def __init__(self, repository: TaskRepository, bus: EventBus | None = None):
        self.repository = repository
        self._cache: Optional[list[Task]] = None
        self._cache_time = 0.0
        self._pending: Optional[asyncio.Future] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        if bus is not None:
            self._unsubscribe = bus.subscribe(Events.TASK_CACHE_UPDATED, self._on_cache_updated)

    def _on_cache_updated(self, payload: dict) -> None:
        self.invalidate()

    def invalidate(self) -> None:
        self._cache_time = 0.0

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()

    # ── Fresh reads ─────────────────────────────────────────────────

    async def _load_all(self) -> list[Task]:
        # Yield once so overlapping callers attach to the same future.
        await asyncio.sleep(0)
        tasks = self.repository.all()
        self._cache = tasks
        self._cache_time = time.monotonic()
        return tasks

    async def get_all_tasks(self) -> list[Task]:
        """All tasks; concurrent callers share a single load."""
        if self._pending is not None and not self._pending.done():
            return await asyncio.shield(self._pending)
        self._pending = asyncio.ensure_future(self._load_all())
        try:
            return await asyncio.shield(self._pending)
        finally:
            if self._pending is not None and self._pending.done():
                self._pending = None

    async def get_tasks_by_project(self, project: str) -> list[Task]:
        return self.repository.by_project(project)

    async def get_tasks_by_tags(self, tags: list[str]) -> list[Task]:
        return self.repository.by_tags(tags)

    async def get_tasks_by_status(self, completed: bool) -> list[Task]:
        return self.repository.by_status(completed)

    async def get_tasks_by_date_range(self, start: Any = None, end: Any = None, field: str = "due") -> list[Task]:
        return self.repository.by_date_range(start, end, field)

    async def get_task_by_id(self, task_id: str) -> Optional[Task]:
        return self.repository.by_id(task_id)

    async def query(self, filters: list[dict] | None = None, sort: list[dict] | None = None) -> list[Task]:
        return self.repository.query(filters, sort)

    async def get_tasks_for_file(self, path: str) -> list[Task]:
        tasks = await self.get_all_tasks()
        return [t for t in tasks if t.filePath == path]

    async def get_incomplete_tasks(self) -> list[Task]:
        return await self.get_tasks_by_status(False)

    async def get_completed_tasks(self) -> list[Task]:
        return await self.get_tasks_by_status(True)

    async def get_tasks_due_today(self) -> list[Task]:
        today = today_ms()
        return self.repository.get_tasks_due_between(today, add_days_ms(today, 1))

    async def get_overdue_tasks(self) -> list[Task]:
        today = today_ms()
        return [t for t in await self.get_all_tasks() if _is_overdue(t, today)]

    async def get_available_contexts_and_projects(self) -> dict[str, list[str]]:
        return _contexts_and_projects(await self.get_all_tasks())

    async def get_summary(self) -> dict:
        return self.repository.get_summary()

    async def get_index_summary(self) -> dict:
        summary = self.repository.get_summary()
        return {"total": summary["total"], "byProject": summary["byProject"], "byTag": summary["byTag"]}

    # ── Cached synchronous reads ────────────────────────────────────

    def _cache_fresh(self) -> bool:
        return self._cache is not None and time.monotonic() - self._cache_time <= CACHE_TTL_SECONDS

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._refresh_task = loop.create_task(self._refresh_cache())

    async def _refresh_cache(self) -> None:
        try:
            await self.get_all_tasks()
        except Exception as e:
            logger.error(f"Failed to refresh task cache: {e}")

    def get_all_tasks_sync(self) -> list[Task]:
        if not self._cache_fresh():
            logger.debug("Sync cache miss, scheduling refresh")
            self._schedule_refresh()
            return self._cache or []
        return self._cache

    def get_task_by_id_sync(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.get_all_tasks_sync() if t.id == task_id), None)

    def get_tasks_for_file_sync(self, path: str) -> list[Task]:
        return [t for t in self.get_all_tasks_sync() if t.filePath == path]

    def get_incomplete_tasks_sync(self) -> list[Task]:
        return [t for t in self.get_all_tasks_sync() if not t.completed]

    def get_completed_tasks_sync(self) -> list[Task]:
        return [t for t in self.get_all_tasks_sync() if t.completed]

    def get_tasks_due_today_sync(self) -> list[Task]:
        today = today_ms()
        tomorrow = add_days_ms(today, 1)
        return [
            t for t in self.get_all_tasks_sync()
            if t.metadata.dueDate is not None and today <= t.metadata.dueDate < tomorrow
        ]

    def get_overdue_tasks_sync(self) -> list[Task]:
        today = today_ms()
        return [t for t in self.get_all_tasks_sync() if _is_overdue(t, today)]

    def get_available_contexts_and_projects_sync(self) -> dict[str, list[str]]:
        return _contexts_and_projects(self.get_all_tasks_sync())

    async def ensure_cache(self) -> None:
        """Populate the synchronous cache if it has never been filled."""
        if self._cache is not None:
            return
        try:
            tasks = await self.get_all_tasks()
            logger.info(f"Task cache populated with {len(tasks)} tasks")
        except Exception as e:
            logger.error(f"Failed to populate task cache: {e}")
