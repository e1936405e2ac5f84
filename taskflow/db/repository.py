"""Task repository: the in-memory index plus its persisted cache.

Document tasks live in the primary ``TaskIndexer``. Calendar tasks and
file-level tasks are kept in their own collections (mirrored into a second
indexer for querying) and every read merges the three.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

from taskflow import config
from taskflow.db.indexer import TaskIndexer, effective_project
from taskflow.db.storage import TaskStorage, hash_content, serialize_tasks
from taskflow.debounce import KeyedDebouncer
from taskflow.events import EventBus, Events
from taskflow.models import PROVENANCE_FILE, Task

logger = logging.getLogger("taskflow.repository")

ICS_MARKER = "ics:events"
_DATE_FIELDS = {"due": "dueDate", "start": "startDate", "scheduled": "scheduledDate"}


def file_task_marker(path: str) -> str:
    return f"file-task:{path}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class TaskRepository:
    def __init__(
        self,
        storage: TaskStorage,
        bus: EventBus,
        indexer: TaskIndexer | None = None,
        persist_delay: float = config.PERSIST_DELAY_SECONDS,
        max_queue_size: int = config.PERSIST_MAX_QUEUE_SIZE,
        max_interval: float = config.PERSIST_MAX_INTERVAL_SECONDS,
    ):
        self.storage = storage
        self.bus = bus
        self.indexer = indexer or TaskIndexer()
        # Calendar and file-level tasks, indexed separately from documents
        self._extra = TaskIndexer()
        self.ics_events: list[Task] = []
        self.file_tasks: dict[str, Task] = {}

        self.max_queue_size = max_queue_size
        self.max_interval = max_interval
        self._persist_queue: set[str] = set()
        self._persist_timer = KeyedDebouncer(persist_delay, self._on_persist_timer)
        self._persist_lock = asyncio.Lock()
        self._last_persist = time.monotonic()
        self.persist_count = 0
        self.persist_failures = 0
        self.last_sequence = 0

    # ── Lifecycle ───────────────────────────────────────────────────

    async def initialize(self) -> bool:
        """Restore persisted state. Returns True when a snapshot was restored."""
        restored = False
        try:
            snapshot = await self.storage.load_consolidated()
            if snapshot and snapshot.get("tasks") is not None:
                self.indexer.restore_from_snapshot(snapshot)
                restored = True
                logger.info(f"Index restored with {len(self.indexer.tasks)} tasks")

            self._set_ics_events(await self.storage.load_ics_events())
            for path, task in (await self.storage.load_file_tasks()).items():
                self.file_tasks[path] = task
                self._extra.update_task(task)
            logger.info(
                f"Loaded {len(self.ics_events)} calendar tasks and {len(self.file_tasks)} file tasks"
            )
        except Exception as e:
            logger.error(f"Repository restore failed, starting cold: {e}")
            self.indexer.clear()
            self._extra.clear()
            self.ics_events = []
            self.file_tasks = {}
            return False

        if restored:
            self.bus.emit(Events.CACHE_READY, {"initial": True, "timestamp": _now_ms()})
        return restored

    async def cleanup(self) -> None:
        """Flush pending persistence and cancel timers."""
        self._persist_timer.cancel_all()
        await self._persist_timer.drain()
        await self._execute_persist()
        # A failed final write must not leave a retry behind
        self._persist_timer.cancel_all()

    async def clear(self) -> None:
        self._persist_timer.cancel_all()
        self._persist_queue.clear()
        self.indexer.clear()
        self._extra.clear()
        self.ics_events = []
        self.file_tasks = {}
        await self.storage.clear()

    # ── Emission ────────────────────────────────────────────────────

    def _emit_updated(self, changed_files: list[str], changed: int, source_seq: int | None = None, **stats: Any) -> None:
        payload = {
            "changedFiles": changed_files,
            "stats": {"total": self.get_total_task_count(), "changed": changed, **stats},
            "timestamp": _now_ms(),
            "seq": self.bus.counter.next(),
        }
        if source_seq is not None:
            payload["sourceSeq"] = source_seq
        self.last_sequence = payload["seq"]
        self.bus.emit(Events.TASK_CACHE_UPDATED, payload)

    # ── Document tasks ──────────────────────────────────────────────

    async def _has_changes(self, path: str, tasks: list[Task]) -> bool:
        record = await self.storage.load_augmented(path)
        return record is None or record.get("hash") != hash_content(serialize_tasks(tasks))

    async def update_file(
        self,
        path: str,
        tasks: list[Task],
        source_seq: int | None = None,
        force_emit: bool = False,
        persist: bool = True,
    ) -> bool:
        """Index ``tasks`` for ``path``. Returns True when they differ from the stored record."""
        changed = await self._has_changes(path, tasks)
        self.indexer.update_index_with_tasks(path, tasks)
        if changed and persist:
            await self.storage.store_augmented(path, tasks)
            await self._schedule_persist(path)
        if changed or force_emit:
            self._emit_updated([path], len(tasks), source_seq)
        return changed

    async def update_batch(
        self,
        updates: dict[str, list[Task]],
        source_seq: int | None = None,
        force_emit: bool = False,
        persist: bool = True,
    ) -> list[str]:
        """Apply many file updates with one persist and one event."""
        changed_files: list[str] = []
        changed_tasks = 0
        for path, tasks in updates.items():
            changed = await self._has_changes(path, tasks)
            self.indexer.update_index_with_tasks(path, tasks)
            if changed:
                if persist:
                    await self.storage.store_augmented(path, tasks)
                changed_files.append(path)
                changed_tasks += len(tasks)

        if changed_files and persist:
            self._persist_queue.update(changed_files)
            await self._execute_persist()
            logger.info(f"Persisted index after batch update of {len(changed_files)} files")
        if changed_files or force_emit:
            self._emit_updated(changed_files or list(updates.keys()), changed_tasks, source_seq)
        return changed_files

    async def remove_file(self, path: str) -> None:
        removed = self.indexer.remove_file(path)
        await self.storage.clear_file(path)
        await self._schedule_persist(path)
        self._emit_updated([path], 0, removed=len(removed))

    async def remove_task_by_id(self, task_id: str) -> Optional[Task]:
        task = self.indexer.remove_task(task_id)
        if task is None:
            return await self._remove_extra_task(task_id)
        remaining = self.indexer.get_tasks_for_file(task.filePath)
        await self.storage.store_augmented(task.filePath, remaining)
        await self._schedule_persist(task.filePath)
        self._emit_updated([task.filePath], 1)
        return task

    async def update_single_task(self, task: Task) -> bool:
        """Replace one task within its file record without reparsing the file."""
        if task.provenance == PROVENANCE_FILE:
            await self.update_file_task(task)
            return True
        path = task.filePath
        if not path:
            return False

        record = await self.storage.load_augmented(path)
        tasks = record["data"] if record else self.indexer.get_tasks_for_file(path)
        for i, existing in enumerate(tasks):
            if existing.id == task.id:
                tasks[i] = task
                break
        else:
            logger.warning(f"Task {task.id} not found in {path}")
            return False

        self.indexer.update_index_with_tasks(path, tasks)
        await self.storage.store_augmented(path, tasks)
        await self._schedule_persist(path)
        self._emit_updated([path], 1)
        return True

    # ── Calendar and file-level tasks ───────────────────────────────

    def _set_ics_events(self, events: list[Task]) -> None:
        for old in self.ics_events:
            self._extra.remove_task(old.id)
        self.ics_events = list(events)
        for task in self.ics_events:
            self._extra.update_task(task)

    async def _remove_extra_task(self, task_id: str) -> Optional[Task]:
        """Drop a calendar or file-level task by id.

        A removed calendar task comes back on the next sync of its source.
        """
        task = self._extra.get_task_by_id(task_id)
        if task is None:
            return None
        file_task = self.file_tasks.get(task.filePath or "")
        if file_task is not None and file_task.id == task_id:
            await self.remove_file_task(task.filePath)
            return task
        remaining = [t for t in self.ics_events if t.id != task_id]
        self._set_ics_events(remaining)
        await self.storage.store_ics_events(self.ics_events)
        self._emit_updated([ICS_MARKER], 1, icsEvents=len(self.ics_events))
        return task

    async def update_ics_events(self, events: list[Task], source_seq: int | None = None) -> None:
        logger.info(f"Updating {len(events)} calendar tasks")
        self._set_ics_events(events)
        await self.storage.store_ics_events(self.ics_events)
        self._emit_updated([ICS_MARKER], len(events), source_seq, icsEvents=len(events))

    async def update_file_task(self, task: Task) -> None:
        if not task.filePath:
            return
        previous = self.file_tasks.get(task.filePath)
        if previous is not None and previous.id != task.id:
            self._extra.remove_task(previous.id)
        self.file_tasks[task.filePath] = task
        self._extra.update_task(task)
        await self._schedule_persist(file_task_marker(task.filePath))
        self._emit_updated([file_task_marker(task.filePath)], 1, fileTasks=len(self.file_tasks))

    async def remove_file_task(self, path: str) -> None:
        task = self.file_tasks.pop(path, None)
        if task is None:
            return
        self._extra.remove_task(task.id)
        await self._schedule_persist(file_task_marker(path))
        self._emit_updated([file_task_marker(path)], -1, fileTasks=len(self.file_tasks))

    # ── Reads ───────────────────────────────────────────────────────

    def all(self) -> list[Task]:
        return self.indexer.get_all_tasks() + self.ics_events + list(self.file_tasks.values())

    def by_project(self, project: str) -> list[Task]:
        return self.indexer.get_tasks_by_project(project) + self._extra.get_tasks_by_project(project)

    def by_tags(self, tags: list[str]) -> list[Task]:
        return self.indexer.get_tasks_by_tags(tags) + self._extra.get_tasks_by_tags(tags)

    def by_status(self, completed: bool) -> list[Task]:
        return self.indexer.get_tasks_by_completion(completed) + self._extra.get_tasks_by_completion(completed)

    def by_date_range(self, start: Any = None, end: Any = None, field: str = "due") -> list[Task]:
        index_field = _DATE_FIELDS.get(field, field)
        return (
            self.indexer.get_tasks_by_date_range(index_field, start, end)
            + self._extra.get_tasks_by_date_range(index_field, start, end)
        )

    def by_id(self, task_id: str) -> Optional[Task]:
        return self.indexer.get_task_by_id(task_id) or self._extra.get_task_by_id(task_id)

    def by_file(self, path: str) -> list[Task]:
        tasks = self.indexer.get_tasks_for_file(path)
        file_task = self.file_tasks.get(path)
        return tasks + [file_task] if file_task is not None else tasks

    def query(self, filters: list[dict] | None = None, sort: list[dict] | None = None) -> list[Task]:
        merged = self.indexer.query_tasks(filters, None) + self._extra.query_tasks(filters, None)
        return TaskIndexer._sort(merged, sort or [])

    def get_total_task_count(self) -> int:
        return len(self.indexer.tasks) + len(self.ics_events) + len(self.file_tasks)

    def get_indexed_file_paths(self) -> list[str]:
        return self.indexer.get_file_paths()

    def get_file_task_paths(self) -> list[str]:
        return list(self.file_tasks.keys())

    def get_summary(self) -> dict:
        by_project: dict[str, int] = {}
        by_tag: dict[str, int] = {}
        by_status = {"completed": 0, "incomplete": 0}
        for task in self.all():
            project = effective_project(task)
            if project:
                by_project[project] = by_project.get(project, 0) + 1
            for tag in task.metadata.tags:
                by_tag[tag] = by_tag.get(tag, 0) + 1
            by_status["completed" if task.completed else "incomplete"] += 1
        return {
            "total": self.get_total_task_count(),
            "byProject": by_project,
            "byTag": by_tag,
            "byStatus": by_status,
            "icsEvents": len(self.ics_events),
            "fileTasks": len(self.file_tasks),
        }

    def get_tasks_due_between(self, start_ms: int, end_ms: int) -> list[Task]:
        return [
            t for t in self.all()
            if t.metadata.dueDate is not None and start_ms <= t.metadata.dueDate < end_ms
        ]

    # ── Persistence ─────────────────────────────────────────────────

    async def persist(self) -> None:
        """Write the consolidated snapshot and file-level tasks now."""
        await self.storage.store_consolidated(self.indexer.get_index_snapshot())
        await self.storage.store_file_tasks(self.file_tasks)
        self.persist_count += 1

    async def _schedule_persist(self, unit: str) -> None:
        self._persist_queue.add(unit)
        overdue = time.monotonic() - self._last_persist > self.max_interval
        if len(self._persist_queue) >= self.max_queue_size or overdue:
            await self._execute_persist()
        else:
            self._persist_timer.schedule("persist")

    def _on_persist_timer(self, key: str, value: Any):
        return self._execute_persist()

    async def _execute_persist(self) -> None:
        self._persist_timer.cancel("persist")
        async with self._persist_lock:
            if not self._persist_queue:
                return
            pending = set(self._persist_queue)
            self._persist_queue.clear()
            try:
                await self.persist()
            except Exception as e:
                # Keep the units queued and retry after the debounce delay
                self._persist_queue.update(pending)
                self.persist_failures += 1
                logger.error(f"Persisting index failed ({len(pending)} pending units), retrying: {e}")
                self._persist_timer.schedule("persist")
                return
            self._last_persist = time.monotonic()
            logger.debug(f"Persisted index after {len(pending)} changes")

    @property
    def pending_persist_count(self) -> int:
        return len(self._persist_queue)
