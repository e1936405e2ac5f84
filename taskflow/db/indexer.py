"""In-memory task index with secondary lookup maps.

Every secondary map is ``key -> set[task id]``. Date maps are bucketed by
local ``YYYY-MM-DD`` keys. Empty sets are removed so the maps never hold
stale keys.
"""
from __future__ import annotations

import functools
import logging
import time
from typing import Any, Iterable, Optional

from taskflow.date_utils import format_date_key, to_epoch_ms
from taskflow.models import Task

logger = logging.getLogger("taskflow.indexer")

DATE_INDEXES = ("dueDate", "startDate", "scheduledDate", "cancelledDate")
SET_INDEXES = (
    "files",
    "tags",
    "projects",
    "contexts",
    "completed",
    "priority",
    *DATE_INDEXES,
    "onCompletion",
    "dependsOn",
    "taskId",
)


def effective_project(task: Task) -> Optional[str]:
    meta = task.metadata
    if meta.project:
        return meta.project
    if meta.tgProject is not None:
        return meta.tgProject.name
    return None


def _compare_values(a: Any, b: Any) -> int:
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return (a > b) - (a < b)
    if isinstance(a, str) and isinstance(b, str):
        a, b = a.lower(), b.lower()
        return (a > b) - (a < b)
    sa, sb = str(a), str(b)
    return (sa > sb) - (sa < sb)


def _date_bound(value: Any, name: str) -> Optional[str]:
    if value is None or value == "":
        return None
    ms = to_epoch_ms(value)
    if ms is None:
        raise ValueError(f"Invalid {name} date: {value!r}")
    return format_date_key(ms)


def _sort_value(task: Task, field: str) -> Any:
    if field in Task.model_fields and field != "metadata":
        return getattr(task, field)
    return getattr(task.metadata, field, None)


class TaskIndexer:
    def __init__(self):
        self.tasks: dict[str, Task] = {}
        self.file_mtimes: dict[str, int] = {}
        self.file_processed_times: dict[str, int] = {}
        self._reset_maps()

    def _reset_maps(self) -> None:
        self.maps: dict[str, dict[Any, set[str]]] = {name: {} for name in SET_INDEXES}

    # ── Map maintenance ─────────────────────────────────────────────

    def _keys_for(self, task: Task) -> Iterable[tuple[str, Any]]:
        meta = task.metadata
        yield "files", task.filePath
        yield "completed", task.completed
        for tag in meta.tags:
            yield "tags", tag
        project = effective_project(task)
        if project:
            yield "projects", project
        if meta.context:
            yield "contexts", meta.context
        if meta.priority is not None:
            yield "priority", meta.priority
        for field in DATE_INDEXES:
            value = getattr(meta, field)
            if value:
                yield field, format_date_key(value)
        if meta.onCompletion:
            yield "onCompletion", meta.onCompletion
        for dep in meta.dependsOn:
            yield "dependsOn", dep
        if meta.id:
            yield "taskId", meta.id

    def _add_to_maps(self, task: Task) -> None:
        for name, key in self._keys_for(task):
            self.maps[name].setdefault(key, set()).add(task.id)

    def _remove_from_maps(self, task: Task) -> None:
        for name, key in self._keys_for(task):
            bucket = self.maps[name].get(key)
            if bucket is None:
                continue
            bucket.discard(task.id)
            if not bucket:
                del self.maps[name][key]

    # ── Mutations ───────────────────────────────────────────────────

    def update_index_with_tasks(self, file_path: str, tasks: list[Task], mtime: int | None = None) -> None:
        """Replace every task of ``file_path`` with ``tasks``."""
        self.remove_file(file_path)
        for task in tasks:
            previous = self.tasks.get(task.id)
            if previous is not None:
                # Same id from another file; last writer wins
                self._remove_from_maps(previous)
            self.tasks[task.id] = task
            self._add_to_maps(task)
        if mtime is not None:
            self.file_mtimes[file_path] = mtime
        self.file_processed_times[file_path] = int(time.time() * 1000)

    def remove_file(self, file_path: str) -> list[str]:
        ids = list(self.maps["files"].get(file_path, ()))
        for task_id in ids:
            self.remove_task(task_id)
        self.file_mtimes.pop(file_path, None)
        self.file_processed_times.pop(file_path, None)
        return ids

    def remove_task(self, task_id: str) -> Optional[Task]:
        task = self.tasks.pop(task_id, None)
        if task is not None:
            self._remove_from_maps(task)
        return task

    def update_task(self, task: Task) -> None:
        previous = self.tasks.get(task.id)
        if previous is not None:
            self._remove_from_maps(previous)
        self.tasks[task.id] = task
        self._add_to_maps(task)

    def clear(self) -> None:
        self.tasks.clear()
        self.file_mtimes.clear()
        self.file_processed_times.clear()
        self._reset_maps()

    # ── Lookups ─────────────────────────────────────────────────────

    def get_task_by_id(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    def get_tasks_by_ids(self, ids: Iterable[str]) -> list[Task]:
        return [self.tasks[i] for i in ids if i in self.tasks]

    def get_all_tasks(self) -> list[Task]:
        return list(self.tasks.values())

    def get_tasks_for_file(self, file_path: str) -> list[Task]:
        tasks = self.get_tasks_by_ids(self.maps["files"].get(file_path, ()))
        return sorted(tasks, key=lambda t: t.line)

    def get_file_paths(self) -> list[str]:
        return list(self.maps["files"].keys())

    def get_tasks_by_project(self, project: str) -> list[Task]:
        return self.get_tasks_by_ids(self.maps["projects"].get(project, ()))

    def get_tasks_by_tags(self, tags: list[str]) -> list[Task]:
        if not tags:
            return []
        ids: Optional[set[str]] = None
        for tag in tags:
            bucket = self.maps["tags"].get(tag, set())
            ids = set(bucket) if ids is None else ids & bucket
            if not ids:
                return []
        return self.get_tasks_by_ids(ids or ())

    def get_tasks_by_completion(self, completed: bool) -> list[Task]:
        return self.get_tasks_by_ids(self.maps["completed"].get(completed, ()))

    def get_tasks_by_date_range(self, field: str, start: Any = None, end: Any = None) -> list[Task]:
        """Tasks whose ``field`` day bucket falls within [start, end] (inclusive).

        Raises ValueError for an unsupported field or an unparseable bound.
        """
        if field not in DATE_INDEXES:
            raise ValueError(f"Unsupported date field: {field}")
        lo = _date_bound(start, "start")
        hi = _date_bound(end, "end")
        ids: set[str] = set()
        for key, bucket in self.maps[field].items():
            if lo is not None and key < lo:
                continue
            if hi is not None and key > hi:
                continue
            ids |= bucket
        return self.get_tasks_by_ids(ids)

    def get_contexts(self) -> list[str]:
        return sorted(self.maps["contexts"].keys())

    def get_projects(self) -> list[str]:
        return sorted(self.maps["projects"].keys())

    # ── Query ───────────────────────────────────────────────────────

    def query_tasks(self, filters: list[dict] | None = None, sort: list[dict] | None = None) -> list[Task]:
        """Apply ``filters`` (``{type, operator, value, conjunction}``) and sort.

        Filters combine left to right; ``conjunction: "OR"`` unions with the
        running result, anything else intersects.
        """
        result: Optional[set[str]] = None
        for flt in filters or []:
            matched = self._apply_filter(flt)
            if result is None:
                result = matched
            elif str(flt.get("conjunction", "AND")).upper() == "OR":
                result |= matched
            else:
                result &= matched
        if result is None:
            result = set(self.tasks.keys())
        return self._sort(self.get_tasks_by_ids(result), sort or [])

    def _all_ids(self) -> set[str]:
        return set(self.tasks.keys())

    def _ids_with_any(self, name: str) -> set[str]:
        ids: set[str] = set()
        for bucket in self.maps[name].values():
            ids |= bucket
        return ids

    def _apply_filter(self, flt: dict) -> set[str]:
        kind = flt.get("type")
        op = flt.get("operator", "=")
        value = flt.get("value")

        if kind == "tag":
            tagged = set(self.maps["tags"].get(value, set()))
            if op in ("contains", "="):
                return tagged
            if op == "!=":
                return self._all_ids() - tagged
            return set()

        if kind in ("project", "context"):
            name = "projects" if kind == "project" else "contexts"
            if op == "=":
                return set(self.maps[name].get(value, set()))
            if op == "!=":
                return self._all_ids() - self.maps[name].get(value, set())
            if op == "empty":
                return self._all_ids() - self._ids_with_any(name)
            return set()

        if kind == "status":
            if op == "=":
                return set(self.maps["completed"].get(bool(value), set()))
            return set()

        if kind == "priority":
            if op == "=":
                return set(self.maps["priority"].get(value, set()))
            if op in (">", "<"):
                ids: set[str] = set()
                for prio, bucket in self.maps["priority"].items():
                    if (op == ">" and prio > value) or (op == "<" and prio < value):
                        ids |= bucket
                return ids
            return set()

        if kind in ("dueDate", "startDate", "scheduledDate"):
            buckets = self.maps[kind]
            if op == "=":
                key = value if isinstance(value, str) else format_date_key(to_epoch_ms(value))
                return set(buckets.get(key, set()))
            if op in ("before", "after"):
                ms = to_epoch_ms(value)
                if ms is None:
                    return set()
                pivot = format_date_key(ms)
                ids = set()
                for key, bucket in buckets.items():
                    if (op == "before" and key < pivot) or (op == "after" and key > pivot):
                        ids |= bucket
                return ids
            if op == "empty":
                return self._all_ids() - self._ids_with_any(kind)
            return set()

        logger.warning(f"Unsupported filter type: {kind}")
        return set()

    @staticmethod
    def _sort(tasks: list[Task], sort: list[dict]) -> list[Task]:
        if not sort:
            far = float("inf")
            return sorted(
                tasks,
                key=lambda t: (-(t.metadata.priority or 0), t.metadata.dueDate or far),
            )

        def compare(a: Task, b: Task) -> int:
            for criterion in sort:
                field = criterion.get("field", "")
                asc = criterion.get("direction", "asc") != "desc"
                va, vb = _sort_value(a, field), _sort_value(b, field)
                if va is None and vb is None:
                    continue
                if va is None:
                    return 1 if asc else -1
                if vb is None:
                    return -1 if asc else 1
                result = _compare_values(va, vb)
                if result:
                    return result if asc else -result
            return 0

        return sorted(tasks, key=functools.cmp_to_key(compare))

    # ── Snapshots ───────────────────────────────────────────────────

    def get_index_snapshot(self) -> dict:
        """JSON-serialisable copy of the whole index."""
        snapshot: dict[str, Any] = {
            "tasks": {tid: t.model_dump(mode="json", exclude_none=True) for tid, t in self.tasks.items()},
            "fileMtimes": dict(self.file_mtimes),
            "fileProcessedTimes": dict(self.file_processed_times),
        }
        for name, buckets in self.maps.items():
            snapshot[name] = {_encode_key(k): sorted(v) for k, v in buckets.items()}
        return snapshot

    def restore_from_snapshot(self, snapshot: dict) -> None:
        """Load a snapshot. Secondary maps are rebuilt from the tasks."""
        self.clear()
        for tid, data in (snapshot.get("tasks") or {}).items():
            task = Task.model_validate(data)
            self.tasks[tid] = task
            self._add_to_maps(task)
        self.file_mtimes.update(snapshot.get("fileMtimes") or {})
        self.file_processed_times.update(snapshot.get("fileProcessedTimes") or {})

    def get_stats(self) -> dict:
        return {
            "totalTasks": len(self.tasks),
            "totalFiles": len(self.maps["files"]),
            "tags": len(self.maps["tags"]),
            "projects": len(self.maps["projects"]),
            "contexts": len(self.maps["contexts"]),
        }


def _encode_key(key: Any) -> str:
    if isinstance(key, bool):
        return "true" if key else "false"
    return str(key)
