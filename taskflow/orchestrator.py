"""Dataflow orchestrator.

Wires sources, parsers, the augmentor and the repository together:

    host change ──► DocumentSource ──► file-updated ──► parse ─► resolve project
                                                        ─► augment ─► repository
    IcsSource ──► ics-events-updated ──► repository (calendar tasks)
    FileSource ──► file-task-updated/removed ──► repository (file tasks)
    WriteAPI ──► task-updated / task-deleted / write-operation-complete ──► repository
"""
from __future__ import annotations

import logging
import posixpath
import time
from typing import Any, Callable, Optional

import aiosqlite
import httpx

from taskflow import config
from taskflow.api.query_api import QueryAPI
from taskflow.api.write_api import WriteAPI
from taskflow.augment.augmentor import AugmentContext, Augmentor
from taskflow.augment.date_inheritance_augmentor import DateInheritanceAugmentor
from taskflow.db.repository import TaskRepository
from taskflow.db.storage import NS_AUGMENTED, NS_CONSOLIDATED, NS_PROJECT, NS_RAW, TaskStorage
from taskflow.debounce import KeyedDebouncer
from taskflow.events import EventBus, Events
from taskflow.models import Task
from taskflow.observability import record_ingestion, record_parser_failure, start_span
from taskflow.parsers.canvas import parse_canvas_tasks
from taskflow.parsers.frontmatter import parse_frontmatter
from taskflow.parsers.markdown_tasks import parse_markdown_tasks
from taskflow.project_resolver import ProjectResolver
from taskflow.services.date_inheritance import DateInheritanceService
from taskflow.services.time_parsing import TimeParsingService
from taskflow.settings import DataflowSettings
from taskflow.sources.document_source import DocumentSource
from taskflow.sources.file_source import FileSource
from taskflow.sources.ics_manager import IcsManager
from taskflow.sources.ics_source import IcsSource

logger = logging.getLogger("taskflow.orchestrator")

SCAN_SUFFIXES = (".md", ".canvas")
REBUILD_SCOPES = {"parser", "augment", "project"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def settings_scopes(old: DataflowSettings, new: DataflowSettings) -> list[str]:
    """Which cache scopes a settings change invalidates."""
    scopes: list[str] = []
    if old.inheritance != new.inheritance or old.dateInheritanceEnabled != new.dateInheritanceEnabled:
        scopes.append("augment")
    if old.projects != new.projects:
        scopes.append("project")
    if old.fileSource != new.fileSource:
        scopes.append("file-source")
    if old.ics != new.ics:
        scopes.append("ics")
    if old.preferMetadataFormat != new.preferMetadataFormat:
        scopes.append("write")
    return scopes


class DataflowOrchestrator:
    def __init__(
        self,
        db: aiosqlite.Connection,
        workspace,
        settings: DataflowSettings | None = None,
        bus: EventBus | None = None,
        http_client: httpx.AsyncClient | None = None,
        process_delay: float = config.PROCESS_DEBOUNCE_SECONDS,
        file_source_scan_delay: float = config.FILE_SOURCE_SCAN_DELAY_SECONDS,
        batch_size: int = config.INITIAL_SCAN_BATCH_SIZE,
    ):
        self.bus = bus or EventBus()
        self.workspace = workspace
        self.settings = settings or DataflowSettings()
        self.batch_size = max(1, batch_size)

        self.storage = TaskStorage(db)
        self.repository = TaskRepository(self.storage, self.bus)
        self.query_api = QueryAPI(self.repository, self.bus)
        self.write_api = WriteAPI(self.bus, workspace, self.repository.by_id, self.settings)

        self.time_service = TimeParsingService()
        self.project_resolver = ProjectResolver(workspace, self.settings.projects)
        self.date_service = DateInheritanceService(workspace)
        self.augmentor = Augmentor(self.settings.inheritance, self._date_augmentor())

        self.document_source = DocumentSource(self.bus, workspace)
        self.file_source = FileSource(
            self.bus, workspace, self.settings.fileSource, scan_delay=file_source_scan_delay
        )
        self.ics_manager = IcsManager(self.settings.ics, client=http_client)
        self.ics_source = IcsSource(self.bus, self.ics_manager)

        self._processing = KeyedDebouncer(process_delay, self._on_process_timer)
        self._unsubscribers: list[Callable[[], None]] = []
        self.initialized = False
        self.last_processed_seq = 0

    def _date_augmentor(self) -> Optional[DateInheritanceAugmentor]:
        if not self.settings.dateInheritanceEnabled:
            return None
        return DateInheritanceAugmentor(self.date_service)

    # ── Lifecycle ───────────────────────────────────────────────────

    async def initialize(self) -> None:
        if self.initialized:
            return
        started = time.monotonic()
        await self.repository.initialize()
        await self.query_api.ensure_cache()

        if self.repository.get_total_task_count() == 0:
            paths = await self.workspace.list_files(SCAN_SUFFIXES)
            logger.info(f"Empty index, scanning {len(paths)} files")
            await self._scan(paths)
            await self.repository.persist()

        self._subscribe()
        self.document_source.initialize()
        self.file_source.initialize()
        await self.ics_manager.initialize()
        if self.settings.ics.sources:
            await self.ics_source.initialize()

        self.initialized = True
        self.bus.emit(Events.CACHE_READY, {"initial": True, "timestamp": _now_ms()})
        logger.info(
            f"Dataflow initialized with {self.repository.get_total_task_count()} tasks "
            f"in {int((time.monotonic() - started) * 1000)}ms"
        )

    def _subscribe(self) -> None:
        handlers = {
            Events.FILE_UPDATED: self._on_file_updated,
            Events.ICS_EVENTS_UPDATED: self._on_ics_events_updated,
            Events.FILE_TASK_UPDATED: self._on_file_task_updated,
            Events.FILE_TASK_REMOVED: self._on_file_task_removed,
            Events.TASK_UPDATED: self._on_task_updated,
            Events.TASK_DELETED: self._on_task_deleted,
            Events.WRITE_OPERATION_COMPLETE: self._on_write_complete,
        }
        for name, handler in handlers.items():
            self._unsubscribers.append(self.bus.subscribe(name, handler))

    async def cleanup(self) -> None:
        self._processing.cancel_all()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.document_source.destroy()
        self.file_source.destroy()
        await self.ics_source.destroy()
        self.query_api.close()
        await self.repository.cleanup()
        self.initialized = False
        logger.info("Dataflow orchestrator cleaned up")

    async def drain(self) -> None:
        """Run every pending debounce and queued event delivery to completion."""
        for _ in range(3):
            self.document_source.flush()
            self._processing.flush()
            await self._processing.drain()
            await self.file_source.drain()
            await self.bus.drain()
            if not self._processing.pending_count and not self.bus.pending_count:
                break

    # ── Event handlers ──────────────────────────────────────────────

    def _on_file_updated(self, payload: dict) -> Any:
        path = payload.get("path")
        reason = payload.get("reason")
        if not path or reason == "error":
            return None
        if reason == "delete":
            self._processing.cancel(path)
            return self.remove_file(path)
        self.date_service.invalidate(path)
        if self.project_resolver.is_config_file(path):
            return self._on_project_config_changed(path)
        self._processing.schedule(path, reason)
        return None

    def _on_process_timer(self, path: str, reason: Any):
        return self.process_file_immediate(path)

    async def _on_ics_events_updated(self, payload: dict) -> None:
        if payload.get("error"):
            logger.warning(f"Calendar sync failed, keeping current calendar tasks: {payload['error']}")
            return
        events = payload.get("events")
        if events is None:
            return
        started = time.monotonic()
        await self.repository.update_ics_events(list(events), payload.get("seq"))
        record_ingestion("calendar", "updated", (time.monotonic() - started) * 1000)

    async def _on_file_task_updated(self, payload: dict) -> None:
        task = payload.get("task")
        if isinstance(task, Task):
            await self.repository.update_file_task(task)

    async def _on_file_task_removed(self, payload: dict) -> None:
        if payload.get("destroyed"):
            for path in self.repository.get_file_task_paths():
                await self.repository.remove_file_task(path)
            return
        path = payload.get("filePath")
        if path:
            await self.repository.remove_file_task(path)

    async def _on_task_updated(self, payload: dict) -> None:
        task = payload.get("task")
        if isinstance(task, Task):
            await self.repository.update_single_task(task)

    async def _on_task_deleted(self, payload: dict) -> None:
        for task_id in payload.get("deletedTaskIds") or [payload.get("taskId")]:
            if task_id:
                await self.repository.remove_task_by_id(task_id)
        path = payload.get("filePath")
        if path:
            # Line numbers below the removed lines have shifted
            self._processing.cancel(path)
            await self.process_file_immediate(path, force=True)

    async def _on_write_complete(self, payload: dict) -> None:
        path = payload.get("path")
        if not path or payload.get("taskId"):
            return
        self._processing.cancel(path)
        await self.process_file_immediate(path, force=True)

    async def _on_project_config_changed(self, path: str) -> None:
        """A project config file changed: re-augment every indexed file below it."""
        self.project_resolver.clear_cache()
        folder = posixpath.dirname(path)
        affected = [
            p for p in self.repository.get_indexed_file_paths()
            if not folder or p.startswith(f"{folder}/")
        ]
        logger.info(f"Project config {path} changed, reprocessing {len(affected)} files")
        for file_path in affected:
            await self.process_file_immediate(file_path, force=True)
        if path not in affected:
            await self.process_file_immediate(path)

    # ── Processing ──────────────────────────────────────────────────

    def parse(self, path: str, content: str) -> list[Task]:
        if path.endswith(".canvas"):
            return parse_canvas_tasks(path, content, self.time_service)
        return parse_markdown_tasks(path, content, self.time_service)

    async def _build_tasks(self, path: str, force: bool = False) -> Optional[list[Task]]:
        """Parse-and-augment pipeline for one file, or None when it no longer exists."""
        stats = await self.workspace.stat(path)
        if stats is None:
            return None
        mtime = stats.get("mtime")
        content = await self.workspace.read(path)

        raw_record = await self.storage.load_raw(path)
        raw_valid = self.storage.is_raw_valid(raw_record, content, mtime)
        if raw_valid and not force:
            cached = await self.storage.load_augmented(path)
            if cached is not None:
                return cached["data"]

        if raw_valid:
            raw_tasks = raw_record["data"]
        else:
            raw_tasks = self.parse(path, content)
            await self.storage.store_raw(path, raw_tasks, content, mtime)

        file_meta = parse_frontmatter(content, path) if path.endswith(".md") else {}
        project = await self.project_resolver.resolve(path, file_meta)
        await self.storage.store_project(path, project.model_dump(mode="json"))

        return await self.augmentor.merge(AugmentContext(
            filePath=path,
            tasks=raw_tasks,
            fileMeta=file_meta,
            projectName=project.tgProject.name if project.tgProject else None,
            projectMeta=project.as_project_meta(),
            fileContent=content,
        ))

    async def process_file_immediate(self, path: str, force: bool = False) -> bool:
        """Process one file now. Returns True when its indexed tasks changed."""
        started = time.monotonic()
        with start_span("taskflow.process_file", {"file.path": path, "force": force}):
            try:
                tasks = await self._build_tasks(path, force)
                if tasks is None:
                    await self.remove_file(path)
                    return False
                self.last_processed_seq = self.bus.counter.next()
                changed = await self.repository.update_file(
                    path, tasks, source_seq=self.last_processed_seq, force_emit=force
                )
            except Exception as e:
                logger.error(f"Error processing {path}: {e}")
                record_parser_failure("canvas" if path.endswith(".canvas") else "markdown")
                record_ingestion("document", "error", (time.monotonic() - started) * 1000)
                self.bus.emit(Events.FILE_UPDATED, {
                    "path": path,
                    "reason": "error",
                    "error": str(e),
                    "timestamp": _now_ms(),
                })
                return False
        record_ingestion("document", "updated" if changed else "unchanged", (time.monotonic() - started) * 1000)
        return changed

    async def process_batch(self, paths: list[str]) -> list[str]:
        """Parse and augment ``paths`` and index them with a single repository update."""
        updates: dict[str, list[Task]] = {}
        for path in paths:
            try:
                tasks = await self._build_tasks(path)
            except Exception as e:
                logger.warning(f"Skipping {path} during batch processing: {e}")
                record_parser_failure("canvas" if path.endswith(".canvas") else "markdown")
                continue
            if tasks is not None:
                updates[path] = tasks
        if not updates:
            return []
        self.last_processed_seq = self.bus.counter.next()
        return await self.repository.update_batch(updates, source_seq=self.last_processed_seq)

    async def _scan(self, paths: list[str]) -> int:
        processed = 0
        for i in range(0, len(paths), self.batch_size):
            batch = paths[i:i + self.batch_size]
            await self.process_batch(batch)
            processed += len(batch)
            logger.info(f"Scanned {processed}/{len(paths)} files")
        return processed

    async def remove_file(self, path: str) -> None:
        self.date_service.invalidate(path)
        self.project_resolver.clear_cache(path)
        await self.repository.remove_file(path)

    async def rename_file(self, old_path: str, new_path: str) -> bool:
        await self.remove_file(old_path)
        return await self.process_file_immediate(new_path)

    async def rebuild(self) -> None:
        """Drop every cache and reindex the whole workspace."""
        self._processing.cancel_all()
        await self.repository.clear()
        self.project_resolver.clear_cache()
        self.date_service.clear_cache()
        paths = await self.workspace.list_files(SCAN_SUFFIXES)
        await self._scan(paths)
        await self.repository.persist()
        if self.file_source.initialized:
            await self.file_source.refresh()
        if self.settings.ics.sources:
            await self.ics_source.refresh()
        self.query_api.invalidate()
        self.bus.emit(Events.CACHE_READY, {"initial": False, "timestamp": _now_ms()})
        logger.info(f"Rebuild complete with {self.repository.get_total_task_count()} tasks")

    # ── Settings ────────────────────────────────────────────────────

    async def update_settings(self, settings: DataflowSettings) -> list[str]:
        """Apply new settings and invalidate the caches they affect."""
        scopes = settings_scopes(self.settings, settings)
        self.settings = settings
        self.write_api.update_settings(settings)
        self.project_resolver.update_settings(settings.projects)
        self.augmentor.update_settings(settings.inheritance)
        self.augmentor.date_augmentor = self._date_augmentor()
        if "file-source" in scopes:
            self.file_source.update_settings(settings.fileSource)
        if "ics" in scopes:
            self.ics_manager.update_settings(settings.ics)
            if settings.ics.sources and self.initialized:
                if self.ics_source.initialized:
                    await self.ics_source.refresh()
                else:
                    await self.ics_source.initialize()
        await self.on_settings_change(scopes)
        return scopes

    async def on_settings_change(self, scopes: list[str]) -> None:
        if "parser" in scopes:
            await self.storage.clear_namespace(NS_RAW)
        if "augment" in scopes or "project" in scopes:
            await self.storage.clear_namespace(NS_AUGMENTED)
            await self.storage.clear_namespace(NS_PROJECT)
            self.project_resolver.clear_cache()
        if "index" in scopes:
            await self.storage.clear_namespace(NS_CONSOLIDATED)

        self.bus.emit(Events.SETTINGS_CHANGED, {"scopes": scopes, "timestamp": _now_ms()})

        if REBUILD_SCOPES.intersection(scopes):
            await self.rebuild()

    # ── Introspection ───────────────────────────────────────────────

    async def get_stats(self) -> dict:
        return {
            "indexStats": {
                "totalTasks": self.repository.get_total_task_count(),
                "indexedFiles": len(self.repository.get_indexed_file_paths()),
                "icsEvents": len(self.repository.ics_events),
                "fileTasks": len(self.repository.file_tasks),
            },
            "storageStats": await self.storage.get_stats(),
            "queueSize": self._processing.pending_count,
            "lastProcessedSeq": self.last_processed_seq,
            "sourceStats": {
                "document": self.document_source.get_stats(),
                "fileSource": self.file_source.get_stats(),
                "ics": self.ics_source.get_stats(),
            },
        }

