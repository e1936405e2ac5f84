"""File-as-task source.

Whole documents can be tasks when their frontmatter, tags or path say so.
The source listens to ``file-updated``, re-evaluates the file after a short
debounce and emits ``file-task-updated`` / ``file-task-removed``.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import posixpath
import re
import time
from typing import Any, Callable, Optional

from taskflow import config
from taskflow.date_utils import to_epoch_ms
from taskflow.debounce import KeyedDebouncer
from taskflow.events import EventBus, Events
from taskflow.models import PROVENANCE_FILE, Task, TaskMetadata
from taskflow.parsers.frontmatter import extract_headings, extract_tags, parse_frontmatter
from taskflow.parsers.markdown_tasks import convert_priority_value
from taskflow.settings import FileSourceSettings, validate_file_source_settings
from taskflow.workspace import is_hidden

logger = logging.getLogger("taskflow.sources.file")

FILE_TASK_PREFIX = "file-source:"
_FALLBACK_SYMBOLS = {
    "completed": "x",
    "done": "x",
    "finished": "x",
    "in-progress": "/",
    "in progress": "/",
    "doing": "/",
    "planned": "?",
    "todo": "?",
    "cancelled": "-",
    "canceled": "-",
    "not-started": " ",
    "not started": " ",
}
_TEMPLATE_KEYS = ("template", "templateFile", "templatePath")


def file_task_id(path: str) -> str:
    return f"{FILE_TASK_PREFIX}{path}"


def glob_to_regex(pattern: str) -> re.Pattern:
    """``*`` stays within a segment, ``**`` crosses segments, ``?`` is one char.

    A trailing ``/`` matches everything below the directory.
    """
    escaped = re.sub(r"([.+^${}()|\[\]\\])", r"\\\1", pattern)
    converted = (
        escaped.replace("**", "\0")
        .replace("*", "[^/]*")
        .replace("\0", ".*")
        .replace("?", "[^/]")
    )
    if pattern.endswith("/"):
        return re.compile(f"^{converted}.*")
    return re.compile(f"^{converted}$")


def _new_breakdown() -> dict[str, int]:
    return {"metadata": 0, "tag": 0, "path": 0, "template": 0}


class FileSource:
    def __init__(
        self,
        bus: EventBus,
        workspace,
        settings: FileSourceSettings | None = None,
        scan_delay: float = config.FILE_SOURCE_SCAN_DELAY_SECONDS,
        debounce_delay: float = config.SOURCE_DEBOUNCE_SECONDS,
    ):
        self.bus = bus
        self.workspace = workspace
        self.settings = settings or FileSourceSettings()
        self.scan_delay = scan_delay
        self._pending = KeyedDebouncer(debounce_delay, self._on_debounced)
        self._tracked: dict[str, dict[str, Any]] = {}
        self._unsubscribers: list[Callable[[], None]] = []
        self._scan_task: Optional[asyncio.Task] = None
        self.initialized = False
        self.last_update_seq = 0
        self.stats: dict[str, Any] = {
            "trackedFileCount": 0,
            "recognitionBreakdown": _new_breakdown(),
            "lastUpdate": 0,
        }

    # ── Lifecycle ───────────────────────────────────────────────────

    def initialize(self) -> None:
        if self.initialized or not self.settings.enabled:
            return
        for problem in validate_file_source_settings(self.settings):
            logger.warning(f"File source settings: {problem}")
        self._unsubscribers.append(self.bus.subscribe(Events.FILE_UPDATED, self._on_file_updated))
        self.initialized = True
        self._scan_task = asyncio.ensure_future(self._delayed_scan())
        logger.info(f"File source initialized (strategies: {', '.join(self.settings.enabled_strategies())})")

    async def _delayed_scan(self) -> None:
        if self.scan_delay > 0:
            await asyncio.sleep(self.scan_delay)
        try:
            await self.perform_initial_scan()
        except Exception as e:
            logger.error(f"Initial file-task scan failed: {e}")

    def destroy(self) -> None:
        if not self.initialized:
            return
        self._pending.cancel_all()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._scan_task is not None and not self._scan_task.done():
            self._scan_task.cancel()
        self._scan_task = None
        for path in list(self._tracked):
            self.remove_file_task(path)
        self.stats = {"trackedFileCount": 0, "recognitionBreakdown": _new_breakdown(), "lastUpdate": 0}
        self.initialized = False
        self.bus.emit(Events.FILE_TASK_REMOVED, {
            "filePath": None,
            "destroyed": True,
            "timestamp": int(time.time() * 1000),
        })
        logger.info("File source destroyed")

    def update_settings(self, settings: FileSourceSettings) -> None:
        previous = self.settings
        self.settings = settings
        if not settings.enabled and self.initialized:
            self.destroy()
        elif settings.enabled and not self.initialized:
            self.initialize()
        elif self.initialized and settings != previous:
            # Recognition or task properties changed: re-evaluate every file
            if self._scan_task is not None and not self._scan_task.done():
                self._scan_task.cancel()
            self._scan_task = asyncio.ensure_future(self._rescan())

    async def _rescan(self) -> None:
        try:
            await self.refresh()
        except Exception as e:
            logger.error(f"File-task rescan failed: {e}")

    async def drain(self) -> None:
        await self._pending.drain()
        if self._scan_task is not None and not self._scan_task.done():
            await asyncio.gather(self._scan_task, return_exceptions=True)

    # ── Events ──────────────────────────────────────────────────────

    def is_relevant(self, path: str) -> bool:
        return bool(path) and path.endswith(".md") and not is_hidden(path)

    def _on_file_updated(self, payload: dict) -> None:
        path = payload.get("path")
        if not self.initialized or not self.settings.enabled or not self.is_relevant(path or ""):
            return
        self._pending.schedule(path, payload.get("reason", "modify"))

    def _on_debounced(self, path: str, reason: Any):
        return self.process_file_update(path, reason or "modify")

    async def process_file_update(self, path: str, reason: str) -> None:
        try:
            if reason == "delete":
                self.remove_file_task(path)
                return
            task = await self.evaluate_file(path)
            if task is not None:
                self._track(path, task)
            elif path in self._tracked:
                self.remove_file_task(path)
        except Exception as e:
            logger.error(f"Error processing file update for {path}: {e}")

    # ── Recognition ─────────────────────────────────────────────────

    def _matches_metadata(self, fm: dict) -> bool:
        rule = self.settings.recognitionStrategies.metadata
        present = [f for f in rule.taskFields if fm.get(f) is not None]
        if rule.requireAllFields:
            return bool(rule.taskFields) and len(present) == len(rule.taskFields)
        return bool(present)

    def _matches_tags(self, tags: list[str]) -> bool:
        rule = self.settings.recognitionStrategies.tags
        for wanted in rule.taskTags:
            for tag in tags:
                if rule.matchMode == "prefix" and tag.startswith(wanted):
                    return True
                if rule.matchMode == "contains" and wanted in tag:
                    return True
                if rule.matchMode not in ("prefix", "contains") and tag == wanted:
                    return True
        return False

    def _matches_path(self, path: str) -> bool:
        rule = self.settings.recognitionStrategies.paths
        normalized = path.replace("\\", "/")
        for pattern in rule.taskPaths:
            candidate = pattern.replace("\\", "/")
            if rule.matchMode == "regex":
                try:
                    if re.search(candidate, normalized):
                        return True
                except re.error as e:
                    logger.warning(f"Invalid path regex {pattern!r}: {e}")
            elif rule.matchMode == "glob":
                if glob_to_regex(candidate).match(normalized):
                    return True
            elif normalized.startswith(candidate):
                return True
        return False

    def _matches_template(self, path: str, fm: dict) -> bool:
        rule = self.settings.recognitionStrategies.templates
        for template in rule.templatePaths:
            if template and template in path:
                return True
            if rule.checkTemplateMetadata and any(fm.get(k) == template for k in _TEMPLATE_KEYS):
                return True
        return False

    def match_strategy(self, path: str, fm: dict, tags: list[str]) -> Optional[tuple[str, str]]:
        """First matching ``(strategy, criteria)`` in metadata, tags, paths, templates order."""
        strategies = self.settings.recognitionStrategies
        if strategies.metadata.enabled and self._matches_metadata(fm):
            return "metadata", "frontmatter"
        if strategies.tags.enabled and self._matches_tags(tags):
            return "tag", "file-tags"
        if strategies.paths.enabled and self._matches_path(path):
            return "path", ", ".join(strategies.paths.taskPaths)
        if strategies.templates.enabled and self._matches_template(path, fm):
            return "template", ", ".join(strategies.templates.templatePaths)
        return None

    # ── Task building ───────────────────────────────────────────────

    def task_content(self, path: str, fm: dict, headings: list[tuple[int, str]]) -> str:
        props = self.settings.fileTaskProperties
        file_name = posixpath.basename(path)
        stem = posixpath.splitext(file_name)[0]
        title = fm.get("title")
        title = str(title) if title else None

        if props.contentSource == "title":
            return title or stem
        if props.contentSource == "h1":
            return next((text for level, text in headings if level == 1), stem)
        if props.contentSource == "custom":
            value = fm.get(props.customContentField) if props.customContentField else None
            if value:
                return str(value)
            if props.preferFrontmatterTitle and title:
                return title
            return stem
        if props.preferFrontmatterTitle and title:
            return title
        return stem if props.stripExtension else file_name

    def to_symbol(self, value: Any) -> str:
        default = self.settings.fileTaskProperties.defaultStatus
        if value is None or value == "":
            return default
        text = str(value)
        if len(text) == 1:
            return text
        mapping = self.settings.statusMapping
        if mapping.enabled:
            symbol = mapping.to_symbol(text)
            if symbol is not None:
                return symbol
        return _FALLBACK_SYMBOLS.get(text.lower(), default)

    def map_symbol_to_metadata(self, symbol: str) -> str:
        return self.settings.statusMapping.to_metadata(symbol)

    def build_task(
        self,
        path: str,
        fm: dict,
        tags: list[str],
        headings: list[tuple[int, str]],
        strategy: tuple[str, str],
        timestamps: dict | None = None,
    ) -> Task:
        props = self.settings.fileTaskProperties
        content = self.task_content(path, fm, headings)
        status = self.to_symbol(fm.get("status"))
        priority = convert_priority_value(fm.get("priority"))
        if priority is None:
            priority = props.defaultPriority

        metadata = TaskMetadata(
            dueDate=to_epoch_ms(fm.get("dueDate") or fm.get("due")),
            startDate=to_epoch_ms(fm.get("startDate") or fm.get("start")),
            scheduledDate=to_epoch_ms(fm.get("scheduledDate") or fm.get("scheduled")),
            priority=priority,
            project=str(fm["project"]) if fm.get("project") else None,
            context=str(fm["context"]) if fm.get("context") else None,
            area=str(fm["area"]) if fm.get("area") else None,
            tags=list(tags),
            source="file-source",
            recognitionStrategy=strategy[0],
            recognitionCriteria=strategy[1],
            fileTimestamps=(
                {"created": timestamps.get("ctime"), "modified": timestamps.get("mtime")} if timestamps else None
            ),
        )

        return Task(
            id=file_task_id(path),
            content=content,
            filePath=path,
            line=0,
            completed=status in ("x", "X"),
            status=status,
            originalMarkdown=f"**{content}**",
            provenance=PROVENANCE_FILE,
            metadata=metadata,
        )

    async def evaluate_file(self, path: str) -> Optional[Task]:
        """Build the file task for ``path``, or None if no strategy matches."""
        if not self.is_relevant(path) or not await self.workspace.exists(path):
            return None
        text = await self.workspace.read(path)
        fm = parse_frontmatter(text, path)
        tags = extract_tags(text)
        strategy = self.match_strategy(path, fm, tags)
        if strategy is None:
            return None
        return self.build_task(path, fm, tags, extract_headings(text), strategy, await self.workspace.stat(path))

    # ── Tracking and emission ───────────────────────────────────────

    @staticmethod
    def _signature(task: Task) -> str:
        body = task.model_dump(mode="json", exclude_none=True)
        body["metadata"].pop("fileTimestamps", None)
        return hashlib.sha1(json.dumps(body, sort_keys=True, default=str).encode("utf-8")).hexdigest()

    def _track(self, path: str, task: Task) -> None:
        signature = self._signature(task)
        existing = self._tracked.get(path)
        if existing is not None and existing["hash"] == signature:
            return
        strategy = task.metadata.recognitionStrategy
        if existing is None:
            self.stats["trackedFileCount"] += 1
            self.stats["recognitionBreakdown"][strategy] += 1
            action = "created"
        else:
            previous = existing["task"].metadata.recognitionStrategy
            if previous != strategy:
                self.stats["recognitionBreakdown"][previous] -= 1
                self.stats["recognitionBreakdown"][strategy] += 1
            action = "updated"
        self._tracked[path] = {"hash": signature, "task": task, "lastUpdated": int(time.time() * 1000)}
        self.stats["lastUpdate"] = int(time.time() * 1000)
        payload = self.bus.emit(Events.FILE_TASK_UPDATED, {
            "action": action,
            "task": task,
            "timestamp": int(time.time() * 1000),
        })
        self.last_update_seq = payload["seq"]
        logger.info(f"File task {action}: {path}")

    def remove_file_task(self, path: str) -> bool:
        entry = self._tracked.pop(path, None)
        if entry is None:
            return False
        strategy = entry["task"].metadata.recognitionStrategy
        self.stats["trackedFileCount"] = max(0, self.stats["trackedFileCount"] - 1)
        self.stats["recognitionBreakdown"][strategy] = max(0, self.stats["recognitionBreakdown"][strategy] - 1)
        payload = self.bus.emit(Events.FILE_TASK_REMOVED, {
            "filePath": path,
            "timestamp": int(time.time() * 1000),
        })
        self.last_update_seq = payload["seq"]
        logger.info(f"Removed file task: {path}")
        return True

    # ── Scanning ────────────────────────────────────────────────────

    async def _scan(self) -> tuple[list[str], set[str], set[str]]:
        """Evaluate every markdown file: ``(paths, matched, failed)``."""
        paths = await self.workspace.list_markdown_files()
        matched: set[str] = set()
        failed: set[str] = set()
        for path in paths:
            if not self.is_relevant(path):
                continue
            try:
                task = await self.evaluate_file(path)
            except Exception as e:
                logger.error(f"Error scanning {path}: {e}")
                failed.add(path)
                continue
            if task is not None:
                self._track(path, task)
                matched.add(path)
        return paths, matched, failed

    async def perform_initial_scan(self) -> int:
        """Evaluate every markdown file. Returns the number of file tasks found."""
        paths, matched, _ = await self._scan()
        logger.info(f"Initial scan complete: {len(paths)} files, {len(matched)} file tasks")
        if not matched and paths:
            logger.info(
                f"No file tasks found; enabled strategies: {', '.join(self.settings.enabled_strategies())}"
            )
        return len(matched)

    async def refresh(self) -> int:
        """Re-evaluate every file and drop tracked tasks that no longer match."""
        if not self.initialized:
            return 0
        _, matched, failed = await self._scan()
        stale = [p for p in self._tracked if p not in matched and p not in failed]
        for path in stale:
            self.remove_file_task(path)
        logger.info(f"File-task refresh: {len(matched)} tracked, {len(stale)} removed")
        return len(matched)

    def get_all_file_tasks(self) -> list[Task]:
        return [entry["task"] for entry in self._tracked.values()]

    def get_stats(self) -> dict:
        return {
            "initialized": self.initialized,
            "trackedFileCount": self.stats["trackedFileCount"],
            "recognitionBreakdown": dict(self.stats["recognitionBreakdown"]),
            "lastUpdate": self.stats["lastUpdate"],
            "lastUpdateSeq": self.last_update_seq,
            "pendingUpdates": self._pending.pending_count,
        }
