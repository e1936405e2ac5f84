"""Local-document source: turns host change notifications into ``file-updated`` events.

Notifications come from the file watcher or from the ingest endpoint and
may arrive in several shapes; ``decode_change_payload`` normalises them into
``HostChange`` records first.
"""
from __future__ import annotations

import asyncio
import logging
import posixpath
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from watchfiles import Change

from taskflow import config
from taskflow.debounce import KeyedDebouncer
from taskflow.events import EventBus, Events
from taskflow.workspace import is_hidden

logger = logging.getLogger("taskflow.sources.document")

RELEVANT_EXTENSIONS = {".md", ".canvas"}
IGNORED_EXTENSIONS = {".tmp", ".swp", ".log"}
SKIP_MARKER_TTL_SECONDS = 5.0
SKIP_MARKER_RELEASE_SECONDS = 0.1

_REASON_ALIASES = {
    "create": "create",
    "created": "create",
    "add": "create",
    "added": "create",
    "modify": "modify",
    "modified": "modify",
    "change": "modify",
    "changed": "modify",
    "delete": "delete",
    "deleted": "delete",
    "remove": "delete",
    "removed": "delete",
    "rename": "rename",
    "renamed": "rename",
    "move": "rename",
    "moved": "rename",
    "metadata": "metadata",
    "frontmatter": "metadata",
    "resolve": "resolve",
    "resolved": "resolve",
}

_WATCHFILES_REASONS = {
    Change.added: "create",
    Change.modified: "modify",
    Change.deleted: "delete",
}


@dataclass
class HostChange:
    path: str
    reason: str  # create | modify | delete | rename | metadata | resolve
    oldPath: Optional[str] = None


def _is_watchfiles_tuple(item: Any) -> bool:
    return (
        isinstance(item, tuple)
        and len(item) == 2
        and isinstance(item[0], (Change, int))
        and not isinstance(item[0], bool)
        and isinstance(item[1], str)
    )


def _decode_mapping(item: dict) -> list[HostChange]:
    if "changes" in item:
        return decode_change_payload(item["changes"])
    path = item.get("path") or item.get("newPath")
    if not isinstance(path, str) or not path:
        logger.warning(f"Change notification without a path: {item!r}")
        return []
    raw_reason = str(item.get("reason") or item.get("type") or "modify").lower()
    reason = _REASON_ALIASES.get(raw_reason)
    if reason is None:
        logger.warning(f"Unknown change reason '{raw_reason}' for {path}")
        return []
    old_path = item.get("oldPath")
    if reason == "rename" and not old_path:
        # A rename without its origin is just a new file
        reason = "create"
    return [HostChange(path=path, reason=reason, oldPath=old_path)]


def decode_change_payload(payload: Any) -> list[HostChange]:
    """Decode a host notification into canonical change records.

    Accepted shapes: a list of changes, ``{"changes": [...]}``, a single
    ``{"path", "reason"}`` object, a bare path string, ``watchfiles``
    ``(Change, path)`` tuples, or a set of them. Anything else decodes to
    an empty list.
    """
    if payload is None:
        return []
    if isinstance(payload, HostChange):
        return [payload]
    if isinstance(payload, str):
        return [HostChange(path=payload, reason="modify")] if payload else []
    if _is_watchfiles_tuple(payload):
        try:
            reason = _WATCHFILES_REASONS[Change(payload[0])]
        except (KeyError, ValueError):
            logger.warning(f"Unknown watchfiles change: {payload!r}")
            return []
        return [HostChange(path=payload[1], reason=reason)]
    if isinstance(payload, dict):
        return _decode_mapping(payload)
    if isinstance(payload, (list, tuple, set, frozenset)):
        changes: list[HostChange] = []
        for item in payload:
            changes.extend(decode_change_payload(item))
        return changes
    logger.warning(f"Unrecognised change payload of type {type(payload).__name__}")
    return []


class DocumentSource:
    def __init__(
        self,
        bus: EventBus,
        workspace=None,
        debounce_delay: float = config.SOURCE_DEBOUNCE_SECONDS,
        batch_delay: float = config.METADATA_BATCH_SECONDS,
    ):
        self.bus = bus
        self.workspace = workspace
        self._file_changes = KeyedDebouncer(debounce_delay, self._emit_debounced)
        self._metadata_changes = KeyedDebouncer(debounce_delay, self._emit_debounced)
        self._batch_timer = KeyedDebouncer(batch_delay, self._process_batch)
        self._pending_batch: set[str] = set()
        self._skip: dict[str, float] = {}
        self._skip_handles: dict[str, asyncio.TimerHandle] = {}
        self._unsubscribers: list[Callable[[], None]] = []

    # ── Lifecycle ───────────────────────────────────────────────────

    def initialize(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers.append(self.bus.subscribe(Events.WRITE_OPERATION_START, self._on_write_start))
        self._unsubscribers.append(self.bus.subscribe(Events.WRITE_OPERATION_COMPLETE, self._on_write_complete))
        logger.info("Document source initialized")

    def destroy(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._file_changes.cancel_all()
        self._metadata_changes.cancel_all()
        self._batch_timer.cancel_all()
        self._pending_batch.clear()
        for handle in self._skip_handles.values():
            handle.cancel()
        self._skip_handles.clear()
        self._skip.clear()

    # ── Echo suppression ────────────────────────────────────────────

    def _on_write_start(self, payload: dict) -> None:
        path = payload.get("path")
        if path:
            self._mark_skip(path, SKIP_MARKER_TTL_SECONDS)

    def _on_write_complete(self, payload: dict) -> None:
        path = payload.get("path")
        if path and path in self._skip:
            self._mark_skip(path, SKIP_MARKER_RELEASE_SECONDS)

    def _mark_skip(self, path: str, ttl: float) -> None:
        self._skip[path] = time.monotonic() + ttl
        old = self._skip_handles.pop(path, None)
        if old is not None:
            old.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._skip_handles[path] = loop.call_later(ttl, self._release_skip, path)

    def _release_skip(self, path: str) -> None:
        self._skip.pop(path, None)
        self._skip_handles.pop(path, None)

    def is_skipped(self, path: str) -> bool:
        expires = self._skip.get(path)
        if expires is None:
            return False
        if time.monotonic() >= expires:
            self._release_skip(path)
            return False
        return True

    # ── Notification handlers ───────────────────────────────────────

    def _normalize(self, path: str) -> Optional[str]:
        if self.workspace is not None:
            return self.workspace.relative(path)
        return path.replace("\\", "/")

    def is_relevant(self, path: str) -> bool:
        ext = posixpath.splitext(path)[1].lower()
        if not ext or ext in IGNORED_EXTENSIONS or ext not in RELEVANT_EXTENSIONS:
            return False
        return not is_hidden(path)

    def handle_changes(self, changes: list[HostChange]) -> int:
        """Dispatch decoded changes. Returns how many were relevant."""
        handled = 0
        for change in changes:
            path = self._normalize(change.path)
            if path is None:
                continue
            if change.reason == "rename" and change.oldPath:
                old = self._normalize(change.oldPath)
                if old is not None and self.on_rename(old, path):
                    handled += 1
                continue
            handler = {
                "create": self.on_create,
                "modify": self.on_modify,
                "delete": self.on_delete,
                "metadata": self.on_metadata_change,
                "resolve": self.on_metadata_resolved,
            }.get(change.reason)
            if handler is not None and handler(path):
                handled += 1
        return handled

    def ingest(self, payload: Any) -> int:
        return self.handle_changes(decode_change_payload(payload))

    def on_create(self, path: str) -> bool:
        if not self.is_relevant(path):
            return False
        logger.info(f"File created: {path}")
        self._emit(path, "create")
        return True

    def on_modify(self, path: str) -> bool:
        if not self.is_relevant(path):
            return False
        if self.is_skipped(path):
            logger.debug(f"Skipping modify of {path} (write in progress)")
            return False
        self._file_changes.schedule(path, "modify")
        return True

    def on_delete(self, path: str) -> bool:
        if not self.is_relevant(path):
            return False
        self._file_changes.cancel(path)
        self._metadata_changes.cancel(path)
        logger.info(f"File deleted: {path}")
        self._emit(path, "delete")
        return True

    def on_rename(self, old_path: str, new_path: str) -> bool:
        if not self.is_relevant(new_path) and not self.is_relevant(old_path):
            return False
        self._file_changes.cancel(old_path)
        self._metadata_changes.cancel(old_path)
        logger.info(f"File renamed: {old_path} -> {new_path}")
        self._emit(old_path, "delete")
        if self.is_relevant(new_path):
            self._emit(new_path, "rename")
        return True

    def on_metadata_change(self, path: str) -> bool:
        if not self.is_relevant(path):
            return False
        if self.is_skipped(path):
            return False
        self._metadata_changes.schedule(path, "frontmatter")
        return True

    def on_metadata_resolved(self, path: str) -> bool:
        if not self.is_relevant(path):
            return False
        self._pending_batch.add(path)
        self._batch_timer.schedule("batch")
        return True

    # ── Emission ────────────────────────────────────────────────────

    def _emit(self, path: str, reason: str) -> None:
        self.bus.emit(Events.FILE_UPDATED, {
            "path": path,
            "reason": reason,
            "timestamp": int(time.time() * 1000),
        })

    def _emit_debounced(self, path: str, reason: Any) -> None:
        self._emit(path, reason or "modify")

    def _process_batch(self, key: str = "batch", value: Any = None) -> None:
        if not self._pending_batch:
            return
        paths = sorted(self._pending_batch)
        self._pending_batch.clear()
        logger.info(f"Processing metadata batch of {len(paths)} files")
        for path in paths:
            self._emit(path, "frontmatter")

    def trigger_file_update(self, path: str, reason: str = "modify") -> None:
        self._emit(path, reason)

    def flush(self) -> None:
        """Emit every pending change now."""
        self._file_changes.flush()
        self._metadata_changes.flush()
        self._batch_timer.cancel_all()
        self._process_batch()

    def get_stats(self) -> dict:
        return {
            "pendingFileChanges": self._file_changes.pending_count,
            "pendingMetadataChanges": self._metadata_changes.pending_count,
            "pendingBatchSize": len(self._pending_batch),
            "skipMarkers": len(self._skip),
        }
