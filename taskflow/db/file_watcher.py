"""Workspace watcher built on watchfiles.

Raw ``(Change, path)`` batches go straight to the local-document source,
which owns debouncing, rename pairing and skip markers.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchfiles import Change, DefaultFilter, awatch

from taskflow.sources.document_source import RELEVANT_EXTENSIONS

logger = logging.getLogger("taskflow.watcher")


class TaskFileFilter(DefaultFilter):
    """DefaultFilter (VCS dirs, editor swap files) narrowed to task-bearing files."""

    def __call__(self, change: Change, path: str) -> bool:
        return Path(path).suffix.lower() in RELEVANT_EXTENSIONS and super().__call__(change, path)


class FileWatcher:
    def __init__(self, debounce_ms: int = 200):
        self.debounce_ms = debounce_ms
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.batches_forwarded = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, source, root: Path) -> None:
        """Watch ``root`` in the background, forwarding batches to ``source.ingest``."""
        if self.is_running:
            logger.warning("File watcher already running")
            return
        root = Path(root)
        if not root.exists():
            logger.warning(f"Workspace {root} does not exist, not watching")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(source, root, self._stop_event))
        logger.info(f"Watching {root} for task file changes")

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"File watcher stopped after {self.batches_forwarded} batches")

    async def _run(self, source, root: Path, stop_event: asyncio.Event) -> None:
        try:
            async for changes in awatch(
                root,
                watch_filter=TaskFileFilter(),
                debounce=self.debounce_ms,
                stop_event=stop_event,
            ):
                batch = sorted(changes, key=lambda item: (item[1], int(item[0])))
                try:
                    accepted = source.ingest(batch)
                except Exception as e:
                    logger.error(f"Could not forward {len(batch)} changes: {e}")
                    continue
                self.batches_forwarded += 1
                logger.debug(f"Forwarded {accepted}/{len(batch)} changes")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"File watcher error: {e}")


# Shared by the app lifespan
file_watcher = FileWatcher()
