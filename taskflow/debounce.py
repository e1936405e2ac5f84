"""Per-key trailing debounce on the running asyncio loop."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger("taskflow.debounce")


class KeyedDebouncer:
    """Collapse bursts of calls per key into one trailing invocation.

    ``schedule(key, value)`` (re)starts the key's timer; when it fires the
    callback receives the key and the most recent value. Coroutine callbacks
    are run as tasks and can be awaited with ``drain()``.
    """

    def __init__(self, delay: float, callback: Callable[[str, Any], Any]):
        self.delay = delay
        self._callback = callback
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._values: dict[str, Any] = {}
        self._running: set[asyncio.Task] = set()

    def schedule(self, key: str, value: Any = None) -> None:
        loop = asyncio.get_running_loop()
        existing = self._handles.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._values[key] = value
        self._handles[key] = loop.call_later(self.delay, self._fire, key)

    def _fire(self, key: str) -> None:
        self._handles.pop(key, None)
        value = self._values.pop(key, None)
        try:
            result = self._callback(key, value)
        except Exception as e:
            logger.error(f"Debounced callback for {key} failed: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._running.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Debounced task failed: {task.exception()}")

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        self._values.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        self._values.clear()

    def flush(self) -> None:
        """Fire every pending key now."""
        for key in list(self._handles):
            handle = self._handles.get(key)
            if handle is not None:
                handle.cancel()
            self._fire(key)

    async def drain(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    def is_pending(self, key: str) -> bool:
        return key in self._handles

    @property
    def pending_count(self) -> int:
        return len(self._handles)
