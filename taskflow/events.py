"""In-process event bus with sequence stamping.

Every payload that passes through ``EventBus.emit`` is stamped with a
monotonic ``seq`` taken from an injected ``SequenceCounter``. Consumers use
it to recognise their own writes coming back to them.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger("taskflow.events")


class Events:
    CACHE_READY = "cache-ready"
    TASK_CACHE_UPDATED = "task-cache-updated"
    FILE_UPDATED = "file-updated"
    PROJECT_DATA_UPDATED = "project-data-updated"
    SETTINGS_CHANGED = "settings-changed"

    TASK_COMPLETED = "task-completed"
    TASK_ADDED = "task-added"
    TASK_UPDATED = "task-updated"
    TASK_DELETED = "task-deleted"

    WRITE_OPERATION_START = "write-operation-start"
    WRITE_OPERATION_COMPLETE = "write-operation-complete"

    ICS_EVENTS_UPDATED = "ics-events-updated"
    FILE_TASK_UPDATED = "file-task-updated"
    FILE_TASK_REMOVED = "file-task-removed"


class SequenceCounter:
    """Monotonic counter shared by everything that stamps events."""

    def __init__(self, start: int = 0):
        self._value = start

    def next(self) -> int:
        self._value += 1
        return self._value

    @property
    def current(self) -> int:
        return self._value


Handler = Callable[[dict], Union[None, Awaitable[None]]]


class _Subscription:
    __slots__ = ("id", "name", "handler", "tail")

    def __init__(self, sub_id: int, name: str, handler: Handler):
        self.id = sub_id
        self.name = name
        self.handler = handler
        # Last scheduled delivery for this subscriber; new deliveries chain after it.
        self.tail: Optional[asyncio.Task] = None


class EventBus:
    """Named-event pub/sub.

    Synchronous handlers run inline during ``emit``. Coroutine handlers are
    chained per subscriber so each subscriber sees its events of one name in
    emission order. No ordering is promised across different names.
    """

    def __init__(self, counter: SequenceCounter | None = None):
        self.counter = counter or SequenceCounter()
        self._subs: dict[str, list[_Subscription]] = {}
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        sub = _Subscription(next(self._ids), name, handler)
        self._subs.setdefault(name, []).append(sub)

        def _unsubscribe() -> None:
            subs = self._subs.get(name)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subs[name]

        return _unsubscribe

    def subscriber_count(self, name: str) -> int:
        return len(self._subs.get(name, []))

    def emit(self, name: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        data = dict(payload or {})
        if data.get("seq") is None:
            data["seq"] = self.counter.next()

        for sub in list(self._subs.get(name, [])):
            try:
                result = sub.handler(data)
            except Exception as e:
                logger.error(f"Handler for '{name}' failed: {e}")
                continue
            if inspect.isawaitable(result):
                self._chain(sub, result)
        return data

    def _chain(self, sub: _Subscription, awaitable: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running loop, dropping async delivery of '{sub.name}'")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        previous = sub.tail

        async def _deliver() -> None:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            try:
                await awaitable
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Async handler for '{sub.name}' failed: {e}")

        task = loop.create_task(_deliver())
        sub.tail = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every queued async delivery (including cascades) has run."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        self._subs.clear()
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
