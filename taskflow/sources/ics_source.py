"""External-calendar source: syncs the calendar manager and publishes tasks."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from taskflow import config
from taskflow.events import EventBus, Events
from taskflow.models import Task
from taskflow.sources.ics_manager import IcsManager

logger = logging.getLogger("taskflow.sources.ics")


def source_stats(tasks: list[Task]) -> dict[str, int]:
    """Count calendar tasks per source id."""
    stats: dict[str, int] = {}
    for task in tasks:
        ref = (task.metadata.model_extra or {}).get("icsSource") or {}
        source_id = ref.get("id") or "unknown"
        stats[source_id] = stats.get(source_id, 0) + 1
    return stats


class IcsSource:
    def __init__(
        self,
        bus: EventBus,
        manager: IcsManager,
        min_interval: float = config.ICS_SYNC_MIN_INTERVAL_SECONDS,
    ):
        self.bus = bus
        self.manager = manager
        self.min_interval = min_interval
        self._inflight: Optional[asyncio.Future] = None
        self._last_sync: Optional[float] = None
        self._last_payload: Optional[dict] = None
        self.initialized = False
        self.last_update_seq = 0
        self.sync_count = 0
        self.background_updates = 0
        manager.on_events_updated = self._on_manager_synced

    async def initialize(self) -> None:
        if self.initialized:
            return
        logger.info("Initializing calendar source")
        self.initialized = True
        await self.sync(force=True)

    async def refresh(self) -> dict:
        """Manual refresh, ignoring the rate limit."""
        return await self.sync(force=True)

    async def sync(self, force: bool = False) -> dict:
        """Sync and publish calendar tasks.

        Calls inside the rate-limit window return the last published payload
        without fetching; overlapping calls share one in-flight sync.
        """
        if self._inflight is not None and not self._inflight.done():
            return await asyncio.shield(self._inflight)

        if (
            not force
            and self._last_payload is not None
            and self._last_sync is not None
            and time.monotonic() - self._last_sync < self.min_interval
        ):
            logger.debug("Calendar sync skipped, inside rate-limit window")
            return self._last_payload

        self._inflight = asyncio.ensure_future(self._load_and_emit())
        try:
            return await asyncio.shield(self._inflight)
        finally:
            if self._inflight is not None and self._inflight.done():
                self._inflight = None

    async def _load_and_emit(self) -> dict:
        self._last_sync = time.monotonic()
        self.sync_count += 1
        try:
            await self.manager.sync_all_sources()
            tasks = self.manager.convert_events_to_tasks(self.manager.get_all_events())
        except Exception as e:
            logger.error(f"Error loading calendar events: {e}")
            payload = self.bus.emit(Events.ICS_EVENTS_UPDATED, {
                "events": [],
                "timestamp": int(time.time() * 1000),
                "error": str(e),
            })
            self.last_update_seq = payload["seq"]
            self._last_payload = payload
            return payload

        logger.info(f"Loaded {len(tasks)} calendar tasks")
        return self._publish(tasks)

    def _publish(self, tasks: list[Task]) -> dict:
        payload = self.bus.emit(Events.ICS_EVENTS_UPDATED, {
            "events": tasks,
            "timestamp": int(time.time() * 1000),
            "seq": self.bus.counter.next(),
            "stats": {"total": len(tasks), "sources": source_stats(tasks)},
        })
        self.last_update_seq = payload["seq"]
        self._last_payload = payload
        return payload

    def _on_manager_synced(self, source_id: str, events: list) -> None:
        """A source synced outside ``sync()`` (background refresh): republish."""
        if not self.initialized:
            return
        if self._inflight is not None and not self._inflight.done():
            # The running sync publishes once every source is done
            return
        tasks = self.manager.convert_events_to_tasks(self.manager.get_all_events())
        self.background_updates += 1
        logger.info(f"Calendar {source_id} refreshed in the background, publishing {len(tasks)} tasks")
        self._publish(tasks)

    def get_stats(self) -> dict:
        return {
            "initialized": self.initialized,
            "lastUpdateSeq": self.last_update_seq,
            "syncCount": self.sync_count,
            "backgroundUpdates": self.background_updates,
        }

    async def destroy(self) -> None:
        logger.info("Destroying calendar source")
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
        await self.manager.close()
        self.bus.emit(Events.ICS_EVENTS_UPDATED, {
            "events": [],
            "timestamp": int(time.time() * 1000),
            "destroyed": True,
        })
        self.initialized = False
