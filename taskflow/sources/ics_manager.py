"""Calendar subscriptions: fetch, filter and convert ICS feeds into tasks."""
from __future__ import annotations

import asyncio
import base64
import logging
import re
import time
from datetime import datetime
from typing import Any, Callable, Optional

import httpx

from taskflow import config
from taskflow.models import (
    PROVENANCE_CALENDAR,
    EnhancedDates,
    IcsEvent,
    IcsSourceRef,
    IcsSyncStatus,
    Task,
    TaskMetadata,
    TimeComponent,
    TimeComponents,
)
from taskflow.observability import record_calendar_sync
from taskflow.parsers.ics import IcsParseError, parse_ics
from taskflow.parsers.webcal import convert_webcal_url
from taskflow.settings import IcsSettings, IcsSourceConfig, IcsTextReplacement

logger = logging.getLogger("taskflow.ics")

ERROR_CATEGORIES = ("timeout", "network", "not-found", "auth", "server", "parse", "unknown")

_STATUS_SYMBOLS = {"COMPLETED": "x", "CANCELLED": "-", "TENTATIVE": "?"}
_JS_GROUP_RE = re.compile(r"\$(\d+)")


class IcsFetchError(Exception):
    """A calendar fetch failed; ``category`` is one of ERROR_CATEGORIES."""

    def __init__(self, message: str, category: str | None = None):
        super().__init__(message)
        self.category = category or categorize_error(message)


def categorize_error(message: str | None) -> str:
    if not message:
        return "unknown"
    text = message.lower()
    if "timeout" in text or "timed out" in text:
        return "timeout"
    if "connection" in text or "network" in text:
        return "network"
    if "404" in text or "not found" in text:
        return "not-found"
    if "401" in text or "403" in text or "unauthorized" in text or "forbidden" in text:
        return "auth"
    if any(code in text for code in ("500", "502", "503", "504")):
        return "server"
    if "parse" in text or "invalid" in text:
        return "parse"
    return "unknown"


def _status_category(status_code: int) -> str:
    if status_code == 404:
        return "not-found"
    if status_code in (401, 403):
        return "auth"
    if status_code >= 500:
        return "server"
    return "unknown"


def map_ics_status(status: str | None) -> str:
    return _STATUS_SYMBOLS.get((status or "").upper(), " ")


def map_ics_priority(priority: int | None) -> Optional[int]:
    """ICS 1-4 (high) -> 5, 5 (normal) -> 3, 6-9 (low) -> 1; 0 or absent -> None."""
    if priority is None:
        return None
    if 1 <= priority <= 4:
        return 5
    if priority == 5:
        return 3
    if 6 <= priority <= 9:
        return 1
    return None


def matches_pattern(text: str, pattern: str) -> bool:
    try:
        return re.search(pattern, text, re.IGNORECASE) is not None
    except re.error:
        return pattern.lower() in text.lower()


def _compile_replacement(rule: IcsTextReplacement) -> tuple[re.Pattern, str, int]:
    flags = 0
    if "i" in rule.flags:
        flags |= re.IGNORECASE
    if "m" in rule.flags:
        flags |= re.MULTILINE
    if "s" in rule.flags:
        flags |= re.DOTALL
    count = 0 if "g" in rule.flags else 1
    # JS-style $1 / $& references
    template = _JS_GROUP_RE.sub(r"\\g<\1>", rule.replacement.replace("$&", r"\g<0>"))
    return re.compile(rule.pattern, flags), template, count


def _time_component(ms: int) -> TimeComponent:
    moment = datetime.fromtimestamp(ms / 1000)
    return TimeComponent(
        hour=moment.hour,
        minute=moment.minute,
        second=moment.second or None,
        originalText=moment.strftime("%H:%M"),
        isRange=False,
    )


class IcsManager:
    def __init__(
        self,
        settings: IcsSettings | None = None,
        client: httpx.AsyncClient | None = None,
        on_events_updated: Callable[[str, list[IcsEvent]], Any] | None = None,
    ):
        self.settings = settings or IcsSettings()
        self._client = client
        self._owns_client = client is None
        self.on_events_updated = on_events_updated
        self._cache: dict[str, dict[str, Any]] = {}
        self._statuses: dict[str, IcsSyncStatus] = {}
        self._refresh_tasks: dict[str, asyncio.Task] = {}

    # ── Lifecycle ───────────────────────────────────────────────────

    async def initialize(self) -> None:
        for source in self.settings.sources:
            self._statuses.setdefault(
                source.id,
                IcsSyncStatus(sourceId=source.id, status="idle" if source.enabled else "disabled"),
            )
        if self.settings.enableBackgroundRefresh:
            self.start_background_refresh()
        logger.info(f"Calendar manager initialized with {len(self.settings.sources)} sources")

    def update_settings(self, settings: IcsSettings) -> None:
        self.settings = settings
        known = {s.id for s in settings.sources}
        for source_id in list(self._cache):
            if source_id not in known:
                self._cache.pop(source_id, None)
                self._statuses.pop(source_id, None)
        if settings.enableBackgroundRefresh:
            self.start_background_refresh()
        else:
            self.stop_background_refresh()

    async def close(self) -> None:
        self.stop_background_refresh()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def get_source(self, source_id: str) -> Optional[IcsSourceConfig]:
        return next((s for s in self.settings.sources if s.id == source_id), None)

    # ── Fetching ────────────────────────────────────────────────────

    def _client_for_request(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
            self._owns_client = True
        return self._client

    def _request_headers(self, source: IcsSourceConfig) -> dict[str, str]:
        headers = {"User-Agent": config.ICS_USER_AGENT, "Accept": "text/calendar, */*"}
        auth = source.auth
        if auth is not None:
            if auth.type == "basic" and auth.username:
                token = base64.b64encode(f"{auth.username}:{auth.password or ''}".encode()).decode()
                headers["Authorization"] = f"Basic {token}"
            elif auth.type == "bearer" and auth.token:
                headers["Authorization"] = f"Bearer {auth.token}"
            headers.update(auth.headers)
        cached = self._cache.get(source.id)
        if cached:
            if cached.get("etag"):
                headers["If-None-Match"] = cached["etag"]
            if cached.get("lastModified"):
                headers["If-Modified-Since"] = cached["lastModified"]
        return headers

    async def fetch_source(self, source: IcsSourceConfig) -> list[IcsEvent]:
        """Fetch and parse one feed. Raises IcsFetchError on any failure."""
        converted = convert_webcal_url(source.url)
        if not converted["success"]:
            raise IcsFetchError(f"Invalid calendar URL: {converted['error']}", "parse")
        url = converted["convertedUrl"]
        timeout = self.settings.networkTimeout
        client = self._client_for_request()

        try:
            response = await asyncio.wait_for(
                client.get(url, headers=self._request_headers(source), timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise IcsFetchError(f"Request timeout after {timeout} seconds", "timeout") from e
        except httpx.TimeoutException as e:
            raise IcsFetchError(f"Request timeout: {e}", "timeout") from e
        except (httpx.ConnectError, httpx.NetworkError) as e:
            raise IcsFetchError(f"Network connection failed: {e}", "network") from e
        except httpx.HTTPError as e:
            raise IcsFetchError(str(e) or type(e).__name__) from e

        cached = self._cache.get(source.id)
        if response.status_code == 304 and cached is not None:
            logger.info(f"Calendar {source.id} not modified, using cached events")
            return cached["events"]
        if response.status_code != 200:
            raise IcsFetchError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                _status_category(response.status_code),
            )

        try:
            events = parse_ics(response.text, IcsSourceRef(id=source.id, name=source.name))
        except IcsParseError as e:
            raise IcsFetchError(f"Failed to parse calendar data: {e}", "parse") from e

        self._cache[source.id] = {
            "events": events,
            "timestamp": int(time.time() * 1000),
            "etag": response.headers.get("etag"),
            "lastModified": response.headers.get("last-modified"),
        }
        return events

    def _set_status(self, source_id: str, **updates: Any) -> IcsSyncStatus:
        current = self._statuses.get(source_id) or IcsSyncStatus(sourceId=source_id)
        status = current.model_copy(update=updates)
        self._statuses[source_id] = status
        return status

    async def sync_source(self, source_id: str) -> dict:
        """Sync one source and return ``{success, events?, error?, category?, timestamp}``."""
        source = self.get_source(source_id)
        if source is None:
            raise KeyError(f"Source not found: {source_id}")

        self._set_status(source_id, status="syncing")
        started = time.time()
        try:
            events = await self.fetch_source(source)
        except IcsFetchError as e:
            logger.warning(f"Calendar sync failed for {source_id} ({e.category}): {e}")
            self._set_status(source_id, status="error", error=f"{e.category}: {e}", errorCategory=e.category)
            record_calendar_sync(source_id, e.category, 0)
            return {"success": False, "error": str(e), "category": e.category, "timestamp": int(started * 1000)}

        now = int(time.time() * 1000)
        self._set_status(
            source_id,
            status="idle",
            lastSync=now,
            nextSync=now + source.refreshInterval * 60 * 1000,
            eventCount=len(events),
            error=None,
            errorCategory=None,
        )
        record_calendar_sync(source_id, "success", len(events))
        if self.on_events_updated is not None:
            try:
                self.on_events_updated(source_id, events)
            except Exception as e:
                logger.error(f"Calendar update listener failed: {e}")
        return {"success": True, "events": events, "timestamp": now}

    async def sync_all_sources(self) -> dict[str, dict]:
        """Sync every enabled source concurrently."""
        enabled = [s for s in self.settings.sources if s.enabled]
        results = await asyncio.gather(
            *(self.sync_source(s.id) for s in enabled),
            return_exceptions=True,
        )
        out: dict[str, dict] = {}
        for source, result in zip(enabled, results):
            if isinstance(result, BaseException):
                category = categorize_error(str(result))
                logger.error(f"Calendar sync raised for {source.id}: {result}")
                self._set_status(source.id, status="error", error=str(result), errorCategory=category)
                out[source.id] = {"success": False, "error": str(result), "category": category}
            else:
                out[source.id] = result
        return out

    # ── Filtering and conversion ────────────────────────────────────

    def apply_filters(self, events: list[IcsEvent], source: IcsSourceConfig) -> list[IcsEvent]:
        filtered = list(events)
        if not source.showAllDayEvents:
            filtered = [e for e in filtered if not e.allDay]
        if not source.showTimedEvents:
            filtered = [e for e in filtered if e.allDay]

        rules = source.filters
        if rules is not None:
            filtered = [e for e in filtered if self._passes_rules(e, rules)]

        limit = self.settings.maxEventsPerSource
        if len(filtered) > limit:
            filtered = sorted(filtered, key=lambda e: e.dtstart, reverse=True)[:limit]
        return filtered

    @staticmethod
    def _passes_rules(event: IcsEvent, rules) -> bool:
        include = rules.include
        if include is not None:
            if include.summary and not any(matches_pattern(event.summary, p) for p in include.summary):
                return False
            if include.description and event.description and not any(
                matches_pattern(event.description, p) for p in include.description
            ):
                return False
            if include.location and event.location and not any(
                matches_pattern(event.location, p) for p in include.location
            ):
                return False
            if include.categories and not any(c in event.categories for c in include.categories):
                return False

        exclude = rules.exclude
        if exclude is not None:
            if any(matches_pattern(event.summary, p) for p in exclude.summary):
                return False
            if event.description and any(matches_pattern(event.description, p) for p in exclude.description):
                return False
            if event.location and any(matches_pattern(event.location, p) for p in exclude.location):
                return False
            if any(c in event.categories for c in exclude.categories):
                return False
        return True

    def apply_text_replacements(self, event: IcsEvent, source: IcsSourceConfig | None = None) -> IcsEvent:
        source = source or (self.get_source(event.source.id) if event.source else None)
        if source is None or not source.textReplacements:
            return event
        fields = {"summary": event.summary, "description": event.description, "location": event.location}
        for rule in source.textReplacements:
            if not rule.enabled:
                continue
            try:
                regex, template, count = _compile_replacement(rule)
            except re.error as e:
                logger.warning(f"Invalid replacement pattern in rule '{rule.name}': {e}")
                continue
            targets = fields.keys() if rule.target == "all" else [rule.target]
            for name in targets:
                if fields.get(name):
                    fields[name] = regex.sub(template, fields[name], count=count)
        return event.model_copy(update=fields)

    def convert_events_to_tasks(self, events: list[IcsEvent]) -> list[Task]:
        return [self.convert_event_to_task(e) for e in events]

    def convert_event_to_task(self, event: IcsEvent) -> Task:
        processed = self.apply_text_replacements(event)
        source = event.source or IcsSourceRef(id="unknown", name="unknown")
        status = map_ics_status(event.status)

        time_components = None
        enhanced = None
        if not event.allDay:
            time_components = TimeComponents(
                startTime=_time_component(event.dtstart),
                endTime=_time_component(event.dtend) if event.dtend else None,
            )
            enhanced = EnhancedDates(startDateTime=event.dtstart, endDateTime=event.dtend)

        metadata = TaskMetadata(
            tags=list(event.categories),
            priority=map_ics_priority(event.priority),
            startDate=event.dtstart,
            dueDate=event.dtend,
            scheduledDate=event.dtstart,
            project=source.name,
            context=processed.location,
            recurrence=event.rrule,
            timeComponents=time_components,
            enhancedDates=enhanced,
            source="ics",
            icsEvent=processed.model_dump(mode="json", exclude_none=True),
            icsSource={"type": "ics", "id": source.id, "name": source.name},
        )
        return Task(
            id=f"ics-{source.id}-{event.uid}",
            content=processed.summary,
            filePath=f"ics://{source.name}",
            line=0,
            completed=status == "x",
            status=status,
            originalMarkdown=f"- [{status}] {processed.summary}",
            provenance=PROVENANCE_CALENDAR,
            readonly=True,
            metadata=metadata,
        )

    # ── Accessors ───────────────────────────────────────────────────

    def get_events_for_source(self, source_id: str) -> list[IcsEvent]:
        source = self.get_source(source_id)
        cached = self._cache.get(source_id)
        if source is None or cached is None:
            return []
        return self.apply_filters(cached["events"], source)

    def get_all_events(self) -> list[IcsEvent]:
        events: list[IcsEvent] = []
        for source in self.settings.sources:
            if source.enabled:
                events.extend(self.get_events_for_source(source.id))
        return events

    def get_sync_status(self, source_id: str) -> Optional[IcsSyncStatus]:
        return self._statuses.get(source_id)

    def get_all_sync_statuses(self) -> dict[str, IcsSyncStatus]:
        return dict(self._statuses)

    def clear_cache(self, source_id: str | None = None) -> None:
        if source_id is None:
            self._cache.clear()
        else:
            self._cache.pop(source_id, None)

    # ── Background refresh ──────────────────────────────────────────

    def start_background_refresh(self) -> None:
        self.stop_background_refresh()
        for source in self.settings.sources:
            if source.enabled and source.refreshInterval > 0:
                self._refresh_tasks[source.id] = asyncio.ensure_future(
                    self._refresh_loop(source.id, source.refreshInterval * 60)
                )

    def stop_background_refresh(self) -> None:
        for task in self._refresh_tasks.values():
            task.cancel()
        self._refresh_tasks.clear()

    async def _refresh_loop(self, source_id: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sync_source(source_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Background sync failed for {source_id}: {e}")
