"""Time-of-day and date expression extraction from task text."""
from __future__ import annotations

import logging
import re
from collections import OrderedDict
from datetime import date, timedelta
from typing import Optional

from taskflow.models import TimeComponent, TimeComponents

logger = logging.getLogger("taskflow.services.time_parsing")

TIME_24H = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?\b")
TIME_12H = re.compile(r"\b(1[0-2]|0?[1-9]):([0-5]\d)(?::([0-5]\d))?\s*(AM|PM)\b", re.IGNORECASE)
TIME_RANGE = re.compile(
    r"\b([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?\s*[-~～]\s*([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?\b"
)
TIME_RANGE_12H = re.compile(
    r"\b(1[0-2]|0?[1-9]):([0-5]\d)(?::([0-5]\d))?\s*(AM|PM)?\s*[-~～]\s*"
    r"(1[0-2]|0?[1-9]):([0-5]\d)(?::([0-5]\d))?\s*(AM|PM)\b",
    re.IGNORECASE,
)
_RANGE_SPLIT = re.compile(r"\s*[-~～]\s*")
_SINGLE_TIME = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(am|pm)?$", re.IGNORECASE)

START_KEYWORDS = ("start", "begin", "from", "starting", "begins")
SCHEDULED_KEYWORDS = ("scheduled", "on", "at", "planned", "set for", "arranged")
DUE_KEYWORDS = ("due", "deadline", "by", "until", "before", "expires", "ends")
CONTEXT_WINDOW = 20

ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
US_DATE = re.compile(r"\b(\d{2})/(\d{2})/(\d{4})\b")
EU_DATE = re.compile(r"\b(\d{2})[-.](\d{2})[-.](\d{4})\b")
RELATIVE_DATE = re.compile(r"\b(today|tomorrow|yesterday)\b", re.IGNORECASE)
WEEKDAY = re.compile(r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b", re.IGNORECASE)
_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

CACHE_SIZE = 100


def _keyword_pattern(keyword: str) -> re.Pattern:
    return re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)")


_START_RES = [_keyword_pattern(k) for k in START_KEYWORDS]
_SCHEDULED_RES = [_keyword_pattern(k) for k in SCHEDULED_KEYWORDS]
_DUE_RES = [_keyword_pattern(k) for k in DUE_KEYWORDS]


def parse_time_component(text: str, meridiem: str | None = None) -> Optional[TimeComponent]:
    """Parse ``HH:MM[:SS][ am|pm]`` into a 24h component."""
    match = _SINGLE_TIME.match(text.strip())
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3)) if match.group(3) else None
    suffix = (match.group(4) or meridiem or "").lower()
    if suffix:
        if hour < 1 or hour > 12:
            return None
        if suffix == "pm" and hour != 12:
            hour += 12
        elif suffix == "am" and hour == 12:
            hour = 0
    if hour > 23 or minute > 59 or (second is not None and second > 59):
        return None
    return TimeComponent(hour=hour, minute=minute, second=second, originalText=text.strip())


def classify_time_context(text: str, expression: str, index: int) -> str:
    """Return ``start``, ``scheduled`` or ``due`` from nearby keywords."""
    before = text[max(0, index - CONTEXT_WINDOW):index].lower()
    after = text[index + len(expression):index + len(expression) + CONTEXT_WINDOW].lower()
    context = f"{before} {after}"
    if any(p.search(context) for p in _START_RES):
        return "start"
    if any(p.search(context) for p in _SCHEDULED_RES):
        return "scheduled"
    if any(p.search(context) for p in _DUE_RES):
        return "due"
    if "@" in context:
        return "scheduled"
    return "due"


def _overlaps(spans: list[tuple[int, int]], index: int) -> bool:
    return any(start <= index < end for start, end in spans)


def _assign(components: TimeComponents, kind: str, component: TimeComponent) -> None:
    if kind == "start" and components.startTime is None:
        components.startTime = component
    elif kind == "due" and components.dueTime is None:
        components.dueTime = component
    elif kind == "scheduled" and components.scheduledTime is None:
        components.scheduledTime = component


def _extract(text: str) -> TimeComponents:
    components = TimeComponents()
    range_spans: list[tuple[int, int]] = []

    for pattern in (TIME_RANGE_12H, TIME_RANGE):
        for match in pattern.finditer(text):
            if _overlaps(range_spans, match.start()):
                continue
            parts = _RANGE_SPLIT.split(match.group(0))
            if len(parts) != 2:
                continue
            end = parse_time_component(parts[1])
            start_meridiem = None
            if pattern is TIME_RANGE_12H and not match.group(4):
                # "9:00-11:00 am" shares the end meridiem; "11:00-1:00 pm" crosses noon
                start_meridiem = match.group(8).lower()
                if int(match.group(1)) % 12 > int(match.group(5)) % 12:
                    start_meridiem = "am" if start_meridiem == "pm" else "pm"
            start = parse_time_component(parts[0], meridiem=start_meridiem)
            if start is None or end is None:
                continue
            start.isRange = True
            end.isRange = True
            start.rangePartner = end
            range_spans.append((match.start(), match.end()))
            kind = classify_time_context(text, match.group(0), match.start())
            if kind == "start" or components.startTime is None:
                components.startTime = start
                components.endTime = end

    seen: set[int] = set()
    for pattern in (TIME_12H, TIME_24H):
        for match in pattern.finditer(text):
            index = match.start()
            if index in seen or _overlaps(range_spans, index):
                continue
            component = parse_time_component(match.group(0))
            if component is None:
                continue
            seen.add(index)
            _assign(components, classify_time_context(text, match.group(0), index), component)
    return components


def _next_weekday(reference: date, name: str) -> date:
    target = _WEEKDAYS.index(name.lower())
    delta = target - reference.weekday()
    if delta <= 0:
        delta += 7
    return reference + timedelta(days=delta)


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_dates(text: str, reference: date | None = None) -> list[dict]:
    """Find explicit and relative dates in ``text``, ordered by position.

    Each entry is ``{"text", "index", "date"}``.
    """
    ref = reference or date.today()
    found: list[dict] = []
    taken: list[tuple[int, int]] = []

    def _add(match: re.Match, value: Optional[date]) -> None:
        if value is None or _overlaps(taken, match.start()):
            return
        taken.append((match.start(), match.end()))
        found.append({"text": match.group(0), "index": match.start(), "date": value})

    for match in ISO_DATE.finditer(text):
        _add(match, _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3))))
    for match in US_DATE.finditer(text):
        _add(match, _safe_date(int(match.group(3)), int(match.group(1)), int(match.group(2))))
    for match in EU_DATE.finditer(text):
        _add(match, _safe_date(int(match.group(3)), int(match.group(2)), int(match.group(1))))
    for match in RELATIVE_DATE.finditer(text):
        offset = {"today": 0, "tomorrow": 1, "yesterday": -1}[match.group(1).lower()]
        _add(match, ref + timedelta(days=offset))
    for match in WEEKDAY.finditer(text):
        _add(match, _next_weekday(ref, match.group(1)))

    found.sort(key=lambda item: item["index"])
    return found


class TimeParsingService:
    """Extracts time components with a small LRU cache keyed by text."""

    def __init__(self, cache_size: int = CACHE_SIZE):
        self.cache_size = cache_size
        self._cache: OrderedDict[str, TimeComponents] = OrderedDict()

    def extract_time_components(self, text: str) -> TimeComponents:
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached.model_copy(deep=True)
        components = _extract(text)
        self._cache[text] = components
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return components.model_copy(deep=True)

    def has_time_components(self, text: str) -> bool:
        components = self.extract_time_components(text)
        return any(
            c is not None
            for c in (components.startTime, components.endTime, components.dueTime, components.scheduledTime)
        )

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size_used(self) -> int:
        return len(self._cache)


time_parsing_service = TimeParsingService()
