"""Date resolution for tasks that only carry a time of day.

A task like ``- [ ] call Bob at 14:00`` has a time but no date. The date is
taken from the first tier that yields one:

1. an explicit date on the task line (or within three lines of it)
2. the nearest dated ancestor task
3. the file itself: dated-note path, frontmatter date, plain path date
4. the file creation time
"""
from __future__ import annotations

import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

from taskflow.date_utils import from_epoch_ms, local_midnight_ms, start_of_day_ms, today_ms
from taskflow.models import DateResolutionResult, FileDateInfo, Task, TimeComponent
from taskflow.services.time_parsing import parse_dates

logger = logging.getLogger("taskflow.services.date_inheritance")

CACHE_TTL_SECONDS = 5 * 60
MAX_CACHE_SIZE = 500
LINE_SEARCH_RANGE = 3
MIN_YEAR, MAX_YEAR = 1900, 2100

# Order matters: more specific patterns first
DATED_NOTE_PATTERNS = [
    (re.compile(r"(\d{4})-W(\d{2})"), "YYYY-W##"),
    (re.compile(r"(\d{4})-(\d{2})-(\d{2})"), "YYYY-MM-DD"),
    (re.compile(r"(\d{4})\.(\d{2})\.(\d{2})"), "YYYY.MM.DD"),
    (re.compile(r"(\d{4})_(\d{2})_(\d{2})"), "YYYY_MM_DD"),
    (re.compile(r"(\d{4})(\d{2})(\d{2})"), "YYYYMMDD"),
    (re.compile(r"(\d{2})-(\d{2})-(\d{4})"), "MM-DD-YYYY"),
    (re.compile(r"(\d{2})\.(\d{2})\.(\d{4})"), "DD.MM.YYYY"),
    (re.compile(r"(\d{2})/(\d{2})/(\d{4})"), "MM/DD/YYYY"),
    (re.compile(r"(\d{2})/(\d{2})/(\d{4})"), "DD/MM/YYYY"),
    (re.compile(r"(\d{4})-(\d{2})(?!-\d{2})"), "YYYY-MM"),
]

DATED_FOLDER_HINTS = [
    re.compile(r"daily\s*notes?"),
    re.compile(r"journal"),
    re.compile(r"diary"),
    re.compile(r"(?<![a-z])logs?(?![a-z])"),
    re.compile(r"\d{4}/\d{2}"),
    re.compile(r"\d{4}-\d{2}"),
]

DATE_PROPERTY_NAMES = [
    "date", "created", "creation-date", "created-date", "creation_date", "created_date",
    "day", "daily-note", "daily-note-date", "note-date", "file-date",
    "created-at", "created_at", "createdAt",
]

_METADATA_FORMATS = [
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ](\d{2}):(\d{2})(?::(\d{2}))?)?"), "ymd"),
    (re.compile(r"^(\d{4})[./](\d{2})[./](\d{2})$"), "ymd"),
    (re.compile(r"^(\d{4})(\d{2})(\d{2})$"), "ymd"),
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), "mdy"),
    (re.compile(r"^(\d{2})[-.](\d{2})[-.](\d{4})$"), "dmy"),
]
_RELATIVE_OFFSET = re.compile(r"^([+-])(\d+)([dwmy])$", re.IGNORECASE)


@dataclass
class DateResolutionContext:
    current_line: str
    file_path: str
    line_number: Optional[int] = None
    all_lines: Optional[list[str]] = None
    parent_task: Optional[Task] = None
    all_tasks: list[Task] = field(default_factory=list)
    max_depth: int = 3


def _valid_date(year: int, month: int, day: int) -> Optional[date]:
    if not (MIN_YEAR <= year <= MAX_YEAR):
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def date_from_iso_week(year: int, week: int) -> Optional[date]:
    """Monday of ISO ``week`` in ``year`` (week 1 contains January 4th)."""
    if week < 1 or week > 53 or not (MIN_YEAR <= year <= MAX_YEAR):
        return None
    jan4 = date(year, 1, 4)
    week1_monday = jan4 - timedelta(days=jan4.weekday())
    return week1_monday + timedelta(weeks=week - 1)


def _date_from_match(match: re.Match, fmt: str) -> Optional[date]:
    g = [int(x) for x in match.groups()]
    if fmt == "YYYY-W##":
        return date_from_iso_week(g[0], g[1])
    if fmt in ("YYYY-MM-DD", "YYYY.MM.DD", "YYYY_MM_DD", "YYYYMMDD"):
        return _valid_date(g[0], g[1], g[2])
    if fmt in ("MM-DD-YYYY", "MM/DD/YYYY"):
        return _valid_date(g[2], g[0], g[1])
    if fmt in ("DD.MM.YYYY", "DD/MM/YYYY"):
        return _valid_date(g[2], g[1], g[0])
    if fmt == "YYYY-MM":
        return _valid_date(g[0], g[1], 1)
    return None


def is_dated_folder(folder: str) -> bool:
    lowered = folder.lower()
    return bool(lowered) and any(p.search(lowered) for p in DATED_FOLDER_HINTS)


def extract_path_date(file_path: str) -> tuple[Optional[date], bool]:
    """Return ``(date, matched_in_basename)`` from a file path."""
    name = file_path.rsplit("/", 1)[-1]
    if name.endswith(".md"):
        name = name[:-3]
    for pattern, fmt in DATED_NOTE_PATTERNS:
        for target, in_basename in ((name, True), (file_path, False)):
            match = pattern.search(target)
            if not match:
                continue
            value = _date_from_match(match, fmt)
            if value is not None:
                return value, in_basename
    return None, False


def _parse_relative(value: str) -> Optional[date]:
    lowered = value.lower()
    today = date.today()
    if lowered in ("today", "now"):
        return today
    if lowered == "tomorrow":
        return today + timedelta(days=1)
    if lowered == "yesterday":
        return today - timedelta(days=1)
    match = _RELATIVE_OFFSET.match(value)
    if not match:
        return None
    amount = int(match.group(2)) * (1 if match.group(1) == "+" else -1)
    unit = match.group(3).lower()
    if unit == "d":
        return today + timedelta(days=amount)
    if unit == "w":
        return today + timedelta(weeks=amount)
    if unit == "m":
        month_index = today.month - 1 + amount
        year, month = today.year + month_index // 12, month_index % 12 + 1
        return _valid_date(year, month, min(today.day, 28))
    return _valid_date(today.year + amount, today.month, min(today.day, 28))


def parse_metadata_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value if MIN_YEAR <= value.year <= MAX_YEAR else None
    if isinstance(value, (int, float)):
        try:
            parsed = from_epoch_ms(int(value)).date()
        except (OverflowError, OSError, ValueError):
            return None
        return parsed if MIN_YEAR <= parsed.year <= MAX_YEAR else None
    if not isinstance(value, str):
        return None
    token = value.strip()
    if not token:
        return None
    relative = _parse_relative(token)
    if relative is not None:
        return relative
    for pattern, order in _METADATA_FORMATS:
        match = pattern.match(token)
        if not match:
            continue
        a, b, c = (int(x) for x in match.groups()[:3])
        if order == "ymd":
            return _valid_date(a, b, c)
        if order == "mdy":
            return _valid_date(c, a, b) or _valid_date(c, b, a)
        return _valid_date(c, b, a)
    return None


def extract_metadata_date(frontmatter: dict) -> Optional[date]:
    for prop in DATE_PROPERTY_NAMES:
        if prop in frontmatter:
            parsed = parse_metadata_date(frontmatter[prop])
            if parsed is not None:
                return parsed
    file_props = frontmatter.get("file")
    if isinstance(file_props, dict):
        for prop in ("ctime", "cday", "created"):
            parsed = parse_metadata_date(file_props.get(prop))
            if parsed is not None:
                return parsed
    tp = frontmatter.get("tp")
    if isinstance(tp, dict):
        parsed = parse_metadata_date(tp.get("date"))
        if parsed is not None:
            return parsed
        tp_file = tp.get("file")
        if isinstance(tp_file, dict):
            parsed = parse_metadata_date(tp_file.get("creation_date"))
            if parsed is not None:
                return parsed
    return None


def _parent_date(task: Task) -> Optional[int]:
    meta = task.metadata
    for value in (meta.startDate, meta.dueDate, meta.scheduledDate):
        if value:
            return value
    enhanced = meta.enhancedDates
    if enhanced is not None:
        for value in (enhanced.startDateTime, enhanced.dueDateTime):
            if value:
                return value
    return meta.createdDate or None


class DateInheritanceService:
    def __init__(self, workspace):
        self.workspace = workspace
        self._file_cache: OrderedDict[str, FileDateInfo] = OrderedDict()

    async def resolve_date_for_time_only(
        self,
        task: Task,
        time_component: TimeComponent,
        context: DateResolutionContext,
    ) -> DateResolutionResult:
        line_hit = self._date_from_lines(context)
        if line_hit is not None:
            value, on_line = line_hit
            return DateResolutionResult(
                resolvedDate=local_midnight_ms(value),
                source="line-date",
                confidence="high" if on_line else "medium",
                context="Found explicit date in current line" if on_line else "Found date near current line",
            )

        if context.parent_task is not None:
            found = self.date_from_parent_hierarchy(context.parent_task, context.all_tasks, context.max_depth)
            if found is not None:
                value, depth = found
                confidence = "high" if depth == 0 else "medium" if depth == 1 else "low"
                return DateResolutionResult(
                    resolvedDate=start_of_day_ms(value),
                    source="parent-task",
                    confidence=confidence,
                    context=f"Inherited from parent task (depth: {depth})",
                )

        info = await self.get_file_date_info(context.file_path)
        if info.dailyNoteDate and info.isDailyNote:
            return DateResolutionResult(
                resolvedDate=info.dailyNoteDate,
                source="daily-note-date",
                confidence="high",
                context="Extracted from daily note title/path",
            )
        if info.metadataDate:
            return DateResolutionResult(
                resolvedDate=info.metadataDate,
                source="metadata-date",
                confidence="medium",
                context="Found in file frontmatter",
            )
        if info.dailyNoteDate:
            return DateResolutionResult(
                resolvedDate=info.dailyNoteDate,
                source="daily-note-date",
                confidence="medium",
                context="Extracted from file path date pattern",
            )
        return DateResolutionResult(
            resolvedDate=start_of_day_ms(info.ctime) if info.ctime else today_ms(),
            source="file-ctime",
            confidence="low",
            usedFallback=True,
            context="Using file creation time as fallback",
        )

    def _date_from_lines(self, context: DateResolutionContext) -> Optional[tuple[date, bool]]:
        hits = parse_dates(context.current_line)
        if hits:
            return hits[0]["date"], True
        lines = context.all_lines
        if not lines or context.line_number is None:
            return None
        for distance in range(1, LINE_SEARCH_RANGE + 1):
            for idx in (context.line_number - distance, context.line_number + distance):
                if 0 <= idx < len(lines):
                    hits = parse_dates(lines[idx])
                    if hits:
                        return hits[0]["date"], False
        return None

    @staticmethod
    def date_from_parent_hierarchy(
        parent: Task,
        all_tasks: list[Task],
        max_depth: int = 3,
    ) -> Optional[tuple[int, int]]:
        """Walk the ancestor chain by id; return ``(epoch_ms, depth)``."""
        by_id = {t.id: t for t in all_tasks}
        current: Optional[Task] = parent
        depth = 0
        seen: set[str] = set()
        while current is not None and depth < max_depth and current.id not in seen:
            seen.add(current.id)
            value = _parent_date(current)
            if value:
                return value, depth
            parent_id = current.metadata.parent
            current = by_id.get(parent_id) if parent_id else None
            depth += 1
        return None

    async def get_file_date_info(self, file_path: str) -> FileDateInfo:
        cached = self._file_cache.get(file_path)
        if cached is not None and time.monotonic() - cached.cachedAt < CACHE_TTL_SECONDS:
            return cached

        stats = await self.workspace.stat(file_path)
        if stats is None:
            info = FileDateInfo(filePath=file_path, ctime=today_ms(), cachedAt=time.monotonic())
        else:
            path_date, in_basename = extract_path_date(file_path)
            folder = file_path.rsplit("/", 1)[0] if "/" in file_path else ""
            frontmatter = await self.workspace.get_frontmatter(file_path)
            metadata_date = extract_metadata_date(frontmatter)
            info = FileDateInfo(
                filePath=file_path,
                ctime=stats.get("ctime") or stats.get("mtime") or today_ms(),
                mtime=stats.get("mtime", 0),
                dailyNoteDate=local_midnight_ms(path_date) if path_date else None,
                isDailyNote=path_date is not None and (in_basename or is_dated_folder(folder)),
                metadataDate=local_midnight_ms(metadata_date) if metadata_date else None,
                cachedAt=time.monotonic(),
            )
        self._cache_file_info(file_path, info)
        return info

    def _cache_file_info(self, file_path: str, info: FileDateInfo) -> None:
        self._file_cache.pop(file_path, None)
        self._file_cache[file_path] = info
        while len(self._file_cache) > MAX_CACHE_SIZE:
            self._file_cache.popitem(last=False)

    def invalidate(self, file_path: str) -> None:
        self._file_cache.pop(file_path, None)

    def clear_cache(self) -> None:
        self._file_cache.clear()

    def get_cache_stats(self) -> dict[str, int]:
        return {"size": len(self._file_cache), "maxSize": MAX_CACHE_SIZE}
