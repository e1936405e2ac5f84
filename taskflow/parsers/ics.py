"""Minimal iCalendar (RFC 5545) VEVENT reader."""
from __future__ import annotations

import hashlib
import logging
import re
from datetime import date, datetime, timezone

from taskflow.date_utils import datetime_to_ms, local_midnight_ms
from taskflow.models import IcsEvent, IcsSourceRef

logger = logging.getLogger("taskflow.parsers.ics")

_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_DATETIME_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})?(Z)?$")


class IcsParseError(ValueError):
    """Raised when a payload is not an iCalendar document."""


def unfold_lines(text: str) -> list[str]:
    lines: list[str] = []
    for raw in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        elif raw:
            lines.append(raw)
    return lines


def _split_property(line: str) -> tuple[str, dict[str, str], str] | None:
    in_quotes = False
    for idx, ch in enumerate(line):
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == ":" and not in_quotes:
            head, value = line[:idx], line[idx + 1:]
            break
    else:
        return None
    parts = head.split(";")
    params: dict[str, str] = {}
    for param in parts[1:]:
        if "=" in param:
            key, val = param.split("=", 1)
            params[key.upper()] = val.strip('"')
    return parts[0].upper(), params, value


def unescape_text(value: str) -> str:
    out = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\" and i + 1 < len(value):
            nxt = value[i + 1]
            out.append("\n" if nxt in ("n", "N") else nxt)
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _split_list(value: str) -> list[str]:
    items, buf, i = [], [], 0
    while i < len(value):
        ch = value[i]
        if ch == "\\" and i + 1 < len(value):
            buf.append(value[i:i + 2])
            i += 2
            continue
        if ch == ",":
            items.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
        i += 1
    items.append("".join(buf))
    return [unescape_text(item).strip() for item in items if item.strip()]


def parse_ics_datetime(value: str, params: dict[str, str]) -> tuple[int, bool] | None:
    """Return ``(epoch_ms, all_day)``. TZID values are read as local time."""
    token = value.strip()
    match = _DATE_RE.match(token)
    if match and params.get("VALUE", "DATE") == "DATE":
        y, m, d = (int(g) for g in match.groups())
        try:
            return local_midnight_ms(date(y, m, d)), True
        except ValueError:
            return None
    match = _DATETIME_RE.match(token)
    if not match:
        return None
    y, mo, d, h, mi = (int(g) for g in match.groups()[:5])
    s = int(match.group(6) or 0)
    try:
        if match.group(7):
            return int(datetime(y, mo, d, h, mi, s, tzinfo=timezone.utc).timestamp() * 1000), False
        return datetime_to_ms(datetime(y, mo, d, h, mi, s)), False
    except ValueError:
        return None


def _fallback_uid(props: dict) -> str:
    seed = f"{props.get('SUMMARY', '')}|{props.get('DTSTART', '')}"
    return hashlib.sha1(seed.encode("utf-8")).hexdigest()[:16]


def _build_event(props: dict[str, tuple[dict[str, str], str]], source: IcsSourceRef | None) -> IcsEvent | None:
    if "DTSTART" not in props:
        return None
    start = parse_ics_datetime(props["DTSTART"][1], props["DTSTART"][0])
    if start is None:
        logger.warning(f"Skipping event with unreadable DTSTART: {props['DTSTART'][1]}")
        return None
    dtstart, all_day = start
    dtend = None
    if "DTEND" in props:
        end = parse_ics_datetime(props["DTEND"][1], props["DTEND"][0])
        dtend = end[0] if end else None

    def _text(name: str) -> str | None:
        if name not in props:
            return None
        return unescape_text(props[name][1])

    priority = None
    if "PRIORITY" in props:
        try:
            priority = int(props["PRIORITY"][1].strip())
        except ValueError:
            priority = None

    last_modified = None
    if "LAST-MODIFIED" in props:
        parsed = parse_ics_datetime(props["LAST-MODIFIED"][1], props["LAST-MODIFIED"][0])
        last_modified = parsed[0] if parsed else None

    uid = _text("UID") or _fallback_uid({k: v[1] for k, v in props.items()})
    status = _text("STATUS")
    return IcsEvent(
        uid=uid,
        summary=_text("SUMMARY") or "",
        description=_text("DESCRIPTION"),
        location=_text("LOCATION"),
        dtstart=dtstart,
        dtend=dtend,
        allDay=all_day,
        status=status.upper() if status else None,
        priority=priority,
        categories=_split_list(props["CATEGORIES"][1]) if "CATEGORIES" in props else [],
        rrule=props["RRULE"][1] if "RRULE" in props else None,
        lastModified=last_modified,
        source=source,
    )


def parse_ics(text: str, source: IcsSourceRef | None = None) -> list[IcsEvent]:
    """Parse VEVENT components out of an iCalendar document."""
    lines = unfold_lines(text or "")
    if not any(line.upper().startswith("BEGIN:VCALENDAR") for line in lines):
        raise IcsParseError("Invalid ICS content: missing BEGIN:VCALENDAR")

    events: list[IcsEvent] = []
    props: dict[str, tuple[dict[str, str], str]] | None = None
    nested = 0
    for line in lines:
        parsed = _split_property(line)
        if parsed is None:
            continue
        name, params, value = parsed
        if name == "BEGIN":
            if value.upper() == "VEVENT":
                props = {}
            elif props is not None:
                nested += 1
            continue
        if name == "END":
            if value.upper() == "VEVENT" and props is not None:
                event = _build_event(props, source)
                if event is not None:
                    events.append(event)
                props = None
                nested = 0
            elif props is not None and nested:
                nested -= 1
            continue
        # Properties of VALARM and other sub-components are ignored
        if props is not None and not nested and name not in props:
            props[name] = (params, value)
    return events
