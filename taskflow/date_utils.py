"""Shared date normalization helpers.

Task dates are carried as epoch milliseconds of local wall-clock time;
date-only values map to local midnight.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

DAY_MS = 24 * 60 * 60 * 1000


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d", "%m/%d/%Y", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M"):
        try:
            return datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
    return None


def local_midnight_ms(value: date) -> int:
    return int(datetime(value.year, value.month, value.day).timestamp() * 1000)


def datetime_to_ms(value: datetime) -> int:
    # Naive datetimes are local time
    return int(value.timestamp() * 1000)


def to_epoch_ms(value: Any) -> int | None:
    """Convert mixed date inputs (YAML dates, ISO strings, numbers) to epoch ms."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return datetime_to_ms(value)
    if isinstance(value, date):
        return local_midnight_ms(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        if token.isdigit() and len(token) > 8:
            return int(token)
        if _DATE_ONLY_RE.match(token):
            try:
                return local_midnight_ms(date.fromisoformat(token))
            except ValueError:
                return None
        parsed = _parse_datetime_token(token)
        if parsed is None:
            return None
        return datetime_to_ms(parsed)
    return None


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000)


def format_date_key(value: int) -> str:
    """Local ``YYYY-MM-DD`` bucket key for an epoch-ms timestamp."""
    return from_epoch_ms(value).strftime("%Y-%m-%d")


def start_of_day_ms(value: int) -> int:
    return local_midnight_ms(from_epoch_ms(value).date())


def today_ms() -> int:
    return local_midnight_ms(date.today())


def add_days_ms(value: int, days: int) -> int:
    return local_midnight_ms(from_epoch_ms(value).date() + timedelta(days=days))


def _file_created_datetime(stats: Any) -> datetime | None:
    for attr in ("st_birthtime",):
        value = getattr(stats, attr, None)
        if isinstance(value, (int, float)) and value > 0:
            return datetime.fromtimestamp(float(value), timezone.utc)
    ctime = getattr(stats, "st_ctime", None)
    if isinstance(ctime, (int, float)) and ctime > 0:
        return datetime.fromtimestamp(float(ctime), timezone.utc)
    return None


def file_timestamps(path: Path) -> dict[str, int]:
    """Return filesystem creation/modified times in epoch ms (0 when unknown)."""
    try:
        stats = path.stat()
    except OSError:
        return {"ctime": 0, "mtime": 0}

    created_dt = _file_created_datetime(stats)
    return {
        "ctime": int(created_dt.timestamp() * 1000) if created_dt else 0,
        "mtime": int(float(stats.st_mtime) * 1000),
    }
