"""Markdown frontmatter helpers: read, rewrite, tags and headings."""
from __future__ import annotations

import logging
import re
from typing import Any

import yaml

logger = logging.getLogger("taskflow.parsers.frontmatter")

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)", re.DOTALL)
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_INLINE_TAG_RE = re.compile(r"(?:^|\s)(#[\w\-/]+)", re.UNICODE)
_FENCE_RE = re.compile(r"^\s*(```|~~~)")


class FrontmatterParseError(ValueError):
    """Raised when markdown frontmatter exists but is not valid YAML mapping."""


def split_frontmatter(text: str) -> tuple[str | None, str]:
    """Split a markdown file into (frontmatter_text, body).

    Returns (None, full_text) if no frontmatter is found.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return None, text
    return match.group(1), match.group(2)


def load_frontmatter_dict(fm_text: str, source: str = "") -> dict:
    """Parse YAML frontmatter and ensure it is a mapping."""
    try:
        parsed = yaml.safe_load(fm_text) or {}
    except yaml.YAMLError as exc:
        raise FrontmatterParseError(f"Invalid YAML frontmatter in {source}") from exc
    if not isinstance(parsed, dict):
        raise FrontmatterParseError(f"Expected mapping frontmatter in {source}")
    return parsed


def parse_frontmatter(text: str, source: str = "") -> dict:
    """Lenient read: malformed frontmatter yields an empty mapping."""
    fm_text, _ = split_frontmatter(text)
    if fm_text is None:
        return {}
    try:
        return load_frontmatter_dict(fm_text, source)
    except FrontmatterParseError as e:
        logger.warning(str(e))
        return {}


def rebuild_file(fm_dict: dict, body: str) -> str:
    """Reconstruct a markdown file from frontmatter dict + body."""
    if not fm_dict:
        return body
    fm_text = yaml.dump(fm_dict, default_flow_style=False, sort_keys=False, allow_unicode=True)
    return f"---\n{fm_text}---\n{body}"


def update_frontmatter_fields(text: str, updates: dict[str, Any], source: str = "") -> str:
    """Return ``text`` with top-level frontmatter fields set.

    A ``None`` value removes the field. Raises ``FrontmatterParseError`` if
    existing frontmatter cannot be parsed.
    """
    fm_text, body = split_frontmatter(text)
    fm_dict = {} if fm_text is None else load_frontmatter_dict(fm_text, source)
    for key, value in updates.items():
        if value is None:
            fm_dict.pop(key, None)
        else:
            fm_dict[key] = value
    return rebuild_file(fm_dict, body)


def normalize_tag(tag: Any) -> str:
    token = str(tag).strip()
    if not token:
        return ""
    return token if token.startswith("#") else f"#{token}"


def frontmatter_tags(fm: dict) -> list[str]:
    raw = fm.get("tags", fm.get("tag"))
    if raw is None:
        return []
    if isinstance(raw, str):
        items = [t for t in re.split(r"[,\s]+", raw) if t]
    elif isinstance(raw, (list, tuple)):
        items = [str(t) for t in raw if t is not None]
    else:
        items = [str(raw)]
    return [t for t in (normalize_tag(i) for i in items) if t]


def extract_tags(text: str) -> list[str]:
    """Frontmatter tags followed by inline body tags, deduplicated in order."""
    fm = parse_frontmatter(text)
    _, body = split_frontmatter(text)
    tags = frontmatter_tags(fm)
    in_fence = False
    for line in body.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence or _HEADING_RE.match(line):
            continue
        tags.extend(m.group(1) for m in _INLINE_TAG_RE.finditer(line))
    seen: set[str] = set()
    result = []
    for tag in tags:
        if tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


def extract_headings(text: str) -> list[tuple[int, str]]:
    """Return ``(level, title)`` pairs for markdown headings outside code fences."""
    _, body = split_frontmatter(text)
    headings = []
    in_fence = False
    for line in body.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _HEADING_RE.match(line)
        if match:
            headings.append((len(match.group(1)), match.group(2).strip()))
    return headings
