"""Checklist-line task parser and metadata formatter.

Recognises ``- [ ] content`` lines (``*``/``+`` bullets, blockquotes) with
emoji (``📅 2024-01-10``) or dataview (``[due:: 2024-01-10]``) metadata,
``#tags``, ``#project/name`` and ``@context`` markers.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Optional

from taskflow.date_utils import format_date_key, to_epoch_ms
from taskflow.models import PROVENANCE_DOCUMENT, Task, TaskMetadata
from taskflow.parsers.frontmatter import split_frontmatter
from taskflow.services.time_parsing import TimeParsingService, time_parsing_service

logger = logging.getLogger("taskflow.parsers.markdown")

TASK_RE = re.compile(
    r"^(?P<indent>[ \t]*)(?P<quote>(?:>[ \t]?)*)(?P<lead>[ \t]*)(?P<bullet>[-*+])[ \t]+"
    r"\[(?P<status>[^\]])\][ \t]*(?P<rest>.*)$"
)
HEADING_RE = re.compile(r"^(?P<hashes>#{1,6})\s+(?P<title>.+?)\s*$")
FENCE_RE = re.compile(r"^\s*(```|~~~)")
CHECKBOX_RE = re.compile(r"(\s*[-*+]\s*\[)[^\]]*(\]\s*)")

DATE_PAT = r"(\d{4}-\d{2}-\d{2})"
EMOJI_DATES = {
    "dueDate": "📅",
    "startDate": "🛫",
    "scheduledDate": "⏳",
    "completedDate": "✅",
    "cancelledDate": "❌",
    "createdDate": "➕",
}
PRIORITY_EMOJI = {"🔺": 5, "⏫": 4, "🔼": 3, "🔽": 2, "⏬": 1}
EMOJI_FOR_PRIORITY = {v: k for k, v in PRIORITY_EMOJI.items()}
_MARKERS = "📅🛫⏳✅❌➕🔁🏁⛔🆔🔺⏫🔼🔽⏬"

_EMOJI_DATE_RES = {
    name: re.compile(re.escape(emoji) + r"️?\s*" + DATE_PAT) for name, emoji in EMOJI_DATES.items()
}
RECUR_RE = re.compile(r"🔁️?\s*(?P<value>[^#" + _MARKERS + r"\[]+?)\s*(?=$|[#" + _MARKERS + r"\[])")
ON_COMPLETION_RE = re.compile(r"🏁️?\s*(?P<value>[^\s#" + _MARKERS + r"]+)")
DEPENDS_RE = re.compile(r"⛔️?\s*(?P<value>[\w\-,]+)")
ID_RE = re.compile(r"🆔️?\s*(?P<value>[\w\-]+)")
PRIORITY_RE = re.compile(r"[🔺⏫🔼🔽⏬]️?")
DATAVIEW_RE = re.compile(r"\[(?P<key>[A-Za-z][\w\-]*)::\s*(?P<value>[^\]]*)\]")
TAG_RE = re.compile(r"(?:^|(?<=\s))#(?P<tag>[^\s#,;:!?()\[\]{}\"']+)")
CONTEXT_RE = re.compile(r"(?:^|(?<=\s))@(?P<ctx>[\w\-/.]+)")

_DATAVIEW_DATE_KEYS = {
    "due": "dueDate",
    "start": "startDate",
    "scheduled": "scheduledDate",
    "completion": "completedDate",
    "completed": "completedDate",
    "cancelled": "cancelledDate",
    "created": "createdDate",
}
_DATAVIEW_TEXT_KEYS = {
    "project": "project",
    "context": "context",
    "area": "area",
    "repeat": "recurrence",
    "recurrence": "recurrence",
    "oncompletion": "onCompletion",
    "id": "id",
}

PRIORITY_NAMES = {
    "highest": 5, "urgent": 5, "critical": 5,
    "high": 4, "important": 4,
    "medium": 3, "normal": 3, "moderate": 3,
    "low": 2, "minor": 2,
    "lowest": 1, "trivial": 1,
}


def convert_priority_value(value: Any) -> Optional[int]:
    """Normalise a priority (number, digit string, emoji or name) to 1-5, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = int(value)
        return number if 1 <= number <= 5 else None
    token = str(value).strip()
    if token.isdigit():
        number = int(token)
        return number if 1 <= number <= 5 else None
    if token in PRIORITY_EMOJI:
        return PRIORITY_EMOJI[token]
    return PRIORITY_NAMES.get(token.lower())


def task_id_for(file_path: str, line: int) -> str:
    return f"{file_path}-L{line}"


def _indent_width(text: str) -> int:
    return len(text.expandtabs(4))


def parse_task_text(rest: str, metadata: TaskMetadata) -> str:
    """Extract metadata markers from ``rest`` into ``metadata``; return clean content."""
    text = rest

    for match in DATAVIEW_RE.finditer(text):
        key = match.group("key").lower()
        value = match.group("value").strip()
        if key in _DATAVIEW_DATE_KEYS:
            setattr(metadata, _DATAVIEW_DATE_KEYS[key], to_epoch_ms(value))
        elif key in _DATAVIEW_TEXT_KEYS:
            setattr(metadata, _DATAVIEW_TEXT_KEYS[key], value or None)
        elif key == "priority":
            metadata.priority = convert_priority_value(value)
        elif key == "dependson":
            metadata.dependsOn = [v.strip() for v in value.split(",") if v.strip()]
        elif key == "tags":
            metadata.tags.extend(
                t if t.startswith("#") else f"#{t}" for t in re.split(r"[,\s]+", value) if t
            )
    text = DATAVIEW_RE.sub(" ", text)

    for name, pattern in _EMOJI_DATE_RES.items():
        match = pattern.search(text)
        if match:
            setattr(metadata, name, to_epoch_ms(match.group(1)))
            text = pattern.sub(" ", text)

    match = RECUR_RE.search(text)
    if match:
        metadata.recurrence = match.group("value").strip()
        text = text[:match.start()] + " " + text[match.end():]
    match = ON_COMPLETION_RE.search(text)
    if match:
        metadata.onCompletion = match.group("value")
        text = ON_COMPLETION_RE.sub(" ", text)
    match = DEPENDS_RE.search(text)
    if match:
        metadata.dependsOn = [v for v in match.group("value").split(",") if v]
        text = DEPENDS_RE.sub(" ", text)
    match = ID_RE.search(text)
    if match:
        metadata.id = match.group("value")
        text = ID_RE.sub(" ", text)
    match = PRIORITY_RE.search(text)
    if match:
        metadata.priority = PRIORITY_EMOJI[match.group(0).rstrip("️")]
        text = PRIORITY_RE.sub(" ", text)

    for match in TAG_RE.finditer(text):
        tag = match.group("tag")
        if tag.lower().startswith("project/") and len(tag) > len("project/"):
            if not metadata.project:
                metadata.project = tag[len("project/"):]
            continue
        metadata.tags.append(f"#{tag}")
    text = TAG_RE.sub(" ", text)

    match = CONTEXT_RE.search(text)
    if match and not metadata.context:
        metadata.context = match.group("ctx")
    text = CONTEXT_RE.sub(" ", text)

    seen: set[str] = set()
    metadata.tags = [t for t in metadata.tags if not (t in seen or seen.add(t))]
    return re.sub(r"\s+", " ", text).strip()


def parse_markdown_tasks(
    file_path: str,
    content: str,
    time_service: TimeParsingService | None = None,
) -> list[Task]:
    """Parse every checklist task in a markdown document."""
    service = time_service or time_parsing_service
    fm_text, _ = split_frontmatter(content)
    lines = content.splitlines()
    start = 0
    if fm_text is not None:
        # Skip the frontmatter block, keeping absolute line numbers
        start = fm_text.count("\n") + 3

    tasks: list[Task] = []
    stack: list[tuple[int, Task]] = []
    headings: list[tuple[int, str]] = []
    in_fence = False

    for line_no in range(start, len(lines)):
        line = lines[line_no]
        if FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        heading = HEADING_RE.match(line)
        if heading:
            level = len(heading.group("hashes"))
            headings = [h for h in headings if h[0] < level] + [(level, heading.group("title"))]
            stack.clear()
            continue

        match = TASK_RE.match(line)
        if not match:
            if line.strip() and not line[:1].isspace():
                stack.clear()
            continue

        indent = _indent_width(match.group("indent")) + _indent_width(match.group("lead"))
        status = match.group("status")
        metadata = TaskMetadata()
        if headings:
            metadata.heading = [title for _, title in headings]
        content_text = parse_task_text(match.group("rest"), metadata)

        components = service.extract_time_components(content_text)
        if any(
            c is not None
            for c in (components.startTime, components.endTime, components.dueTime, components.scheduledTime)
        ):
            metadata.timeComponents = components

        task = Task(
            id=task_id_for(file_path, line_no),
            content=content_text,
            filePath=file_path,
            line=line_no,
            completed=status in ("x", "X"),
            status=status,
            originalMarkdown=line,
            provenance=PROVENANCE_DOCUMENT,
            metadata=metadata,
        )

        while stack and stack[-1][0] >= indent:
            stack.pop()
        if stack:
            parent = stack[-1][1]
            task.metadata.parent = parent.id
            parent.metadata.children.append(task.id)
        stack.append((indent, task))
        tasks.append(task)

    return tasks


# ── Formatting ──────────────────────────────────────────────────────

def _date_text(value: Optional[int]) -> Optional[str]:
    return format_date_key(value) if value else None


def build_metadata_suffix(metadata: TaskMetadata, fmt: str = "tasks", include_tags: bool = True) -> str:
    """Render task metadata as a line suffix in emoji (``tasks``) or ``dataview`` format."""
    parts: list[str] = []
    if include_tags:
        parts.extend(metadata.tags)
    if metadata.project and not (metadata.tgProject and metadata.tgProject.type != "metadata"):
        parts.append(f"#project/{metadata.project}" if fmt == "tasks" else f"[project:: {metadata.project}]")
    if metadata.context:
        parts.append(f"@{metadata.context}" if fmt == "tasks" else f"[context:: {metadata.context}]")

    if fmt == "dataview":
        if metadata.priority:
            names = {5: "highest", 4: "high", 3: "medium", 2: "low", 1: "lowest"}
            parts.append(f"[priority:: {names.get(metadata.priority, metadata.priority)}]")
        if metadata.recurrence:
            parts.append(f"[repeat:: {metadata.recurrence}]")
        for key, name in (
            ("start", "startDate"),
            ("scheduled", "scheduledDate"),
            ("due", "dueDate"),
            ("completion", "completedDate"),
            ("cancelled", "cancelledDate"),
        ):
            text = _date_text(getattr(metadata, name))
            if text:
                parts.append(f"[{key}:: {text}]")
        if metadata.dependsOn:
            parts.append(f"[dependsOn:: {','.join(metadata.dependsOn)}]")
        if metadata.id:
            parts.append(f"[id:: {metadata.id}]")
        if metadata.onCompletion:
            parts.append(f"[onCompletion:: {metadata.onCompletion}]")
    else:
        if metadata.priority in EMOJI_FOR_PRIORITY:
            parts.append(EMOJI_FOR_PRIORITY[metadata.priority])
        if metadata.recurrence:
            parts.append(f"🔁 {metadata.recurrence}")
        for name in ("startDate", "scheduledDate", "dueDate", "completedDate", "cancelledDate"):
            text = _date_text(getattr(metadata, name))
            if text:
                parts.append(f"{EMOJI_DATES[name]} {text}")
        if metadata.dependsOn:
            parts.append(f"⛔ {','.join(metadata.dependsOn)}")
        if metadata.id:
            parts.append(f"🆔 {metadata.id}")
        if metadata.onCompletion:
            parts.append(f"🏁 {metadata.onCompletion}")
    return " ".join(parts)


def format_task_line(prefix: str, status: str, content: str, metadata: TaskMetadata, fmt: str = "tasks") -> str:
    """``prefix`` is everything before the bullet (indent and blockquote markers)."""
    suffix = build_metadata_suffix(metadata, fmt)
    body = f"{content} {suffix}".strip() if suffix else content
    return f"{prefix}- [{status}] {body}"


def line_prefix(line: str) -> str:
    match = TASK_RE.match(line)
    if not match:
        return re.match(r"^[ \t>]*", line).group(0)
    return match.group("indent") + match.group("quote") + match.group("lead")
