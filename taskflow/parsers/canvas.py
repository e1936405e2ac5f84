"""Tasks inside ``.canvas`` boards (JSON with markdown text nodes)."""
from __future__ import annotations

import json
import logging

from taskflow.models import Task
from taskflow.parsers.markdown_tasks import parse_markdown_tasks
from taskflow.services.time_parsing import TimeParsingService

logger = logging.getLogger("taskflow.parsers.canvas")

NODE_SEPARATOR = "\n\n"


def text_nodes(content: str, file_path: str = "") -> list[dict]:
    try:
        data = json.loads(content) if content.strip() else {}
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid canvas JSON in {file_path}: {e}")
        return []
    nodes = data.get("nodes") if isinstance(data, dict) else None
    if not isinstance(nodes, list):
        return []
    return [n for n in nodes if isinstance(n, dict) and n.get("type") == "text" and isinstance(n.get("text"), str)]


def parse_canvas_tasks(
    file_path: str,
    content: str,
    time_service: TimeParsingService | None = None,
) -> list[Task]:
    """Parse checklist tasks from every text node.

    Node texts are joined with a blank line and parsed as one document, so
    line numbers (and ids) are positions in that combined text.
    """
    nodes = text_nodes(content, file_path)
    if not nodes:
        return []

    spans: list[tuple[int, int, dict]] = []
    offset = 0
    for node in nodes:
        count = len(node["text"].split("\n"))
        spans.append((offset, offset + count, node))
        # One blank separator line between nodes
        offset += count + 1

    combined = NODE_SEPARATOR.join(node["text"] for node in nodes)
    tasks = parse_markdown_tasks(file_path, combined, time_service)
    for task in tasks:
        setattr(task.metadata, "sourceType", "canvas")
        for start, end, node in spans:
            if start <= task.line < end:
                setattr(task.metadata, "canvasNodeId", node.get("id"))
                setattr(task.metadata, "canvasPosition", {
                    "x": node.get("x"),
                    "y": node.get("y"),
                    "width": node.get("width"),
                    "height": node.get("height"),
                })
                if node.get("color"):
                    setattr(task.metadata, "canvasColor", node["color"])
                break
    return tasks
