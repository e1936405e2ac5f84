"""Write-side API: edits task lines and file-task frontmatter in the workspace.

Every mutation is bracketed by ``write-operation-start`` / ``-complete`` so
the document source can ignore the echo of our own write. Failures are
reported through ``WriteResult`` rather than raised.
"""
from __future__ import annotations

import calendar
import logging
import re
from datetime import date, timedelta
from typing import Any, Callable, Optional

from taskflow.date_utils import format_date_key, local_midnight_ms, to_epoch_ms
from taskflow.events import EventBus, Events
from taskflow.models import (
    PROVENANCE_CALENDAR,
    PROVENANCE_FILE,
    Task,
    TaskMetadata,
    WriteResult,
)
from taskflow.parsers.frontmatter import FrontmatterParseError, split_frontmatter, update_frontmatter_fields
from taskflow.parsers.markdown_tasks import (
    CHECKBOX_RE,
    TASK_RE,
    build_metadata_suffix,
    line_prefix,
    parse_task_text,
    task_id_for,
)
from taskflow.settings import DataflowSettings

logger = logging.getLogger("taskflow.write")

OFFSET_RE = re.compile(r"^\+(\d+)([dwmy])$", re.IGNORECASE)
_H1_RE = re.compile(r"^#\s+.*$", re.MULTILINE)
_DATE_KEYS = ("createdDate", "startDate", "scheduledDate", "dueDate", "completedDate", "cancelledDate")
_FRONTMATTER_FIELDS = ("priority", "project", "context", "area")
_FRONTMATTER_DATES = ("dueDate", "startDate", "scheduledDate")


def _add_months(value: date, months: int) -> date:
    index = value.month - 1 + months
    year, month = value.year + index // 12, index % 12 + 1
    return date(year, month, min(value.day, calendar.monthrange(year, month)[1]))


def parse_date_or_offset(value: str, today: date | None = None) -> Optional[int]:
    """ISO date, or ``+Nd`` / ``+Nw`` / ``+Nm`` / ``+Ny`` from today, as local-midnight ms."""
    token = (value or "").strip()
    match = OFFSET_RE.match(token)
    if match:
        n, unit = int(match.group(1)), match.group(2).lower()
        base = today or date.today()
        if unit == "d":
            target = base + timedelta(days=n)
        elif unit == "w":
            target = base + timedelta(weeks=n)
        elif unit == "m":
            target = _add_months(base, n)
        else:
            target = _add_months(base, 12 * n)
        return local_midnight_ms(target)
    return to_epoch_ms(token)


def _normalize_metadata_updates(updates: dict[str, Any] | None) -> dict[str, Any]:
    """Coerce date strings to epoch ms so they validate against TaskMetadata."""
    result = dict(updates or {})
    for key in _DATE_KEYS:
        if key in result and result[key] is not None and not isinstance(result[key], int):
            result[key] = to_epoch_ms(result[key])
    if "tags" in result and result["tags"] is not None:
        result["tags"] = [t if str(t).startswith("#") else f"#{t}" for t in result["tags"]]
    return result


def _is_completion(status: Optional[str]) -> bool:
    return status in ("x", "X")


def _status_for(status: Optional[str], completed: Optional[bool]) -> Optional[str]:
    if status is not None:
        return status
    if completed is not None:
        return "x" if completed else " "
    return None


class WriteAPI:
    def __init__(
        self,
        bus: EventBus,
        workspace,
        get_task: Callable[[str], Optional[Task]],
        settings: DataflowSettings | None = None,
    ):
        self.bus = bus
        self.workspace = workspace
        self.get_task = get_task
        self.settings = settings or DataflowSettings()

    def update_settings(self, settings: DataflowSettings) -> None:
        self.settings = settings

    @property
    def metadata_format(self) -> str:
        return "dataview" if self.settings.preferMetadataFormat == "dataview" else "tasks"

    # ── Shared helpers ──────────────────────────────────────────────

    def _lookup(self, task_id: str) -> tuple[Optional[Task], Optional[str]]:
        task = self.get_task(task_id)
        if task is None:
            return None, "Task not found"
        if task.provenance == PROVENANCE_CALENDAR:
            return None, "Calendar tasks are read-only"
        if task.readonly:
            return None, "Task is read-only"
        if task.filePath.endswith(".canvas"):
            return None, "Canvas tasks cannot be edited in place"
        return task, None

    async def _write(self, path: str, content: str, task_id: str | None = None, on_written: Callable[[], None] | None = None) -> None:
        payload = {"path": path, "taskId": task_id}
        self.bus.emit(Events.WRITE_OPERATION_START, payload)
        try:
            await self.workspace.write(path, content)
            if on_written is not None:
                on_written()
        finally:
            self.bus.emit(Events.WRITE_OPERATION_COMPLETE, payload)

    async def _read_lines(self, task: Task) -> tuple[Optional[list[str]], Optional[str]]:
        if not await self.workspace.exists(task.filePath):
            return None, "File not found"
        lines = (await self.workspace.read(task.filePath)).split("\n")
        if task.line < 0 or task.line >= len(lines):
            return None, "Invalid line number"
        if not TASK_RE.match(lines[task.line]):
            return None, f"Line {task.line} of {task.filePath} is no longer a task"
        return lines, None

    def _completion_marker(self) -> str:
        stamp = date.today().isoformat()
        return f"[completion:: {stamp}]" if self.metadata_format == "dataview" else f"✅ {stamp}"

    def rewrite_line(
        self,
        line: str,
        status: Optional[str] = None,
        content: Optional[str] = None,
        metadata_updates: dict[str, Any] | None = None,
    ) -> str:
        """Apply edits to one checklist line.

        Status-only edits touch the checkbox and nothing else. Content or
        metadata edits regenerate the suffix from the line's own markers, so
        inherited values never leak into the file.
        """
        if status is not None:
            line = CHECKBOX_RE.sub(lambda m: f"{m.group(1)}{status}{m.group(2)}", line, count=1)
        if content is None and not metadata_updates:
            return line

        match = TASK_RE.match(line)
        if not match:
            return line
        own = TaskMetadata()
        own_content = parse_task_text(match.group("rest"), own)
        if metadata_updates:
            own = own.model_copy(update=metadata_updates)
        body = content if content is not None else own_content
        suffix = build_metadata_suffix(own, self.metadata_format)
        text = f"{body} {suffix}".strip() if suffix else body
        return f"{line_prefix(line)}{match.group('bullet')} [{match.group('status')}] {text}"

    # ── Single-task edits ───────────────────────────────────────────

    async def update_task_status(
        self,
        task_id: str,
        status: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> WriteResult:
        return await self.update_task(task_id, {"status": status, "completed": completed})

    async def update_task(self, task_id: str, updates: dict[str, Any]) -> WriteResult:
        """Update ``content``, ``status``/``completed`` and ``metadata`` of a task."""
        task, error = self._lookup(task_id)
        if task is None:
            return WriteResult(success=False, error=error)
        try:
            if task.provenance == PROVENANCE_FILE:
                return await self._update_file_task(task, updates)
            return await self._update_document_task(task, updates)
        except FrontmatterParseError as e:
            return WriteResult(success=False, error=str(e))
        except (OSError, ValueError) as e:
            logger.error(f"Error updating task {task_id}: {e}")
            return WriteResult(success=False, error=str(e))

    async def _update_document_task(self, task: Task, updates: dict[str, Any]) -> WriteResult:
        lines, error = await self._read_lines(task)
        if lines is None:
            return WriteResult(success=False, error=error)

        status = _status_for(updates.get("status"), updates.get("completed"))
        content = updates.get("content")
        meta_updates = _normalize_metadata_updates(updates.get("metadata"))
        completing = _is_completion(status) and not task.completed
        stamp = completing and task.metadata.completedDate is None and "completedDate" not in meta_updates

        line = lines[task.line]
        if content is None and not meta_updates:
            new_line = self.rewrite_line(line, status=status)
            if stamp:
                new_line = f"{new_line.rstrip()} {self._completion_marker()}"
        else:
            if stamp:
                meta_updates["completedDate"] = local_midnight_ms(date.today())
            new_line = self.rewrite_line(line, status, content, meta_updates)
        if stamp:
            meta_updates.setdefault("completedDate", local_midnight_ms(date.today()))

        lines[task.line] = new_line
        task_update: dict[str, Any] = {"originalMarkdown": new_line}
        if status is not None:
            task_update["status"] = status
            task_update["completed"] = status in ("x", "X")
        if content is not None:
            task_update["content"] = content
        if meta_updates:
            task_update["metadata"] = task.metadata.model_copy(update=meta_updates)
        updated = task.model_copy(update=task_update)

        await self._write(
            task.filePath,
            "\n".join(lines),
            task.id,
            on_written=lambda: self.bus.emit(Events.TASK_UPDATED, {"task": updated}),
        )
        if completing:
            self.bus.emit(Events.TASK_COMPLETED, {"task": updated})
        return WriteResult(success=True, task=updated)

    def _frontmatter_updates(self, task: Task, updates: dict[str, Any]) -> tuple[dict[str, Any], Optional[str]]:
        """Map task edits onto frontmatter keys. Returns (fields, error)."""
        fields: dict[str, Any] = {}
        mapping = self.settings.fileSource.statusMapping
        status = _status_for(updates.get("status"), updates.get("completed"))
        if status is not None:
            fields["status"] = mapping.to_metadata(status)

        meta = updates.get("metadata") or {}
        for key in _FRONTMATTER_FIELDS:
            if key in meta:
                fields[key] = meta[key]
        for key in _FRONTMATTER_DATES:
            if key in meta:
                value = to_epoch_ms(meta[key])
                fields[key] = format_date_key(value) if value is not None else None
        if "tags" in meta:
            fields["tags"] = [str(t).lstrip("#") for t in meta["tags"] or []] or None

        content = updates.get("content")
        if content is not None and content != task.content:
            props = self.settings.fileSource.fileTaskProperties
            if props.contentSource == "title" or (props.contentSource == "filename" and props.preferFrontmatterTitle):
                fields["title"] = content
            elif props.contentSource == "custom" and props.customContentField:
                fields[props.customContentField] = content
            elif props.contentSource != "h1":
                return {}, "Renaming files is not supported; set a title instead"
        return fields, None

    async def _update_file_task(self, task: Task, updates: dict[str, Any]) -> WriteResult:
        if not await self.workspace.exists(task.filePath):
            return WriteResult(success=False, error="File not found")
        fields, error = self._frontmatter_updates(task, updates)
        if error:
            return WriteResult(success=False, error=error)

        text = await self.workspace.read(task.filePath)
        new_text = update_frontmatter_fields(text, fields, task.filePath) if fields else text
        content = updates.get("content")
        if content is not None and self.settings.fileSource.fileTaskProperties.contentSource == "h1":
            _, body = split_frontmatter(new_text)
            if _H1_RE.search(body):
                new_body = _H1_RE.sub(lambda _m: f"# {content}", body, count=1)
            else:
                new_body = f"# {content}\n{body}"
            new_text = new_text[: len(new_text) - len(body)] + new_body

        status = _status_for(updates.get("status"), updates.get("completed"))
        task_update: dict[str, Any] = {}
        if status is not None:
            task_update["status"] = status
            task_update["completed"] = status in ("x", "X")
        if content is not None:
            task_update["content"] = content
        meta_updates = _normalize_metadata_updates(updates.get("metadata"))
        if meta_updates:
            task_update["metadata"] = task.metadata.model_copy(update=meta_updates)
        updated = task.model_copy(update=task_update)

        if new_text != text:
            await self._write(
                task.filePath,
                new_text,
                task.id,
                on_written=lambda: self.bus.emit(Events.TASK_UPDATED, {"task": updated}),
            )
        if status is not None and _is_completion(status) and not task.completed:
            self.bus.emit(Events.TASK_COMPLETED, {"task": updated})
        return WriteResult(success=True, task=updated)

    # ── Create / delete ─────────────────────────────────────────────

    def _new_task_line(self, content: str, metadata: TaskMetadata, completed: bool) -> str:
        suffix = build_metadata_suffix(metadata, self.metadata_format)
        body = f"{content} {suffix}".strip() if suffix else content
        return f"- [{'x' if completed else ' '}] {body}"

    @staticmethod
    def _descendant_end(lines: list[str], parent_line: int) -> int:
        """Index just past the parent's last indented descendant line."""
        parent_width = len(line_prefix(lines[parent_line]).expandtabs(4))
        end = parent_line + 1
        for i in range(parent_line + 1, len(lines)):
            line = lines[i]
            if not line.strip():
                continue
            if len(line_prefix(line).expandtabs(4)) <= parent_width:
                break
            end = i + 1
        return end

    async def create_task(
        self,
        content: str,
        file_path: str | None = None,
        parent_task_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        completed: bool = False,
    ) -> WriteResult:
        parent: Optional[Task] = None
        if parent_task_id:
            parent, error = self._lookup(parent_task_id)
            if parent is None:
                return WriteResult(success=False, error=f"Parent task: {error}")
            if parent.provenance != "document":
                return WriteResult(success=False, error="Subtasks can only be added under document tasks")
            file_path = file_path or parent.filePath
            if file_path != parent.filePath:
                return WriteResult(success=False, error="Subtask must live in the parent's file")
        if not file_path:
            return WriteResult(success=False, error="No file path provided")
        if not file_path.endswith(".md"):
            return WriteResult(success=False, error="Tasks can only be created in markdown files")

        try:
            task_meta = TaskMetadata.model_validate(_normalize_metadata_updates(metadata))
        except ValueError as e:
            return WriteResult(success=False, error=f"Invalid metadata: {e}")
        task_line = self._new_task_line(content, task_meta, completed)

        try:
            if not await self.workspace.exists(file_path):
                lines: list[str] = []
                line_no = 0
                new_text = task_line + "\n"
            else:
                lines = (await self.workspace.read(file_path)).split("\n")
                if parent is not None:
                    if parent.line >= len(lines) or not TASK_RE.match(lines[parent.line]):
                        return WriteResult(success=False, error="Parent task line not found")
                    line_no = self._descendant_end(lines, parent.line)
                    task_line = f"{line_prefix(lines[parent.line])}\t{task_line}"
                    lines.insert(line_no, task_line)
                    new_text = "\n".join(lines)
                else:
                    if lines and lines[-1] == "":
                        lines.pop()
                    line_no = len(lines)
                    new_text = "\n".join(lines + [task_line, ""])
            await self._write(file_path, new_text)
        except (OSError, ValueError) as e:
            logger.error(f"Error creating task in {file_path}: {e}")
            return WriteResult(success=False, error=str(e))

        if parent is not None:
            task_meta.parent = parent.id
        created = Task(
            id=task_id_for(file_path, line_no),
            content=content,
            filePath=file_path,
            line=line_no,
            completed=completed,
            status="x" if completed else " ",
            originalMarkdown=task_line,
            metadata=task_meta,
        )
        self.bus.emit(Events.TASK_ADDED, {"task": created})
        return WriteResult(success=True, task=created)

    def _descendant_ids(self, task: Task) -> list[str]:
        found: list[str] = []
        seen = {task.id}
        pending = list(task.metadata.children)
        while pending:
            child_id = pending.pop()
            if child_id in seen:
                continue
            seen.add(child_id)
            found.append(child_id)
            child = self.get_task(child_id)
            if child is not None:
                pending.extend(child.metadata.children)
        return found

    async def delete_task(self, task_id: str, delete_children: bool = False) -> WriteResult:
        task, error = self._lookup(task_id)
        if task is None:
            return WriteResult(success=False, error=error)
        if task.provenance == PROVENANCE_FILE:
            return WriteResult(success=False, error="File-level tasks are removed by deleting or retagging the file")

        try:
            lines, error = await self._read_lines(task)
            if lines is None:
                return WriteResult(success=False, error=error)

            deleted_ids = [task.id]
            doomed = [task.line]
            if delete_children:
                for child_id in self._descendant_ids(task):
                    deleted_ids.append(child_id)
                    child = self.get_task(child_id)
                    if child is not None and child.filePath == task.filePath:
                        doomed.append(child.line)

            for line_no in sorted(set(doomed), reverse=True):
                if 0 <= line_no < len(lines):
                    del lines[line_no]
            await self._write(task.filePath, "\n".join(lines), task.id)
        except (OSError, ValueError) as e:
            logger.error(f"Error deleting task {task_id}: {e}")
            return WriteResult(success=False, error=str(e))

        self.bus.emit(Events.TASK_DELETED, {
            "taskId": task.id,
            "filePath": task.filePath,
            "deletedTaskIds": deleted_ids,
            "mode": "subtree" if delete_children else "single",
        })
        return WriteResult(success=True, task=task)

    # ── Batch operations ────────────────────────────────────────────

    async def batch_update_task_status(
        self,
        task_ids: list[str],
        status: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> dict:
        updated: list[str] = []
        failed: list[dict] = []
        for task_id in task_ids:
            result = await self.update_task_status(task_id, status=status, completed=completed)
            if result.success:
                updated.append(task_id)
            else:
                failed.append({"id": task_id, "error": result.error or "Unknown error"})
        return {"updated": updated, "failed": failed}

    async def postpone_tasks(self, task_ids: list[str], new_date: str) -> dict:
        target = parse_date_or_offset(new_date)
        if target is None:
            return {"updated": [], "failed": [{"id": i, "error": "Invalid date format"} for i in task_ids]}
        updated: list[str] = []
        failed: list[dict] = []
        for task_id in task_ids:
            result = await self.update_task(task_id, {"metadata": {"dueDate": target}})
            if result.success:
                updated.append(task_id)
            else:
                failed.append({"id": task_id, "error": result.error or "Unknown error"})
        return {"updated": updated, "failed": failed}

    async def batch_update_text(self, task_ids: list[str], find_text: str, replace_text: str) -> dict:
        tasks: list[Task] = []
        for task_id in task_ids:
            task = self.get_task(task_id)
            if task is None or find_text not in task.content:
                continue
            result = await self.update_task(task_id, {"content": task.content.replace(find_text, replace_text, 1)})
            if result.success and result.task is not None:
                tasks.append(result.task)
        return {"tasks": tasks}

    async def batch_create_subtasks(self, parent_task_id: str, subtasks: list[dict[str, Any]]) -> dict:
        parent = self.get_task(parent_task_id)
        if parent is None:
            return {"tasks": []}
        created: list[Task] = []
        for item in subtasks:
            result = await self.create_task(
                item.get("content", ""),
                file_path=parent.filePath,
                parent_task_id=parent_task_id,
                metadata=item.get("metadata"),
                completed=bool(item.get("completed", False)),
            )
            if result.success and result.task is not None:
                created.append(result.task)
        return {"tasks": created}
