"""Metadata inheritance: task > file > project > default.

``augment_task`` is a pure function of its inputs; running it twice on its
own output yields the same task.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from taskflow.date_utils import to_epoch_ms
from taskflow.models import Task, TgProject
from taskflow.parsers.frontmatter import normalize_tag
from taskflow.parsers.markdown_tasks import convert_priority_value
from taskflow.settings import InheritanceSettings

logger = logging.getLogger("taskflow.augment")

SCALAR_FIELDS = ("priority", "context", "area", "estimatedTime", "actualTime", "useAsDateType", "heading")
SCALAR_DEFAULTS: dict[str, Any] = {"useAsDateType": "due"}

DATE_FIELDS = {
    "dueDate": ("dueDate", "due"),
    "startDate": ("startDate", "start"),
    "scheduledDate": ("scheduledDate", "scheduled"),
    "createdDate": ("createdDate", "created"),
}

SUBTASK_INHERITANCE_RULES = {
    "tags": True,
    "project": True,
    "priority": True,
    "dueDate": False,
    "startDate": False,
    "scheduledDate": False,
    "completed": False,
    "status": False,
    "recurrence": False,
    "onCompletion": False,
}


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v for v in (s.strip() for s in value.split(",")) if v]
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return [str(value)]


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for v in values:
        if v not in seen:
            seen.add(v)
            result.append(v)
    return result


def _lookup(meta: dict | None, *keys: str) -> Any:
    if not meta:
        return None
    for key in keys:
        if key in meta and _present(meta[key]):
            return meta[key]
    return None


def _convert_scalar(name: str, value: Any) -> Any:
    if name == "priority":
        return convert_priority_value(value)
    if name in ("estimatedTime", "actualTime"):
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
    if name == "heading":
        return _as_list(value) if not isinstance(value, list) else [str(v) for v in value]
    return str(value) if not isinstance(value, str) else value


@dataclass
class AugmentContext:
    filePath: str
    tasks: list[Task]
    fileMeta: dict = field(default_factory=dict)
    projectName: Optional[str] = None
    projectMeta: dict = field(default_factory=dict)
    fileContent: Optional[str] = None


class Augmentor:
    def __init__(
        self,
        settings: InheritanceSettings | None = None,
        date_augmentor=None,
    ):
        self.settings = settings or InheritanceSettings()
        self.date_augmentor = date_augmentor

    def update_settings(self, settings: InheritanceSettings) -> None:
        self.settings = settings

    # ── Per-task augmentation ───────────────────────────────────────

    def augment_task(
        self,
        task: Task,
        file_meta: dict | None = None,
        project_name: str | None = None,
        project_meta: dict | None = None,
    ) -> Task:
        result = task.model_copy(deep=True)
        meta = result.metadata
        file_meta = file_meta or {}
        project_meta = project_meta or {}
        file_scope = file_meta if self.settings.inheritFileScalars else {}

        self._apply_scalars(result, file_scope, project_meta)
        self._apply_dates(result, file_scope, project_meta)
        self._apply_arrays(result, file_meta, project_meta)

        # Recurrence, status and completion are task-only
        if not meta.recurrence:
            meta.recurrence = None

        self._apply_project_reference(result, project_name, project_meta)

        if meta.children:
            setattr(meta, "subtaskInheritance", dict(SUBTASK_INHERITANCE_RULES))
        return result

    def _apply_scalars(self, task: Task, file_meta: dict, project_meta: dict) -> None:
        meta = task.metadata
        for name in SCALAR_FIELDS:
            current = getattr(meta, name, None)
            if _present(current) and current != []:
                if name == "priority":
                    meta.priority = convert_priority_value(current)
                continue
            value = None
            for scope in (file_meta, project_meta):
                candidate = _lookup(scope, name)
                if candidate is None:
                    continue
                value = _convert_scalar(name, candidate)
                if value is not None:
                    break
            if value is None:
                value = SCALAR_DEFAULTS.get(name)
            if value is not None:
                setattr(meta, name, value)

    def _apply_dates(self, task: Task, file_meta: dict, project_meta: dict) -> None:
        meta = task.metadata
        for name, keys in DATE_FIELDS.items():
            if getattr(meta, name):
                continue
            for scope in (file_meta, project_meta):
                candidate = to_epoch_ms(_lookup(scope, *keys))
                if candidate is not None:
                    setattr(meta, name, candidate)
                    break

    def _apply_arrays(self, task: Task, file_meta: dict, project_meta: dict) -> None:
        meta = task.metadata
        task_tags = [t for t in (normalize_tag(v) for v in meta.tags) if t]
        if self.settings.inheritTags:
            file_tags = [t for t in (normalize_tag(v) for v in _as_list(_lookup(file_meta, "tags", "tag"))) if t]
            project_tags = [t for t in (normalize_tag(v) for v in _as_list(_lookup(project_meta, "tags"))) if t]
            meta.tags = _dedupe(self._ordered(task_tags, file_tags, project_tags))
        else:
            meta.tags = _dedupe(task_tags)

        file_deps = _as_list(_lookup(file_meta, "dependsOn")) if self.settings.inheritFileScalars else []
        project_deps = _as_list(_lookup(project_meta, "dependsOn"))
        meta.dependsOn = _dedupe(self._ordered(list(meta.dependsOn), file_deps, project_deps))

    def _ordered(self, task_vals: list, file_vals: list, project_vals: list) -> list:
        strategy = self.settings.arrayMergeStrategy
        if strategy == "file-first":
            return file_vals + task_vals + project_vals
        if strategy == "project-first":
            return project_vals + file_vals + task_vals
        return task_vals + file_vals + project_vals

    @staticmethod
    def _apply_project_reference(task: Task, project_name: str | None, project_meta: dict) -> None:
        meta = task.metadata
        if not meta.project and project_name:
            meta.project = project_name
        if meta.tgProject is not None or not project_meta:
            return
        provided = project_meta.get("tgProject")
        if provided:
            meta.tgProject = provided if isinstance(provided, TgProject) else TgProject.model_validate(provided)
        elif project_name:
            meta.tgProject = TgProject(
                type=project_meta.get("type") or "metadata",
                name=project_name,
                source=project_meta.get("source") or project_meta.get("configSource") or "unknown",
                readonly=bool(project_meta.get("readonly", False)),
            )

    # ── Batch ───────────────────────────────────────────────────────

    async def merge(self, ctx: AugmentContext) -> list[Task]:
        augmented = [
            self.augment_task(task, ctx.fileMeta, ctx.projectName, ctx.projectMeta)
            for task in ctx.tasks
        ]
        if self.date_augmentor is None:
            return augmented
        try:
            return await self.date_augmentor.augment_tasks_with_date_inheritance(
                augmented, ctx.filePath, ctx.fileContent
            )
        except Exception as e:
            logger.error(f"Date inheritance failed for {ctx.filePath}: {e}")
            return augmented
