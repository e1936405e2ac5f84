"""Dataflow settings consumed from the settings collaborator.

Settings are owned by the host (UI, config file); the dataflow only reads
them. They are loaded from a YAML file and validated into pydantic models.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger("taskflow.settings")


# ── Metadata inheritance ────────────────────────────────────────────

class InheritanceSettings(BaseModel):
    # File-level scalar/date/dependsOn values
    inheritFileScalars: bool = True
    # File and project tags
    inheritTags: bool = True
    arrayMergeStrategy: str = "task-first"  # "task-first" | "file-first" | "project-first"


# ── File-as-task recognition ────────────────────────────────────────

class MetadataRecognition(BaseModel):
    enabled: bool = True
    taskFields: list[str] = Field(default_factory=lambda: ["dueDate", "status", "priority", "assigned"])
    requireAllFields: bool = False


class TagRecognition(BaseModel):
    enabled: bool = True
    taskTags: list[str] = Field(default_factory=lambda: ["#task", "#actionable", "#todo"])
    matchMode: str = "exact"  # "exact" | "prefix" | "contains"


class TemplateRecognition(BaseModel):
    enabled: bool = False
    templatePaths: list[str] = Field(default_factory=lambda: ["Templates/Task Template.md"])
    checkTemplateMetadata: bool = True


class PathRecognition(BaseModel):
    enabled: bool = False
    taskPaths: list[str] = Field(default_factory=lambda: ["Projects/", "Tasks/"])
    matchMode: str = "prefix"  # "prefix" | "glob" | "regex"


class RecognitionStrategies(BaseModel):
    metadata: MetadataRecognition = Field(default_factory=MetadataRecognition)
    tags: TagRecognition = Field(default_factory=TagRecognition)
    templates: TemplateRecognition = Field(default_factory=TemplateRecognition)
    paths: PathRecognition = Field(default_factory=PathRecognition)


class FileTaskProperties(BaseModel):
    contentSource: str = "filename"  # "filename" | "title" | "h1" | "custom"
    customContentField: Optional[str] = None
    stripExtension: bool = True
    defaultStatus: str = " "
    defaultPriority: Optional[int] = None
    preferFrontmatterTitle: bool = True


def _default_metadata_to_symbol() -> dict[str, str]:
    return {
        "completed": "x", "done": "x", "finished": "x", "complete": "x",
        "checked": "x", "resolved": "x", "closed": "x", "x": "x", "X": "x",
        "in-progress": "/", "in progress": "/", "inprogress": "/", "doing": "/",
        "working": "/", "active": "/", "started": "/", "ongoing": "/", "/": "/", ">": "/",
        "planned": "?", "todo": "?", "pending": "?", "scheduled": "?", "queued": "?",
        "waiting": "?", "later": "?", "?": "?",
        "cancelled": "-", "canceled": "-", "abandoned": "-", "dropped": "-",
        "skipped": "-", "deferred": "-", "wontfix": "-", "won't fix": "-", "-": "-",
        "not-started": " ", "not started": " ", "notstarted": " ", "new": " ",
        "open": " ", "created": " ", "unstarted": " ", " ": " ",
    }


def _default_symbol_to_metadata() -> dict[str, str]:
    return {
        "x": "completed",
        "X": "completed",
        "/": "in-progress",
        ">": "in-progress",
        "?": "planned",
        "-": "cancelled",
        " ": "not-started",
    }


class StatusMapping(BaseModel):
    enabled: bool = True
    metadataToSymbol: dict[str, str] = Field(default_factory=_default_metadata_to_symbol)
    symbolToMetadata: dict[str, str] = Field(default_factory=_default_symbol_to_metadata)
    caseSensitive: bool = False

    def to_symbol(self, value: str) -> Optional[str]:
        target = value if self.caseSensitive else value.lower()
        for key, symbol in self.metadataToSymbol.items():
            candidate = key if self.caseSensitive else key.lower()
            if candidate == target:
                return symbol
        return None

    def to_metadata(self, symbol: str) -> str:
        if not self.enabled:
            return symbol
        return self.symbolToMetadata.get(symbol, symbol)


class FileSourceSettings(BaseModel):
    enabled: bool = False
    recognitionStrategies: RecognitionStrategies = Field(default_factory=RecognitionStrategies)
    fileTaskProperties: FileTaskProperties = Field(default_factory=FileTaskProperties)
    statusMapping: StatusMapping = Field(default_factory=StatusMapping)

    def enabled_strategies(self) -> list[str]:
        strategies = self.recognitionStrategies
        names = []
        if strategies.metadata.enabled:
            names.append("metadata")
        if strategies.tags.enabled:
            names.append("tags")
        if strategies.paths.enabled:
            names.append("paths")
        if strategies.templates.enabled:
            names.append("templates")
        return names


def validate_file_source_settings(settings: FileSourceSettings) -> list[str]:
    """Return human-readable configuration errors (empty when valid)."""
    errors: list[str] = []
    strategies = settings.recognitionStrategies
    if settings.enabled and not settings.enabled_strategies():
        errors.append("At least one recognition strategy must be enabled")
    if strategies.metadata.enabled and not strategies.metadata.taskFields:
        errors.append("Metadata strategy requires at least one task field")
    if strategies.tags.enabled and not strategies.tags.taskTags:
        errors.append("Tag strategy requires at least one task tag")
    if strategies.templates.enabled and not strategies.templates.templatePaths:
        errors.append("Template strategy requires at least one template path")
    if strategies.paths.enabled and not strategies.paths.taskPaths:
        errors.append("Path strategy requires at least one task path")
    props = settings.fileTaskProperties
    if props.contentSource == "custom" and not props.customContentField:
        errors.append("Custom content source requires customContentField to be specified")
    if settings.statusMapping.enabled:
        if not settings.statusMapping.metadataToSymbol:
            errors.append("Status mapping requires at least one metadata to symbol mapping")
        if not settings.statusMapping.symbolToMetadata:
            errors.append("Status mapping requires at least one symbol to metadata mapping")
    return errors


# ── Calendar sources ────────────────────────────────────────────────

class IcsAuth(BaseModel):
    type: str = "none"  # "none" | "basic" | "bearer"
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)


class IcsFilterRules(BaseModel):
    summary: list[str] = Field(default_factory=list)
    description: list[str] = Field(default_factory=list)
    location: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)


class IcsFilters(BaseModel):
    include: Optional[IcsFilterRules] = None
    exclude: Optional[IcsFilterRules] = None


class IcsTextReplacement(BaseModel):
    name: str = ""
    enabled: bool = True
    target: str = "all"  # "summary" | "description" | "location" | "all"
    pattern: str
    replacement: str = ""
    flags: str = "g"


class IcsSourceConfig(BaseModel):
    id: str
    name: str
    url: str
    enabled: bool = True
    refreshInterval: int = 60  # minutes
    showAllDayEvents: bool = True
    showTimedEvents: bool = True
    auth: Optional[IcsAuth] = None
    filters: Optional[IcsFilters] = None
    textReplacements: list[IcsTextReplacement] = Field(default_factory=list)


class IcsSettings(BaseModel):
    sources: list[IcsSourceConfig] = Field(default_factory=list)
    networkTimeout: float = 30.0  # seconds
    maxEventsPerSource: int = 1000
    enableBackgroundRefresh: bool = False


# ── Projects ────────────────────────────────────────────────────────

class ProjectPathMapping(BaseModel):
    pathPattern: str
    projectName: str
    enabled: bool = True


class ProjectSettings(BaseModel):
    configFileName: str = "project.md"
    pathMappings: list[ProjectPathMapping] = Field(default_factory=list)
    metadataKey: str = "project"
    useFileNameAsDefault: bool = False


# ── Root ────────────────────────────────────────────────────────────

class DataflowSettings(BaseModel):
    inheritance: InheritanceSettings = Field(default_factory=InheritanceSettings)
    fileSource: FileSourceSettings = Field(default_factory=FileSourceSettings)
    ics: IcsSettings = Field(default_factory=IcsSettings)
    projects: ProjectSettings = Field(default_factory=ProjectSettings)
    preferMetadataFormat: str = "tasks"  # "tasks" (emoji) | "dataview"
    dateInheritanceEnabled: bool = True


def load_settings(path: Path | None) -> DataflowSettings:
    """Load settings from a YAML file, falling back to defaults."""
    if path is None or not path.exists():
        return DataflowSettings()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to read settings file {path}: {e}")
        return DataflowSettings()
    if not isinstance(raw, dict):
        logger.warning(f"Settings file {path} is not a mapping, using defaults")
        return DataflowSettings()
    return DataflowSettings.model_validate(raw)
