"""Pydantic models shared by the dataflow components."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# Task provenance
PROVENANCE_DOCUMENT = "document"
PROVENANCE_FILE = "file"
PROVENANCE_CALENDAR = "calendar"


# ── Time components ─────────────────────────────────────────────────

class TimeComponent(BaseModel):
    hour: int
    minute: int
    second: Optional[int] = None
    originalText: str = ""
    isRange: bool = False
    # Only the start of a range points at its end partner.
    rangePartner: Optional[TimeComponent] = None


class TimeComponents(BaseModel):
    startTime: Optional[TimeComponent] = None
    endTime: Optional[TimeComponent] = None
    dueTime: Optional[TimeComponent] = None
    scheduledTime: Optional[TimeComponent] = None


class EnhancedDates(BaseModel):
    """Combined date+time values in epoch ms."""
    startDateTime: Optional[int] = None
    endDateTime: Optional[int] = None
    dueDateTime: Optional[int] = None
    scheduledDateTime: Optional[int] = None


# ── Task ────────────────────────────────────────────────────────────

class TgProject(BaseModel):
    type: str = "metadata"  # "metadata" | "path" | "config" | "default"
    name: str
    source: str = "unknown"
    readonly: bool = False


class TaskMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    tags: list[str] = Field(default_factory=list)
    children: list[str] = Field(default_factory=list)
    parent: Optional[str] = None
    heading: Optional[list[str]] = None

    # Dates (epoch ms)
    createdDate: Optional[int] = None
    startDate: Optional[int] = None
    scheduledDate: Optional[int] = None
    dueDate: Optional[int] = None
    completedDate: Optional[int] = None
    cancelledDate: Optional[int] = None

    recurrence: Optional[str] = None
    priority: Optional[int] = None
    project: Optional[str] = None
    tgProject: Optional[TgProject] = None
    context: Optional[str] = None
    area: Optional[str] = None
    dependsOn: list[str] = Field(default_factory=list)
    onCompletion: Optional[str] = None
    id: Optional[str] = None

    estimatedTime: Optional[int] = None
    actualTime: Optional[int] = None
    useAsDateType: Optional[str] = None

    timeComponents: Optional[TimeComponents] = None
    enhancedDates: Optional[EnhancedDates] = None
    source: Optional[str] = None


class Task(BaseModel):
    id: str
    content: str = ""
    filePath: str = ""
    line: int = 0
    completed: bool = False
    status: str = " "
    originalMarkdown: str = ""
    provenance: str = PROVENANCE_DOCUMENT  # "document" | "file" | "calendar"
    readonly: bool = False
    metadata: TaskMetadata = Field(default_factory=TaskMetadata)


def task_to_dict(task: Task) -> dict[str, Any]:
    return task.model_dump(mode="json", exclude_none=True)


def tasks_to_dicts(tasks: list[Task]) -> list[dict[str, Any]]:
    return [task_to_dict(t) for t in tasks]


def tasks_from_dicts(rows: list[dict[str, Any]] | None) -> list[Task]:
    return [Task.model_validate(r) for r in rows or []]


# ── Date inheritance ────────────────────────────────────────────────

class FileDateInfo(BaseModel):
    filePath: str
    ctime: int  # epoch ms
    mtime: int = 0
    metadataDate: Optional[int] = None
    dailyNoteDate: Optional[int] = None
    isDailyNote: bool = False
    cachedAt: float = 0.0  # monotonic seconds


class DateResolutionResult(BaseModel):
    resolvedDate: int  # epoch ms, local midnight
    source: str  # "line-date" | "parent-task" | "daily-note-date" | "metadata-date" | "file-ctime"
    confidence: str  # "high" | "medium" | "low"
    usedFallback: bool = False
    context: Optional[str] = None


# ── Calendar ────────────────────────────────────────────────────────

class IcsSourceRef(BaseModel):
    id: str
    name: str


class IcsEvent(BaseModel):
    uid: str
    summary: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    dtstart: int  # epoch ms
    dtend: Optional[int] = None
    allDay: bool = False
    status: Optional[str] = None
    priority: Optional[int] = None
    categories: list[str] = Field(default_factory=list)
    rrule: Optional[str] = None
    lastModified: Optional[int] = None
    source: Optional[IcsSourceRef] = None


class IcsSyncStatus(BaseModel):
    sourceId: str
    status: str = "idle"  # "idle" | "syncing" | "error" | "disabled"
    lastSync: Optional[int] = None
    nextSync: Optional[int] = None
    eventCount: int = 0
    error: Optional[str] = None
    errorCategory: Optional[str] = None


# ── Write results ───────────────────────────────────────────────────

class WriteResult(BaseModel):
    success: bool
    task: Optional[Task] = None
    error: Optional[str] = None
