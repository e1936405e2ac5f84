"""Task query, write and ingestion API."""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request
from pydantic import BaseModel, Field

from taskflow.models import WriteResult, task_to_dict, tasks_to_dicts

logger = logging.getLogger("taskflow.api")

tasks_router = APIRouter(prefix="/api/tasks", tags=["tasks"])
ingest_router = APIRouter(prefix="/api/ingest", tags=["ingest"])
dataflow_router = APIRouter(prefix="/api/dataflow", tags=["dataflow"])


class CreateTaskRequest(BaseModel):
    content: str = Field(..., min_length=1)
    filePath: Optional[str] = None
    parentTaskId: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    completed: bool = False


class UpdateTaskRequest(BaseModel):
    content: Optional[str] = None
    status: Optional[str] = Field(None, max_length=1)
    completed: Optional[bool] = None
    metadata: Optional[dict[str, Any]] = None


class BatchStatusRequest(BaseModel):
    taskIds: list[str]
    status: Optional[str] = Field(None, max_length=1)
    completed: Optional[bool] = None


class PostponeRequest(BaseModel):
    taskIds: list[str]
    newDate: str = Field(..., min_length=1)


class BatchTextRequest(BaseModel):
    taskIds: list[str]
    findText: str = Field(..., min_length=1)
    replaceText: str = ""


def _get_orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Dataflow not initialized")
    return orchestrator


def _write_response(result: WriteResult) -> dict:
    if not result.success:
        status_code = 404 if result.error == "Task not found" else 400
        raise HTTPException(status_code=status_code, detail=result.error or "Write failed")
    return {"success": True, "task": task_to_dict(result.task) if result.task else None}


# ── Queries ─────────────────────────────────────────────────────────

@tasks_router.get("")
async def list_tasks(
    request: Request,
    project: Optional[str] = None,
    tag: Optional[list[str]] = Query(None),
    completed: Optional[bool] = None,
    file: Optional[str] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(500, ge=1, le=5000),
):
    """List tasks, optionally narrowed by project, tags, completion and file."""
    query = _get_orchestrator(request).query_api
    filters: list[dict] = []
    if project:
        filters.append({"type": "project", "value": project})
    for t in tag or []:
        filters.append({"type": "tag", "value": t})
    if completed is not None:
        filters.append({"type": "status", "value": completed})

    tasks = await query.query(filters) if filters else await query.get_all_tasks()
    if file:
        tasks = [t for t in tasks if t.filePath == file]
    return {"total": len(tasks), "offset": offset, "items": tasks_to_dicts(tasks[offset:offset + limit])}


@tasks_router.get("/summary")
async def get_tasks_summary(request: Request):
    query = _get_orchestrator(request).query_api
    summary = await query.get_summary()
    summary.update(await query.get_available_contexts_and_projects())
    return summary


@tasks_router.get("/by-date")
async def get_tasks_by_date(
    request: Request,
    start: Optional[str] = None,
    end: Optional[str] = None,
    field: Literal["due", "start", "scheduled"] = "due",
):
    """Tasks whose ``field`` date falls within ``[start, end]`` (ISO dates or epoch ms)."""
    query = _get_orchestrator(request).query_api
    try:
        tasks = await query.get_tasks_by_date_range(start, end, field)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"total": len(tasks), "items": tasks_to_dicts(tasks)}


@tasks_router.get("/{task_id:path}")
async def get_task(request: Request, task_id: str):
    task = await _get_orchestrator(request).query_api.get_task_by_id(task_id)
    if not task:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task_to_dict(task)


# ── Writes ──────────────────────────────────────────────────────────

@tasks_router.post("")
async def create_task(request: Request, body: CreateTaskRequest):
    write = _get_orchestrator(request).write_api
    result = await write.create_task(
        body.content,
        file_path=body.filePath,
        parent_task_id=body.parentTaskId,
        metadata=body.metadata,
        completed=body.completed,
    )
    return _write_response(result)


@tasks_router.post("/batch/status")
async def batch_update_status(request: Request, body: BatchStatusRequest):
    if body.status is None and body.completed is None:
        raise HTTPException(status_code=400, detail="Either status or completed is required")
    write = _get_orchestrator(request).write_api
    return await write.batch_update_task_status(body.taskIds, status=body.status, completed=body.completed)


@tasks_router.post("/batch/text")
async def batch_update_text(request: Request, body: BatchTextRequest):
    write = _get_orchestrator(request).write_api
    result = await write.batch_update_text(body.taskIds, body.findText, body.replaceText)
    return {"tasks": tasks_to_dicts(result["tasks"])}


@tasks_router.post("/postpone")
async def postpone_tasks(request: Request, body: PostponeRequest):
    write = _get_orchestrator(request).write_api
    return await write.postpone_tasks(body.taskIds, body.newDate)


@tasks_router.patch("/{task_id:path}")
async def update_task(request: Request, task_id: str, body: UpdateTaskRequest):
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    write = _get_orchestrator(request).write_api
    return _write_response(await write.update_task(task_id, updates))


@tasks_router.delete("/{task_id:path}")
async def delete_task(request: Request, task_id: str, deleteChildren: bool = False):
    write = _get_orchestrator(request).write_api
    return _write_response(await write.delete_task(task_id, delete_children=deleteChildren))


# ── Host change notifications ───────────────────────────────────────

@ingest_router.post("/changes")
async def ingest_changes(request: Request, payload: Any = Body(...)):
    """Accept change notifications from an external host (editor plugin, sync tool)."""
    orchestrator = _get_orchestrator(request)
    accepted = orchestrator.document_source.ingest(payload)
    logger.debug(f"Ingested {accepted} host changes")
    return {"accepted": accepted}


# ── Dataflow maintenance ────────────────────────────────────────────

@dataflow_router.get("/stats")
async def get_dataflow_stats(request: Request):
    return await _get_orchestrator(request).get_stats()


@dataflow_router.post("/rebuild")
async def rebuild_index(request: Request):
    orchestrator = _get_orchestrator(request)
    await orchestrator.rebuild()
    return {"status": "ok", "total": orchestrator.repository.get_total_task_count()}


@dataflow_router.post("/calendar/refresh")
async def refresh_calendars(request: Request):
    orchestrator = _get_orchestrator(request)
    payload = await orchestrator.ics_source.refresh()
    statuses = orchestrator.ics_manager.get_all_sync_statuses()
    return {
        "events": len(payload.get("events") or []),
        "error": payload.get("error"),
        "sources": {sid: status.model_dump(mode="json") for sid, status in statuses.items()},
    }
