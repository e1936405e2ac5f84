"""Taskflow FastAPI service: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskflow import config
from taskflow.db import connection
from taskflow.db.file_watcher import file_watcher
from taskflow.db.sqlite_migrations import run_migrations
from taskflow.observability import initialize as initialize_observability, shutdown as shutdown_observability
from taskflow.orchestrator import DataflowOrchestrator
from taskflow.routers.tasks import dataflow_router, ingest_router, tasks_router
from taskflow.settings import load_settings
from taskflow.workspace import LocalWorkspace

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("taskflow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Taskflow starting up")
    initialize_observability(app)

    db = await connection.get_connection()
    await run_migrations(db)

    settings = load_settings(config.SETTINGS_PATH)
    workspace = LocalWorkspace(config.WORKSPACE_DIR)
    orchestrator = DataflowOrchestrator(db, workspace, settings)
    await orchestrator.initialize()
    app.state.orchestrator = orchestrator

    if config.WATCHER_ENABLED:
        await file_watcher.start(orchestrator.document_source, workspace.root)

    yield

    logger.info("Taskflow shutting down")
    await file_watcher.stop()
    await orchestrator.cleanup()
    app.state.orchestrator = None
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Taskflow API",
    description="Task index and query service for markdown workspaces",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tasks_router)
app.include_router(ingest_router)
app.include_router(dataflow_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    orchestrator = getattr(app.state, "orchestrator", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "watcher": "running" if file_watcher.is_running else "stopped",
        "repository": {
            "initialized": bool(orchestrator and orchestrator.initialized),
            "tasks": orchestrator.repository.get_total_task_count() if orchestrator else 0,
        },
    }
