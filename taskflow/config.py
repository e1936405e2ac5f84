"""Taskflow process configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default

# Project root (one level up from taskflow/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Workspace being indexed
WORKSPACE_DIR = Path(os.getenv("TASKFLOW_WORKSPACE_DIR", str(PROJECT_ROOT / "workspace")))
SETTINGS_PATH = Path(os.getenv("TASKFLOW_SETTINGS_PATH", str(PROJECT_ROOT / "taskflow.yaml")))

# Database
DB_PATH = Path(os.getenv("TASKFLOW_DB_PATH", str(PROJECT_ROOT / "data" / "taskflow_cache.db")))
STORAGE_VERSION = os.getenv("TASKFLOW_STORAGE_VERSION", "1.0.0")
STORAGE_SCHEMA = _env_int("TASKFLOW_STORAGE_SCHEMA", 1)

# Ingestion timings (seconds)
SOURCE_DEBOUNCE_SECONDS = _env_float("TASKFLOW_SOURCE_DEBOUNCE_SECONDS", 0.3)
METADATA_BATCH_SECONDS = _env_float("TASKFLOW_METADATA_BATCH_SECONDS", 0.15)
PROCESS_DEBOUNCE_SECONDS = _env_float("TASKFLOW_PROCESS_DEBOUNCE_SECONDS", 0.3)
FILE_SOURCE_SCAN_DELAY_SECONDS = _env_float("TASKFLOW_FILE_SOURCE_SCAN_DELAY_SECONDS", 1.0)
INITIAL_SCAN_BATCH_SIZE = _env_int("TASKFLOW_INITIAL_SCAN_BATCH_SIZE", 50)

# Repository persistence
PERSIST_DELAY_SECONDS = _env_float("TASKFLOW_PERSIST_DELAY_SECONDS", 1.0)
PERSIST_MAX_QUEUE_SIZE = _env_int("TASKFLOW_PERSIST_MAX_QUEUE_SIZE", 10)
PERSIST_MAX_INTERVAL_SECONDS = _env_float("TASKFLOW_PERSIST_MAX_INTERVAL_SECONDS", 5.0)

# Calendar sync
ICS_SYNC_MIN_INTERVAL_SECONDS = _env_float("TASKFLOW_ICS_SYNC_MIN_INTERVAL_SECONDS", 30.0)
ICS_USER_AGENT = os.getenv("TASKFLOW_ICS_USER_AGENT", "Taskflow Calendar Sync")

# Observability
OTEL_ENABLED = _env_bool("TASKFLOW_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("TASKFLOW_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("TASKFLOW_OTEL_SERVICE_NAME", "taskflow")
PROM_PORT = _env_int("TASKFLOW_PROM_PORT", 9464)

# Startup
WATCHER_ENABLED = _env_bool("TASKFLOW_WATCHER_ENABLED", True)

# Server settings
HOST = os.getenv("TASKFLOW_HOST", "0.0.0.0")
PORT = int(os.getenv("TASKFLOW_PORT", "8000"))

# CORS
FRONTEND_ORIGIN = os.getenv("TASKFLOW_FRONTEND_ORIGIN", "http://localhost:3000")
