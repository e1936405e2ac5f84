"""Versioned key/value cache records on SQLite.

Keys are namespaced (``tasks.raw:{path}``, ``tasks.augmented:{path}``,
``consolidated:taskIndex`` ...). Every record carries
``{hash, time, version, schema, data}``; a record written by another
storage version or schema reads as missing and is dropped.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from taskflow import config
from taskflow.models import Task, tasks_from_dicts, tasks_to_dicts

logger = logging.getLogger("taskflow.storage")

NS_RAW = "tasks.raw"
NS_PROJECT = "project.data"
NS_AUGMENTED = "tasks.augmented"
NS_CONSOLIDATED = "consolidated"
NS_ICS = "ics"
NS_FILE_TASKS = "file-tasks"
NS_META = "meta"

KEY_CONSOLIDATED = f"{NS_CONSOLIDATED}:taskIndex"
KEY_ICS_EVENTS = f"{NS_ICS}:events"
KEY_FILE_TASKS = f"{NS_FILE_TASKS}:all"
KEY_VERSION = f"{NS_META}:version"
KEY_SCHEMA_VERSION = f"{NS_META}:schemaVersion"


def hash_content(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


def serialize_tasks(tasks: list[Task]) -> str:
    return json.dumps(tasks_to_dicts(tasks), sort_keys=True, ensure_ascii=False)


def _namespace(key: str) -> str:
    return key.split(":", 1)[0]


class TaskStorage:
    """Record-level cache persistence backed by the ``kv_store`` table."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        version: str = config.STORAGE_VERSION,
        schema: int = config.STORAGE_SCHEMA,
    ):
        self.db = db
        self.version = version
        self.schema = schema

    # ── Primitive access ────────────────────────────────────────────

    async def _put(self, key: str, record: dict) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO kv_store (key, namespace, data_json, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET data_json=excluded.data_json, updated_at=excluded.updated_at""",
            (key, _namespace(key), json.dumps(record, ensure_ascii=False), now),
        )
        await self.db.commit()

    async def _get_raw(self, key: str) -> Optional[dict]:
        try:
            async with self.db.execute("SELECT data_json FROM kv_store WHERE key = ?", (key,)) as cur:
                row = await cur.fetchone()
        except aiosqlite.Error as e:
            logger.warning(f"Storage read failed for {key}: {e}")
            return None
        if not row:
            return None
        try:
            record = json.loads(row[0])
        except (TypeError, ValueError):
            logger.warning(f"Dropping unreadable record {key}")
            await self._delete(key)
            return None
        if not isinstance(record, dict):
            await self._delete(key)
            return None
        return record

    async def _get(self, key: str) -> Optional[dict]:
        record = await self._get_raw(key)
        if record is None:
            return None
        if record.get("version") != self.version or record.get("schema") != self.schema:
            logger.info(f"Dropping stale record {key} (version {record.get('version')})")
            await self._delete(key)
            return None
        return record

    async def _delete(self, key: str) -> None:
        try:
            await self.db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await self.db.commit()
        except aiosqlite.Error as e:
            logger.warning(f"Storage delete failed for {key}: {e}")

    async def _keys(self, namespace: str) -> list[str]:
        async with self.db.execute(
            "SELECT key FROM kv_store WHERE namespace = ? ORDER BY key", (namespace,)
        ) as cur:
            rows = await cur.fetchall()
        return [row[0] for row in rows]

    def _wrap(self, data: Any, digest: str, **extra: Any) -> dict:
        return {
            "hash": digest,
            "time": int(time.time() * 1000),
            "version": self.version,
            "schema": self.schema,
            "data": data,
            **extra,
        }

    # ── Raw parse results ───────────────────────────────────────────

    async def store_raw(self, path: str, tasks: list[Task], content: str, mtime: int | None = None) -> None:
        await self._put(
            f"{NS_RAW}:{path}",
            self._wrap(tasks_to_dicts(tasks), hash_content(content), mtime=mtime),
        )

    async def load_raw(self, path: str) -> Optional[dict]:
        record = await self._get(f"{NS_RAW}:{path}")
        if record is None:
            return None
        return {**record, "data": tasks_from_dicts(record.get("data"))}

    def is_raw_valid(self, record: Optional[dict], content: str | None = None, mtime: int | None = None) -> bool:
        if not record:
            return False
        if record.get("version") != self.version or record.get("schema") != self.schema:
            return False
        if mtime is not None and record.get("mtime") is not None and record["mtime"] != mtime:
            return False
        if content is not None and record.get("hash") != hash_content(content):
            return False
        return True

    # ── Project data ────────────────────────────────────────────────

    async def store_project(self, path: str, data: dict) -> None:
        body = json.loads(json.dumps(data, default=str))
        await self._put(
            f"{NS_PROJECT}:{path}",
            self._wrap(body, hash_content(json.dumps(body, sort_keys=True))),
        )

    async def load_project(self, path: str) -> Optional[dict]:
        return await self._get(f"{NS_PROJECT}:{path}")

    # ── Augmented tasks ─────────────────────────────────────────────

    async def store_augmented(self, path: str, tasks: list[Task]) -> None:
        serialized = serialize_tasks(tasks)
        await self._put(
            f"{NS_AUGMENTED}:{path}",
            self._wrap(json.loads(serialized), hash_content(serialized)),
        )

    async def load_augmented(self, path: str) -> Optional[dict]:
        record = await self._get(f"{NS_AUGMENTED}:{path}")
        if record is None:
            return None
        return {**record, "data": tasks_from_dicts(record.get("data"))}

    # ── Consolidated snapshot, calendar and file-level tasks ────────

    async def store_consolidated(self, snapshot: dict) -> None:
        body = json.dumps(snapshot, sort_keys=True, ensure_ascii=False)
        await self._put(KEY_CONSOLIDATED, self._wrap(snapshot, hash_content(body)))

    async def load_consolidated(self) -> Optional[dict]:
        record = await self._get(KEY_CONSOLIDATED)
        return record.get("data") if record else None

    async def store_ics_events(self, tasks: list[Task]) -> None:
        serialized = serialize_tasks(tasks)
        await self._put(KEY_ICS_EVENTS, self._wrap(json.loads(serialized), hash_content(serialized)))

    async def load_ics_events(self) -> list[Task]:
        record = await self._get(KEY_ICS_EVENTS)
        return tasks_from_dicts(record.get("data")) if record else []

    async def store_file_tasks(self, tasks: dict[str, Task]) -> None:
        body = {path: task.model_dump(mode="json", exclude_none=True) for path, task in tasks.items()}
        serialized = json.dumps(body, sort_keys=True, ensure_ascii=False)
        await self._put(KEY_FILE_TASKS, self._wrap(body, hash_content(serialized)))

    async def load_file_tasks(self) -> dict[str, Task]:
        record = await self._get(KEY_FILE_TASKS)
        if not record or not isinstance(record.get("data"), dict):
            return {}
        return {path: Task.model_validate(data) for path, data in record["data"].items()}

    # ── Meta ────────────────────────────────────────────────────────

    async def save_meta(self, key: str, value: Any) -> None:
        await self._put(f"{NS_META}:{key}", self._wrap(value, ""))

    async def load_meta(self, key: str, default: Any = None) -> Any:
        record = await self._get(f"{NS_META}:{key}")
        return record.get("data", default) if record else default

    async def update_version(self) -> None:
        await self._put(KEY_VERSION, self._wrap(self.version, ""))
        await self._put(KEY_SCHEMA_VERSION, self._wrap(self.schema, ""))

    async def load_version(self) -> Optional[dict]:
        """Stored ``{version, schema}`` regardless of whether it matches ours."""
        version = await self._get_raw(KEY_VERSION)
        schema = await self._get_raw(KEY_SCHEMA_VERSION)
        if version is None:
            return None
        return {"version": version.get("data"), "schema": schema.get("data") if schema else None}

    # ── Listing and clearing ────────────────────────────────────────

    async def list_augmented_paths(self) -> list[str]:
        prefix = len(NS_AUGMENTED) + 1
        return [key[prefix:] for key in await self._keys(NS_AUGMENTED)]

    async def list_raw_paths(self) -> list[str]:
        prefix = len(NS_RAW) + 1
        return [key[prefix:] for key in await self._keys(NS_RAW)]

    async def clear_file(self, path: str) -> None:
        await self.db.execute(
            "DELETE FROM kv_store WHERE key IN (?, ?, ?)",
            (f"{NS_RAW}:{path}", f"{NS_PROJECT}:{path}", f"{NS_AUGMENTED}:{path}"),
        )
        await self.db.commit()

    async def clear_namespace(self, namespace: str) -> None:
        await self.db.execute("DELETE FROM kv_store WHERE namespace = ?", (namespace,))
        await self.db.commit()

    async def clear(self) -> None:
        await self.db.execute("DELETE FROM kv_store")
        await self.db.commit()
        logger.info("Task storage cleared")

    async def get_stats(self) -> dict:
        async with self.db.execute(
            "SELECT namespace, COUNT(*) FROM kv_store GROUP BY namespace"
        ) as cur:
            rows = await cur.fetchall()
        counts = {row[0]: row[1] for row in rows}
        return {
            "totalKeys": sum(counts.values()),
            "byNamespace": {
                "raw": counts.get(NS_RAW, 0),
                "project": counts.get(NS_PROJECT, 0),
                "augmented": counts.get(NS_AUGMENTED, 0),
                "consolidated": counts.get(NS_CONSOLIDATED, 0),
                "ics": counts.get(NS_ICS, 0),
                "fileTasks": counts.get(NS_FILE_TASKS, 0),
                "meta": counts.get(NS_META, 0),
            },
        }
