import types
import unittest

from fastapi import HTTPException

from taskflow.db.indexer import TaskIndexer
from taskflow.models import Task, TaskMetadata, WriteResult
from taskflow.routers import tasks as tasks_router


def _tasks() -> list[Task]:
    return [
        Task(id="a.md-L0", content="one", filePath="a.md", metadata=TaskMetadata(project="Alpha", tags=["#x"])),
        Task(id="b.md-L0", content="two", filePath="b.md", completed=True, status="x"),
        Task(id="b.md-L1", content="three", filePath="b.md"),
    ]


class _FakeQueryAPI:
    def __init__(self) -> None:
        self.tasks = _tasks()
        self.queries: list[list[dict]] = []

    async def get_all_tasks(self):
        return list(self.tasks)

    async def query(self, filters=None, sort=None):
        self.queries.append(filters)
        result = list(self.tasks)
        for f in filters or []:
            if f["type"] == "project":
                result = [t for t in result if t.metadata.project == f["value"]]
            elif f["type"] == "status":
                result = [t for t in result if t.completed == f["value"]]
        return result

    async def get_task_by_id(self, task_id):
        return next((t for t in self.tasks if t.id == task_id), None)

    async def get_summary(self):
        return {"total": len(self.tasks)}

    async def get_available_contexts_and_projects(self):
        return {"contexts": [], "projects": ["Alpha"]}

    async def get_tasks_by_date_range(self, start=None, end=None, field="due"):
        indexer = TaskIndexer()
        for task in self.tasks:
            indexer.update_task(task)
        return indexer.get_tasks_by_date_range(f"{field}Date", start, end)


class _FakeWriteAPI:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def update_task(self, task_id, updates):
        self.calls.append(("update", task_id, updates))
        if task_id == "missing":
            return WriteResult(success=False, error="Task not found")
        if task_id == "ics-1":
            return WriteResult(success=False, error="Calendar tasks are read-only")
        return WriteResult(success=True, task=Task(id=task_id, content=updates.get("content", "")))

    async def delete_task(self, task_id, delete_children=False):
        self.calls.append(("delete", task_id, delete_children))
        return WriteResult(success=True)

    async def batch_update_task_status(self, task_ids, status=None, completed=None):
        return {"updated": list(task_ids), "failed": []}


class _FakeDocumentSource:
    def __init__(self) -> None:
        self.payloads: list = []

    def ingest(self, payload):
        self.payloads.append(payload)
        return len(payload.get("changes", []))


class _FakeOrchestrator:
    def __init__(self) -> None:
        self.query_api = _FakeQueryAPI()
        self.write_api = _FakeWriteAPI()
        self.document_source = _FakeDocumentSource()


class TasksRouterTests(unittest.IsolatedAsyncioTestCase):
    def _request(self, orchestrator):
        return types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(orchestrator=orchestrator)
            )
        )

    async def _list(self, orchestrator, **params):
        values = {"project": None, "tag": None, "completed": None, "file": None, "offset": 0, "limit": 500}
        values.update(params)
        return await tasks_router.list_tasks(self._request(orchestrator), **values)

    async def test_missing_orchestrator_is_unavailable(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await self._list(None)
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_list_filters_and_pages(self) -> None:
        orchestrator = _FakeOrchestrator()
        payload = await self._list(orchestrator)
        self.assertEqual(payload["total"], 3)
        self.assertEqual(orchestrator.query_api.queries, [])

        payload = await self._list(orchestrator, project="Alpha", tag=["#x"])
        self.assertEqual([t["id"] for t in payload["items"]], ["a.md-L0"])
        self.assertEqual(
            orchestrator.query_api.queries[-1],
            [{"type": "project", "value": "Alpha"}, {"type": "tag", "value": "#x"}],
        )

        payload = await self._list(orchestrator, completed=False, file="b.md")
        self.assertEqual([t["id"] for t in payload["items"]], ["b.md-L1"])

        payload = await self._list(orchestrator, offset=1, limit=1)
        self.assertEqual(payload["total"], 3)
        self.assertEqual([t["id"] for t in payload["items"]], ["b.md-L0"])

    async def test_get_task(self) -> None:
        request = self._request(_FakeOrchestrator())
        payload = await tasks_router.get_task(request, "b.md-L0")
        self.assertTrue(payload["completed"])
        with self.assertRaises(HTTPException) as ctx:
            await tasks_router.get_task(request, "nope")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_by_date_rejects_unparseable_bounds(self) -> None:
        request = self._request(_FakeOrchestrator())
        payload = await tasks_router.get_tasks_by_date(request, start="2024-01-01", end="", field="due")
        self.assertEqual(payload, {"total": 0, "items": []})
        with self.assertRaises(HTTPException) as ctx:
            await tasks_router.get_tasks_by_date(request, start="next tuesday-ish", end=None, field="due")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("Invalid start date", ctx.exception.detail)

    async def test_summary_merges_projects(self) -> None:
        payload = await tasks_router.get_tasks_summary(self._request(_FakeOrchestrator()))
        self.assertEqual(payload, {"total": 3, "contexts": [], "projects": ["Alpha"]})

    async def test_update_maps_write_errors(self) -> None:
        orchestrator = _FakeOrchestrator()
        request = self._request(orchestrator)

        payload = await tasks_router.update_task(request, "a.md-L0", tasks_router.UpdateTaskRequest(content="new"))
        self.assertEqual(payload["task"]["content"], "new")
        self.assertEqual(orchestrator.write_api.calls[-1], ("update", "a.md-L0", {"content": "new"}))

        for task_id, code in (("missing", 404), ("ics-1", 400)):
            with self.assertRaises(HTTPException) as ctx:
                await tasks_router.update_task(request, task_id, tasks_router.UpdateTaskRequest(status="x"))
            self.assertEqual(ctx.exception.status_code, code)

        with self.assertRaises(HTTPException) as ctx:
            await tasks_router.update_task(request, "a.md-L0", tasks_router.UpdateTaskRequest())
        self.assertEqual(ctx.exception.detail, "No updates provided")

    async def test_delete_and_batch_status(self) -> None:
        orchestrator = _FakeOrchestrator()
        request = self._request(orchestrator)

        payload = await tasks_router.delete_task(request, "a.md-L0", deleteChildren=True)
        self.assertEqual(payload, {"success": True, "task": None})
        self.assertEqual(orchestrator.write_api.calls[-1], ("delete", "a.md-L0", True))

        with self.assertRaises(HTTPException) as ctx:
            await tasks_router.batch_update_status(request, tasks_router.BatchStatusRequest(taskIds=["a"]))
        self.assertEqual(ctx.exception.status_code, 400)
        result = await tasks_router.batch_update_status(
            request, tasks_router.BatchStatusRequest(taskIds=["a"], completed=True)
        )
        self.assertEqual(result["updated"], ["a"])

    async def test_ingest_changes(self) -> None:
        orchestrator = _FakeOrchestrator()
        payload = {"changes": [{"type": "modify", "path": "a.md"}]}
        result = await tasks_router.ingest_changes(self._request(orchestrator), payload)
        self.assertEqual(result, {"accepted": 1})
        self.assertEqual(orchestrator.document_source.payloads, [payload])


if __name__ == "__main__":
    unittest.main()
