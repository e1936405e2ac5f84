import shutil
import tempfile
import unittest
from datetime import date
from pathlib import Path

from taskflow.api.write_api import WriteAPI, parse_date_or_offset
from taskflow.date_utils import local_midnight_ms
from taskflow.events import EventBus, Events
from taskflow.models import PROVENANCE_CALENDAR, PROVENANCE_FILE, Task, TaskMetadata
from taskflow.parsers.markdown_tasks import parse_markdown_tasks
from taskflow.settings import DataflowSettings
from taskflow.workspace import LocalWorkspace

TREE = "- [ ] parent\n\t- [ ] child\n- [ ] other\n"


class ParseDateOrOffsetTests(unittest.TestCase):
    def test_offsets_and_dates(self) -> None:
        self.assertEqual(parse_date_or_offset("+3d", date(2024, 1, 30)), local_midnight_ms(date(2024, 2, 2)))
        self.assertEqual(parse_date_or_offset("+1w", date(2024, 1, 30)), local_midnight_ms(date(2024, 2, 6)))
        self.assertEqual(parse_date_or_offset("+1m", date(2024, 1, 31)), local_midnight_ms(date(2024, 2, 29)))
        self.assertEqual(parse_date_or_offset("+1y", date(2024, 2, 29)), local_midnight_ms(date(2025, 2, 28)))
        self.assertEqual(parse_date_or_offset("2024-03-01"), local_midnight_ms(date(2024, 3, 1)))
        self.assertIsNone(parse_date_or_offset("someday"))


class WriteAPITests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = Path(tempfile.mkdtemp())
        self.workspace = LocalWorkspace(self.tmp)
        self.bus = EventBus()
        self.tasks: dict[str, Task] = {}
        self.settings = DataflowSettings()
        self.api = WriteAPI(self.bus, self.workspace, self.tasks.get, self.settings)
        self.events: list[tuple[str, dict]] = []
        for name in (
            Events.WRITE_OPERATION_START,
            Events.WRITE_OPERATION_COMPLETE,
            Events.TASK_UPDATED,
            Events.TASK_COMPLETED,
            Events.TASK_ADDED,
            Events.TASK_DELETED,
        ):
            self.bus.subscribe(name, lambda payload, name=name: self.events.append((name, payload)))

    async def asyncTearDown(self) -> None:
        shutil.rmtree(self.tmp, ignore_errors=True)

    async def _put(self, path: str, text: str) -> list[Task]:
        await self.workspace.write(path, text)
        tasks = parse_markdown_tasks(path, text)
        for task in tasks:
            self.tasks[task.id] = task
        return tasks

    async def _read(self, path: str) -> str:
        return await self.workspace.read(path)

    def _names(self) -> list[str]:
        return [name for name, _ in self.events]

    # ── Document tasks ──────────────────────────────────────────────

    async def test_completing_toggles_checkbox_and_stamps_date(self) -> None:
        [task] = await self._put("a.md", "- [ ] Buy milk 📅 2024-01-10 #shop\n")
        result = await self.api.update_task_status(task.id, completed=True)

        self.assertTrue(result.success)
        self.assertTrue(result.task.completed)
        stamp = date.today().isoformat()
        self.assertEqual(await self._read("a.md"), f"- [x] Buy milk 📅 2024-01-10 #shop ✅ {stamp}\n")
        self.assertEqual(
            self._names(),
            [Events.WRITE_OPERATION_START, Events.TASK_UPDATED, Events.WRITE_OPERATION_COMPLETE, Events.TASK_COMPLETED],
        )
        start = self.events[0][1]
        self.assertEqual((start["path"], start["taskId"]), ("a.md", task.id))

    async def test_edits_regenerate_suffix_from_own_markers(self) -> None:
        [task] = await self._put("a.md", "- [ ] Buy milk 📅 2024-01-10 #shop\n")
        # Values inherited from the file must not be written back
        self.tasks[task.id] = task.model_copy(update={"metadata": task.metadata.model_copy(update={"priority": 4})})

        result = await self.api.update_task(task.id, {"content": "Buy oat milk"})

        self.assertTrue(result.success)
        self.assertEqual(await self._read("a.md"), "- [ ] Buy oat milk #shop 📅 2024-01-10\n")
        self.assertEqual(result.task.content, "Buy oat milk")

    async def test_dataview_format(self) -> None:
        self.settings.preferMetadataFormat = "dataview"
        [task] = await self._put("a.md", "  - [ ] Plan [due:: 2024-01-10]\n")
        await self.api.update_task(task.id, {"metadata": {"priority": 4}})
        self.assertEqual(await self._read("a.md"), "  - [ ] Plan [priority:: high] [due:: 2024-01-10]\n")

    async def test_rejected_targets(self) -> None:
        self.tasks["ics-1"] = Task(id="ics-1", provenance=PROVENANCE_CALENDAR, readonly=True)
        self.tasks["c.canvas-L0"] = Task(id="c.canvas-L0", filePath="c.canvas")
        self.assertEqual((await self.api.update_task_status("missing", "x")).error, "Task not found")
        self.assertEqual((await self.api.update_task_status("ics-1", "x")).error, "Calendar tasks are read-only")
        self.assertEqual(
            (await self.api.update_task_status("c.canvas-L0", "x")).error,
            "Canvas tasks cannot be edited in place",
        )
        self.assertEqual(self.events, [])

    async def test_stale_line_is_reported(self) -> None:
        [task] = await self._put("a.md", "- [ ] one\n")
        await self.workspace.write("a.md", "just text now\n")
        result = await self.api.update_task_status(task.id, "x")
        self.assertFalse(result.success)
        self.assertIn("no longer a task", result.error)

    # ── Create and delete ───────────────────────────────────────────

    async def test_create_appends_to_file(self) -> None:
        await self._put("a.md", "- [ ] one\n")
        result = await self.api.create_task("two", "a.md", metadata={"priority": 5, "tags": ["home"]})

        self.assertTrue(result.success)
        self.assertEqual(result.task.id, "a.md-L1")
        self.assertEqual(await self._read("a.md"), "- [ ] one\n- [ ] two #home 🔺\n")
        self.assertEqual(self._names()[-1], Events.TASK_ADDED)

        created = await self.api.create_task("fresh", "new.md")
        self.assertEqual(created.task.line, 0)
        self.assertEqual(await self._read("new.md"), "- [ ] fresh\n")

    async def test_create_rejections(self) -> None:
        self.assertEqual((await self.api.create_task("x")).error, "No file path provided")
        self.assertEqual(
            (await self.api.create_task("x", "board.canvas")).error,
            "Tasks can only be created in markdown files",
        )

    async def test_subtask_goes_after_last_descendant(self) -> None:
        parent, _, _ = await self._put("a.md", TREE)
        result = await self.api.create_task("sub", parent_task_id=parent.id)

        self.assertTrue(result.success)
        self.assertEqual(result.task.line, 2)
        self.assertEqual(result.task.metadata.parent, parent.id)
        self.assertEqual(await self._read("a.md"), "- [ ] parent\n\t- [ ] child\n\t- [ ] sub\n- [ ] other\n")

    async def test_batch_create_subtasks(self) -> None:
        parent, _, _ = await self._put("a.md", TREE)
        result = await self.api.batch_create_subtasks(parent.id, [{"content": "s1"}, {"content": "s2", "completed": True}])
        self.assertEqual([t.content for t in result["tasks"]], ["s1", "s2"])
        self.assertEqual(
            await self._read("a.md"),
            "- [ ] parent\n\t- [ ] child\n\t- [ ] s1\n\t- [x] s2\n- [ ] other\n",
        )

    async def test_delete_single_and_subtree(self) -> None:
        parent, child, _ = await self._put("a.md", TREE)
        result = await self.api.delete_task(parent.id, delete_children=True)

        self.assertTrue(result.success)
        self.assertEqual(await self._read("a.md"), "- [ ] other\n")
        deleted = self.events[-1]
        self.assertEqual(deleted[0], Events.TASK_DELETED)
        self.assertEqual(deleted[1]["deletedTaskIds"], [parent.id, child.id])
        self.assertEqual(deleted[1]["mode"], "subtree")

        self.tasks.clear()
        parent, _, _ = await self._put("a.md", TREE)
        await self.api.delete_task(parent.id)
        self.assertEqual(await self._read("a.md"), "\t- [ ] child\n- [ ] other\n")

    # ── File tasks ──────────────────────────────────────────────────

    async def _file_task(self, text: str) -> Task:
        await self.workspace.write("Projects/Ship.md", text)
        task = Task(
            id="file-source:Projects/Ship.md",
            content="Ship it",
            filePath="Projects/Ship.md",
            provenance=PROVENANCE_FILE,
            metadata=TaskMetadata(),
        )
        self.tasks[task.id] = task
        return task

    async def test_file_task_edits_go_to_frontmatter(self) -> None:
        task = await self._file_task("---\ntitle: Ship it\nstatus: todo\n---\nBody\n")
        result = await self.api.update_task(
            task.id,
            {"status": "x", "content": "Ship now", "metadata": {"dueDate": "2024-02-01", "tags": ["#work"]}},
        )

        self.assertTrue(result.success)
        self.assertEqual(
            await self._read("Projects/Ship.md"),
            "---\ntitle: Ship now\nstatus: completed\ndueDate: '2024-02-01'\ntags:\n- work\n---\nBody\n",
        )
        self.assertTrue(result.task.completed)
        self.assertEqual(result.task.metadata.dueDate, local_midnight_ms(date(2024, 2, 1)))
        self.assertIn(Events.TASK_COMPLETED, self._names())

    async def test_file_task_h1_content(self) -> None:
        self.settings.fileSource.fileTaskProperties.contentSource = "h1"
        task = await self._file_task("---\nstatus: todo\n---\n# Ship it\nBody\n")
        await self.api.update_task(task.id, {"content": "Ship now"})
        self.assertEqual(await self._read("Projects/Ship.md"), "---\nstatus: todo\n---\n# Ship now\nBody\n")

    async def test_file_task_rename_and_delete_are_refused(self) -> None:
        self.settings.fileSource.fileTaskProperties.preferFrontmatterTitle = False
        task = await self._file_task("Body\n")
        result = await self.api.update_task(task.id, {"content": "Other"})
        self.assertFalse(result.success)
        self.assertIn("Renaming files is not supported", result.error)

        deleted = await self.api.delete_task(task.id)
        self.assertFalse(deleted.success)
        self.assertEqual(await self._read("Projects/Ship.md"), "Body\n")

    # ── Batches ─────────────────────────────────────────────────────

    async def test_batch_status_reports_failures(self) -> None:
        tasks = await self._put("a.md", "- [ ] one\n- [ ] two\n")
        result = await self.api.batch_update_task_status([tasks[0].id, "missing"], status="/")
        self.assertEqual(result["updated"], [tasks[0].id])
        self.assertEqual(result["failed"], [{"id": "missing", "error": "Task not found"}])
        self.assertEqual(await self._read("a.md"), "- [/] one\n- [ ] two\n")

    async def test_postpone(self) -> None:
        [task] = await self._put("a.md", "- [ ] one 📅 2024-01-10\n")
        result = await self.api.postpone_tasks([task.id], "2024-03-01")
        self.assertEqual(result["updated"], [task.id])
        self.assertEqual(await self._read("a.md"), "- [ ] one 📅 2024-03-01\n")

        bad = await self.api.postpone_tasks([task.id], "whenever")
        self.assertEqual(bad["failed"], [{"id": task.id, "error": "Invalid date format"}])

    async def test_batch_text_replaces_first_occurrence(self) -> None:
        [task] = await self._put("a.md", "- [ ] milk and milk\n")
        result = await self.api.batch_update_text([task.id], "milk", "oat")
        self.assertEqual([t.content for t in result["tasks"]], ["oat and milk"])
        self.assertEqual(await self._read("a.md"), "- [ ] oat and milk\n")


if __name__ == "__main__":
    unittest.main()
