import asyncio
import shutil
import tempfile
import unittest
from datetime import date
from pathlib import Path

from taskflow.date_utils import local_midnight_ms
from taskflow.events import EventBus, Events
from taskflow.settings import FileSourceSettings, validate_file_source_settings
from taskflow.sources.file_source import FileSource, file_task_id, glob_to_regex
from taskflow.workspace import LocalWorkspace

SHIP = "---\ntitle: Ship it\nstatus: in-progress\npriority: high\ndue: 2024-01-10\ntags: [work]\n---\n# Release\nBody\n"


def _settings(**strategies) -> FileSourceSettings:
    settings = FileSourceSettings(enabled=True)
    for name, enabled in strategies.items():
        getattr(settings.recognitionStrategies, name).enabled = enabled
    return settings


class GlobTests(unittest.TestCase):
    def test_glob_segments(self) -> None:
        self.assertTrue(glob_to_regex("Projects/**/*.md").match("Projects/x/y/a.md"))
        self.assertIsNone(glob_to_regex("Tasks/*.md").match("Tasks/a/b.md"))
        self.assertTrue(glob_to_regex("Tasks/*.md").match("Tasks/b.md"))
        self.assertTrue(glob_to_regex("Tasks/").match("Tasks/deep/b.md"))
        self.assertIsNone(glob_to_regex("a?.md").match("abc.md"))


class RecognitionTests(unittest.TestCase):
    def test_strategy_order(self) -> None:
        source = FileSource(EventBus(), None, _settings(paths=True, templates=True))
        self.assertEqual(source.match_strategy("Projects/a.md", {"status": "done"}, ["#task"]), ("metadata", "frontmatter"))
        self.assertEqual(source.match_strategy("Projects/a.md", {}, ["#task"]), ("tag", "file-tags"))
        self.assertEqual(source.match_strategy("Projects/a.md", {}, []), ("path", "Projects/, Tasks/"))
        self.assertEqual(
            source.match_strategy("notes/a.md", {"template": "Templates/Task Template.md"}, []),
            ("template", "Templates/Task Template.md"),
        )
        self.assertIsNone(source.match_strategy("notes/a.md", {}, ["#other"]))

    def test_tag_match_modes(self) -> None:
        settings = _settings()
        settings.recognitionStrategies.tags.matchMode = "prefix"
        source = FileSource(EventBus(), None, settings)
        self.assertTrue(source._matches_tags(["#task/home"]))
        settings.recognitionStrategies.tags.matchMode = "exact"
        self.assertFalse(source._matches_tags(["#task/home"]))

    def test_require_all_fields(self) -> None:
        settings = _settings()
        settings.recognitionStrategies.metadata.requireAllFields = True
        settings.recognitionStrategies.metadata.taskFields = ["status", "due"]
        source = FileSource(EventBus(), None, settings)
        self.assertFalse(source._matches_metadata({"status": "todo"}))
        self.assertTrue(source._matches_metadata({"status": "todo", "due": "2024-01-01"}))

    def test_content_sources(self) -> None:
        settings = _settings()
        source = FileSource(EventBus(), None, settings)
        headings = [(2, "Sub"), (1, "Main")]
        self.assertEqual(source.task_content("dir/Note.md", {"title": "Titled"}, headings), "Titled")
        self.assertEqual(source.task_content("dir/Note.md", {}, headings), "Note")
        settings.fileTaskProperties.stripExtension = False
        self.assertEqual(source.task_content("dir/Note.md", {}, headings), "Note.md")
        settings.fileTaskProperties.contentSource = "h1"
        self.assertEqual(source.task_content("dir/Note.md", {}, headings), "Main")
        settings.fileTaskProperties.contentSource = "custom"
        settings.fileTaskProperties.customContentField = "label"
        self.assertEqual(source.task_content("dir/Note.md", {"label": "Custom"}, headings), "Custom")

    def test_settings_validation(self) -> None:
        self.assertEqual(validate_file_source_settings(_settings()), [])
        settings = _settings(metadata=False, tags=False)
        settings.fileTaskProperties.contentSource = "custom"
        self.assertEqual(
            validate_file_source_settings(settings),
            [
                "At least one recognition strategy must be enabled",
                "Custom content source requires customContentField to be specified",
            ],
        )

    def test_status_symbols(self) -> None:
        source = FileSource(EventBus(), None, _settings())
        self.assertEqual(source.to_symbol("done"), "x")
        self.assertEqual(source.to_symbol("In Progress"), "/")
        self.assertEqual(source.to_symbol("x"), "x")
        self.assertEqual(source.to_symbol(None), " ")
        self.assertEqual(source.to_symbol("mystery"), " ")
        self.assertEqual(source.map_symbol_to_metadata("-"), "cancelled")


class FileSourceWorkspaceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = Path(tempfile.mkdtemp())
        self.workspace = LocalWorkspace(self.tmp)
        await self.workspace.write("Projects/Ship.md", SHIP)
        await self.workspace.write("notes/plain.md", "Just text\n")
        self.bus = EventBus()
        self.updated: list[dict] = []
        self.removed: list[dict] = []
        self.bus.subscribe(Events.FILE_TASK_UPDATED, self.updated.append)
        self.bus.subscribe(Events.FILE_TASK_REMOVED, self.removed.append)
        self.source = FileSource(self.bus, self.workspace, _settings(), scan_delay=0, debounce_delay=0.02)

    async def asyncTearDown(self) -> None:
        self.source.destroy()
        shutil.rmtree(self.tmp, ignore_errors=True)

    async def test_evaluate_builds_file_task(self) -> None:
        task = await self.source.evaluate_file("Projects/Ship.md")
        self.assertEqual(task.id, file_task_id("Projects/Ship.md"))
        self.assertEqual(task.content, "Ship it")
        self.assertEqual(task.status, "/")
        self.assertFalse(task.completed)
        self.assertEqual(task.metadata.priority, 4)
        self.assertEqual(task.metadata.dueDate, local_midnight_ms(date(2024, 1, 10)))
        self.assertEqual(task.metadata.tags, ["#work"])
        self.assertEqual(task.metadata.recognitionStrategy, "metadata")
        self.assertEqual(task.provenance, "file")
        self.assertIsNone(await self.source.evaluate_file("notes/plain.md"))
        self.assertIsNone(await self.source.evaluate_file("missing.md"))

    async def test_updates_are_emitted_only_on_change(self) -> None:
        self.source.initialize()
        await self.source.drain()
        self.assertEqual([p["action"] for p in self.updated], ["created"])

        await self.source.process_file_update("Projects/Ship.md", "modify")
        self.assertEqual(len(self.updated), 1)

        await self.workspace.write("Projects/Ship.md", SHIP.replace("in-progress", "done"))
        await self.source.process_file_update("Projects/Ship.md", "modify")
        self.assertEqual([p["action"] for p in self.updated], ["created", "updated"])
        self.assertTrue(self.updated[-1]["task"].completed)

        await self.workspace.write("Projects/Ship.md", "No longer a task\n")
        await self.source.process_file_update("Projects/Ship.md", "modify")
        self.assertEqual(self.removed[-1]["filePath"], "Projects/Ship.md")
        self.assertEqual(self.source.get_stats()["trackedFileCount"], 0)

    async def test_file_updated_events_drive_the_source(self) -> None:
        self.source.initialize()
        await self.source.drain()
        self.bus.emit(Events.FILE_UPDATED, {"path": "Projects/Ship.md", "reason": "delete"})
        await asyncio.sleep(0.05)
        await self.source.drain()
        self.assertEqual([p["filePath"] for p in self.removed], ["Projects/Ship.md"])
        self.assertEqual(self.source.get_all_file_tasks(), [])

    async def test_destroy_announces_removal_of_everything(self) -> None:
        self.source.initialize()
        await self.source.drain()
        self.source.destroy()
        self.assertEqual(self.removed[-1]["filePath"], None)
        self.assertTrue(self.removed[-1]["destroyed"])
        self.assertFalse(self.source.initialized)

    async def test_disabling_removes_every_tracked_task(self) -> None:
        self.source.initialize()
        await self.source.drain()
        self.assertEqual(len(self.source.get_all_file_tasks()), 1)

        self.source.update_settings(FileSourceSettings(enabled=False))
        self.assertEqual([p["filePath"] for p in self.removed], ["Projects/Ship.md", None])
        self.assertEqual(self.source.get_all_file_tasks(), [])
        self.assertFalse(self.source.initialized)

    async def test_narrowing_recognition_drops_files_that_no_longer_match(self) -> None:
        await self.workspace.write("Tasks/Chore.md", "Sweep\n")
        self.source = FileSource(self.bus, self.workspace, _settings(paths=True), scan_delay=0, debounce_delay=0.02)
        self.source.initialize()
        await self.source.drain()
        self.assertEqual(
            sorted(t.filePath for t in self.source.get_all_file_tasks()),
            ["Projects/Ship.md", "Tasks/Chore.md"],
        )

        narrowed = _settings(paths=True)
        narrowed.recognitionStrategies.paths.taskPaths = ["Projects/"]
        self.source.update_settings(narrowed)
        await self.source.drain()

        self.assertEqual([p["filePath"] for p in self.removed], ["Tasks/Chore.md"])
        self.assertEqual([t.filePath for t in self.source.get_all_file_tasks()], ["Projects/Ship.md"])
        self.assertEqual(self.source.get_stats()["trackedFileCount"], 1)

    async def test_refresh_keeps_unchanged_tasks_quiet(self) -> None:
        self.source.initialize()
        await self.source.drain()
        self.assertEqual(await self.source.refresh(), 1)
        self.assertEqual(len(self.updated), 1)
        self.assertEqual(self.removed, [])

    async def test_disabled_source_does_not_start(self) -> None:
        source = FileSource(self.bus, self.workspace, FileSourceSettings(), scan_delay=0)
        source.initialize()
        self.assertFalse(source.initialized)
        self.assertEqual(await source.refresh(), 0)


if __name__ == "__main__":
    unittest.main()
