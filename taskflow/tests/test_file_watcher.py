import tempfile
import unittest
from pathlib import Path

from watchfiles import Change

from taskflow.db.file_watcher import FileWatcher, TaskFileFilter


class TaskFileFilterTests(unittest.TestCase):
    def test_only_task_files_outside_ignored_dirs(self) -> None:
        accept = TaskFileFilter()
        self.assertTrue(accept(Change.modified, "/vault/notes/a.md"))
        self.assertTrue(accept(Change.added, "/vault/board.CANVAS"))
        self.assertFalse(accept(Change.modified, "/vault/notes/a.txt"))
        self.assertFalse(accept(Change.modified, "/vault/.git/a.md"))


class FileWatcherTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_root_is_not_watched(self) -> None:
        watcher = FileWatcher()
        with self.assertLogs("taskflow.watcher", level="WARNING"):
            await watcher.start(object(), Path(tempfile.gettempdir()) / "taskflow-missing-root")
        self.assertFalse(watcher.is_running)
        await watcher.stop()

    async def test_start_and_stop(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            watcher = FileWatcher()
            await watcher.start(object(), Path(tmp))
            self.assertTrue(watcher.is_running)
            await watcher.stop()
            self.assertFalse(watcher.is_running)


if __name__ == "__main__":
    unittest.main()
