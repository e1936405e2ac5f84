import json
import unittest
from datetime import date

from taskflow.date_utils import local_midnight_ms
from taskflow.db.indexer import TaskIndexer
from taskflow.models import Task, TaskMetadata, TgProject


def _ms(y: int, m: int, d: int) -> int:
    return local_midnight_ms(date(y, m, d))


def _task(task_id: str, path: str = "a.md", line: int = 0, completed: bool = False, **meta) -> Task:
    return Task(
        id=task_id,
        content=task_id,
        filePath=path,
        line=line,
        completed=completed,
        status="x" if completed else " ",
        metadata=TaskMetadata(**meta),
    )


class TaskIndexerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.indexer = TaskIndexer()
        self.indexer.update_index_with_tasks("a.md", [
            _task("a1", line=0, tags=["#work", "#urgent"], project="Alpha", priority=3, dueDate=_ms(2024, 1, 10)),
            _task("a2", line=1, tags=["#work"], context="office", priority=5, dueDate=_ms(2024, 1, 12)),
            _task("a3", line=2, completed=True, tags=["#home"]),
        ])
        self.indexer.update_index_with_tasks("b.md", [
            _task("b1", path="b.md", tgProject=TgProject(name="Beta"), startDate=_ms(2024, 2, 1), priority=1),
        ])

    def test_update_replaces_previous_tasks_of_the_file(self) -> None:
        self.indexer.update_index_with_tasks("a.md", [_task("a9", tags=["#new"])])
        self.assertIsNone(self.indexer.get_task_by_id("a1"))
        self.assertNotIn("#work", self.indexer.maps["tags"])
        self.assertNotIn("Alpha", self.indexer.maps["projects"])
        self.assertEqual([t.id for t in self.indexer.get_tasks_for_file("a.md")], ["a9"])

    def test_remove_file_leaves_no_empty_buckets(self) -> None:
        removed = self.indexer.remove_file("a.md")
        self.assertEqual(sorted(removed), ["a1", "a2", "a3"])
        for buckets in self.indexer.maps.values():
            for bucket in buckets.values():
                self.assertTrue(bucket)
        self.assertEqual(self.indexer.get_file_paths(), ["b.md"])

    def test_remove_and_update_single_task(self) -> None:
        self.assertIsNotNone(self.indexer.remove_task("a2"))
        self.assertNotIn("office", self.indexer.maps["contexts"])
        self.assertIsNone(self.indexer.remove_task("missing"))

        self.indexer.update_task(_task("a1", tags=["#done"], completed=True))
        self.assertEqual([t.id for t in self.indexer.get_tasks_by_tags(["#done"])], ["a1"])
        self.assertEqual(self.indexer.get_tasks_by_tags(["#urgent"]), [])

    def test_tags_lookup_is_an_intersection(self) -> None:
        self.assertEqual({t.id for t in self.indexer.get_tasks_by_tags(["#work"])}, {"a1", "a2"})
        self.assertEqual([t.id for t in self.indexer.get_tasks_by_tags(["#work", "#urgent"])], ["a1"])
        self.assertEqual(self.indexer.get_tasks_by_tags(["#work", "#home"]), [])
        self.assertEqual(self.indexer.get_tasks_by_tags([]), [])

    def test_project_falls_back_to_tg_project(self) -> None:
        self.assertEqual([t.id for t in self.indexer.get_tasks_by_project("Alpha")], ["a1"])
        self.assertEqual([t.id for t in self.indexer.get_tasks_by_project("Beta")], ["b1"])
        self.assertEqual(self.indexer.get_projects(), ["Alpha", "Beta"])
        self.assertEqual(self.indexer.get_contexts(), ["office"])

    def test_completion_and_date_range(self) -> None:
        self.assertEqual([t.id for t in self.indexer.get_tasks_by_completion(True)], ["a3"])
        in_range = self.indexer.get_tasks_by_date_range("dueDate", "2024-01-11", "2024-01-31")
        self.assertEqual([t.id for t in in_range], ["a2"])
        open_start = self.indexer.get_tasks_by_date_range("dueDate", None, "2024-01-10")
        self.assertEqual([t.id for t in open_start], ["a1"])
        with self.assertRaises(ValueError):
            self.indexer.get_tasks_by_date_range("createdDate")
        with self.assertRaises(ValueError):
            self.indexer.get_tasks_by_date_range("dueDate", "2024-13-45")
        self.assertEqual(
            [t.id for t in self.indexer.get_tasks_by_date_range("dueDate", "", "2024-01-10")], ["a1"]
        )

    def test_query_filters_and_default_sort(self) -> None:
        tasks = self.indexer.query_tasks([{"type": "tag", "value": "#work"}])
        # Priority descending
        self.assertEqual([t.id for t in tasks], ["a2", "a1"])

        either = self.indexer.query_tasks([
            {"type": "project", "value": "Alpha"},
            {"type": "project", "value": "Beta", "conjunction": "OR"},
        ])
        self.assertEqual({t.id for t in either}, {"a1", "b1"})

        both = self.indexer.query_tasks([
            {"type": "tag", "value": "#work"},
            {"type": "priority", "operator": ">", "value": 3},
        ])
        self.assertEqual([t.id for t in both], ["a2"])

        no_context = self.indexer.query_tasks([{"type": "context", "operator": "empty"}])
        self.assertNotIn("a2", {t.id for t in no_context})

    def test_explicit_sort_puts_missing_values_last(self) -> None:
        tasks = self.indexer.query_tasks(None, [{"field": "dueDate", "direction": "asc"}])
        self.assertEqual([t.id for t in tasks][:2], ["a1", "a2"])
        tasks = self.indexer.query_tasks(None, [{"field": "content", "direction": "desc"}])
        self.assertEqual([t.id for t in tasks], ["b1", "a3", "a2", "a1"])

    def test_snapshot_round_trip_is_json_serialisable(self) -> None:
        snapshot = json.loads(json.dumps(self.indexer.get_index_snapshot()))
        restored = TaskIndexer()
        restored.restore_from_snapshot(snapshot)
        self.assertEqual(set(restored.tasks), {"a1", "a2", "a3", "b1"})
        self.assertEqual(restored.maps["tags"], self.indexer.maps["tags"])
        self.assertEqual(restored.maps["completed"], self.indexer.maps["completed"])
        self.assertEqual(restored.get_stats()["totalFiles"], 2)


if __name__ == "__main__":
    unittest.main()
