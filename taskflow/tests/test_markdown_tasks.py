import unittest
from datetime import date

from taskflow.date_utils import local_midnight_ms
from taskflow.models import TaskMetadata
from taskflow.parsers.markdown_tasks import (
    format_task_line,
    line_prefix,
    parse_markdown_tasks,
    parse_task_text,
    task_id_for,
)

DOCUMENT = """---
title: Notes
---
# Work
- [ ] Buy milk 📅 2024-01-10 #shop @store ⏫
\t- [x] Sub task [due:: 2024-01-11]
- [ ] Call 🔁 every week #project/Home
```code
- [ ] not a task
```
## Sub
> - [ ] quoted
"""


def _ms(y: int, m: int, d: int) -> int:
    return local_midnight_ms(date(y, m, d))


class ParseMarkdownTasksTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tasks = parse_markdown_tasks("notes/a.md", DOCUMENT)
        self.by_line = {t.line: t for t in self.tasks}

    def test_lines_are_absolute_and_fences_skipped(self) -> None:
        self.assertEqual(sorted(self.by_line), [4, 5, 6, 11])
        self.assertEqual(self.by_line[4].id, task_id_for("notes/a.md", 4))
        self.assertEqual(self.by_line[4].id, "notes/a.md-L4")

    def test_emoji_metadata(self) -> None:
        task = self.by_line[4]
        self.assertEqual(task.content, "Buy milk")
        self.assertEqual(task.metadata.dueDate, _ms(2024, 1, 10))
        self.assertEqual(task.metadata.priority, 4)
        self.assertEqual(task.metadata.tags, ["#shop"])
        self.assertEqual(task.metadata.context, "store")
        self.assertEqual(task.metadata.heading, ["Work"])
        self.assertFalse(task.completed)

    def test_dataview_metadata_and_hierarchy(self) -> None:
        child = self.by_line[5]
        self.assertTrue(child.completed)
        self.assertEqual(child.status, "x")
        self.assertEqual(child.metadata.dueDate, _ms(2024, 1, 11))
        self.assertEqual(child.metadata.parent, "notes/a.md-L4")
        self.assertEqual(self.by_line[4].metadata.children, ["notes/a.md-L5"])

    def test_recurrence_and_project_tag(self) -> None:
        task = self.by_line[6]
        self.assertEqual(task.content, "Call")
        self.assertEqual(task.metadata.recurrence, "every week")
        self.assertEqual(task.metadata.project, "Home")
        self.assertEqual(task.metadata.tags, [])
        self.assertIsNone(task.metadata.parent)

    def test_blockquote_task_under_nested_heading(self) -> None:
        task = self.by_line[11]
        self.assertEqual(task.content, "quoted")
        self.assertEqual(task.metadata.heading, ["Work", "Sub"])
        self.assertEqual(task.originalMarkdown, "> - [ ] quoted")

    def test_time_components_are_attached(self) -> None:
        [task] = parse_markdown_tasks("a.md", "- [ ] Meet at 14:00")
        self.assertEqual(task.metadata.timeComponents.scheduledTime.hour, 14)
        [plain] = parse_markdown_tasks("a.md", "- [ ] Plain")
        self.assertIsNone(plain.metadata.timeComponents)


class ParseTaskTextTests(unittest.TestCase):
    def test_dataview_fields(self) -> None:
        metadata = TaskMetadata()
        content = parse_task_text("Write [priority:: high] [project:: Alpha] [dependsOn:: a, b] report", metadata)
        self.assertEqual(content, "Write report")
        self.assertEqual(metadata.priority, 4)
        self.assertEqual(metadata.project, "Alpha")
        self.assertEqual(metadata.dependsOn, ["a", "b"])

    def test_dataview_priority_accepts_names_and_emoji(self) -> None:
        for value, expected in (("Urgent", 5), ("🔽", 2), ("3", 3), ("someday", None)):
            metadata = TaskMetadata()
            parse_task_text(f"Task [priority:: {value}]", metadata)
            self.assertEqual(metadata.priority, expected, value)

    def test_duplicate_tags_collapse(self) -> None:
        metadata = TaskMetadata()
        parse_task_text("x #a #b #a", metadata)
        self.assertEqual(metadata.tags, ["#a", "#b"])


class FormatTaskLineTests(unittest.TestCase):
    def test_emoji_and_dataview_formats(self) -> None:
        metadata = TaskMetadata(tags=["#x"], priority=4, dueDate=_ms(2024, 1, 10))
        self.assertEqual(format_task_line("\t", " ", "Buy", metadata), "\t- [ ] Buy #x ⏫ 📅 2024-01-10")
        self.assertEqual(
            format_task_line("", "x", "Buy", metadata, "dataview"),
            "- [x] Buy #x [priority:: high] [due:: 2024-01-10]",
        )

    def test_line_prefix(self) -> None:
        self.assertEqual(line_prefix("> \t- [ ] x"), "> \t")
        self.assertEqual(line_prefix("    - [ ] x"), "    ")
        self.assertEqual(line_prefix("plain"), "")


if __name__ == "__main__":
    unittest.main()
