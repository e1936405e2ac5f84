import json
import unittest

from taskflow.parsers.canvas import parse_canvas_tasks, text_nodes

BOARD = json.dumps({
    "nodes": [
        {"id": "n1", "type": "text", "text": "- [ ] a", "x": 0, "y": 0, "width": 10, "height": 5, "color": "1"},
        {"id": "g", "type": "group", "label": "Group"},
        {"id": "n2", "type": "text", "text": "note\n- [ ] b 📅 2024-01-10", "x": 20, "y": 0, "width": 10, "height": 5},
    ],
    "edges": [],
})


class CanvasTests(unittest.TestCase):
    def test_text_nodes_only(self) -> None:
        self.assertEqual([n["id"] for n in text_nodes(BOARD)], ["n1", "n2"])
        self.assertEqual(text_nodes(""), [])
        self.assertEqual(text_nodes("[]"), [])

    def test_tasks_carry_node_details(self) -> None:
        a, b = parse_canvas_tasks("board.canvas", BOARD)

        self.assertEqual((a.content, a.line, a.id), ("a", 0, "board.canvas-L0"))
        self.assertEqual((b.content, b.line, b.id), ("b", 3, "board.canvas-L3"))
        self.assertIsNotNone(b.metadata.dueDate)

        self.assertEqual(a.metadata.sourceType, "canvas")
        self.assertEqual(a.metadata.canvasNodeId, "n1")
        self.assertEqual(a.metadata.canvasPosition, {"x": 0, "y": 0, "width": 10, "height": 5})
        self.assertEqual(a.metadata.canvasColor, "1")

        self.assertEqual(b.metadata.canvasNodeId, "n2")
        self.assertEqual(b.metadata.canvasPosition["x"], 20)
        self.assertFalse(hasattr(b.metadata, "canvasColor"))

    def test_invalid_json_is_logged(self) -> None:
        with self.assertLogs("taskflow.parsers.canvas", level="WARNING"):
            self.assertEqual(parse_canvas_tasks("board.canvas", "{not json"), [])


if __name__ == "__main__":
    unittest.main()
