import unittest

from taskflow.parsers.frontmatter import (
    FrontmatterParseError,
    extract_headings,
    extract_tags,
    frontmatter_tags,
    parse_frontmatter,
    split_frontmatter,
    update_frontmatter_fields,
)

NOTE = "---\ntitle: A\nstatus: draft\ntags: [alpha]\n---\n# Heading\nText #beta\n```\n#gamma\n```\n"


class FrontmatterTests(unittest.TestCase):
    def test_split_and_parse(self) -> None:
        fm_text, body = split_frontmatter(NOTE)
        self.assertIn("title: A", fm_text)
        self.assertTrue(body.startswith("# Heading"))
        self.assertEqual(split_frontmatter("no frontmatter"), (None, "no frontmatter"))
        self.assertEqual(parse_frontmatter(NOTE)["status"], "draft")

    def test_malformed_frontmatter_is_lenient(self) -> None:
        with self.assertLogs("taskflow.parsers.frontmatter", level="WARNING"):
            self.assertEqual(parse_frontmatter("---\n- just\n- a list\n---\nbody"), {})

    def test_update_sets_and_removes_fields(self) -> None:
        updated = update_frontmatter_fields("---\ntitle: A\nstatus: x\n---\nbody\n", {"title": "B", "status": None})
        self.assertEqual(updated, "---\ntitle: B\n---\nbody\n")
        self.assertEqual(update_frontmatter_fields("body\n", {"due": "2024-01-10"}), "---\ndue: '2024-01-10'\n---\nbody\n")
        self.assertEqual(update_frontmatter_fields("---\ntitle: A\n---\nbody\n", {"title": None}), "body\n")

    def test_update_rejects_invalid_yaml(self) -> None:
        with self.assertRaises(FrontmatterParseError):
            update_frontmatter_fields("---\ntitle: [unclosed\n---\nbody", {"title": "B"})

    def test_tags(self) -> None:
        self.assertEqual(frontmatter_tags({"tags": "a, #b c"}), ["#a", "#b", "#c"])
        self.assertEqual(frontmatter_tags({"tag": ["x", None]}), ["#x"])
        self.assertEqual(frontmatter_tags({}), [])
        self.assertEqual(extract_tags(NOTE), ["#alpha", "#beta"])

    def test_headings(self) -> None:
        self.assertEqual(extract_headings(NOTE), [(1, "Heading")])


if __name__ == "__main__":
    unittest.main()
