import os
import tempfile
import unittest
from pathlib import Path

from skillpm.paths import MAX_NAME_LENGTH, PLACEHOLDER_NAME, is_path_safe, sanitize_name


class TestSanitizeName(unittest.TestCase):
    def test_strips_separators_and_nul(self) -> None:
        self.assertEqual(sanitize_name("../../etc/passwd"), "etcpasswd")
        self.assertEqual(sanitize_name("a\\b:c\0d"), "abcd")

    def test_strips_edge_dots_and_whitespace(self) -> None:
        self.assertEqual(sanitize_name("  .hidden-skill. "), "hidden-skill")
        self.assertEqual(sanitize_name("my.skill"), "my.skill")

    def test_empty_results_use_placeholder(self) -> None:
        for name in ("", "...", " . . ", "///", "\0"):
            with self.subTest(name=name):
                self.assertEqual(sanitize_name(name), PLACEHOLDER_NAME)

    def test_length_is_capped(self) -> None:
        self.assertEqual(len(sanitize_name("x" * 1000)), MAX_NAME_LENGTH)
        capped = sanitize_name("a" * (MAX_NAME_LENGTH - 1) + ". tail")
        self.assertFalse(capped.endswith((".", " ")))

    def test_idempotent(self) -> None:
        samples = ["", "...", "pdf", "../x", " a/b ", "x" * 300, "a" * 254 + ".b", "name:with:colons", ".. ..z.."]
        for name in samples:
            with self.subTest(name=name):
                once = sanitize_name(name)
                self.assertTrue(once)
                self.assertEqual(sanitize_name(once), once)
                self.assertNotIn("/", once)
                self.assertNotIn("\\", once)


class TestIsPathSafe(unittest.TestCase):
    def test_base_itself_is_safe(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertTrue(is_path_safe(td, td))
            self.assertTrue(is_path_safe(Path(td), Path(td) / "."))

    def test_children_are_safe(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertTrue(is_path_safe(td, os.path.join(td, "a", "b")))

    def test_escapes_are_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertFalse(is_path_safe(td, td + "/../x"))
            self.assertFalse(is_path_safe(td, os.path.join(td, "a", "..", "..", "x")))

    def test_sibling_with_common_prefix_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertFalse(is_path_safe(os.path.join(td, "skills"), os.path.join(td, "skills-evil", "x")))

    def test_relative_paths_are_resolved(self) -> None:
        self.assertTrue(is_path_safe("base", "base/child"))
        self.assertFalse(is_path_safe("base", "base/../other"))


if __name__ == "__main__":
    unittest.main()
