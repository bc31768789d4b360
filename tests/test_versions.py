import unittest

from skillpm.versions import compare_versions, is_version_tag, sort_versions, version_satisfies


class TestVersions(unittest.TestCase):
    def test_compare_with_prefix_and_prerelease(self) -> None:
        self.assertEqual(compare_versions("v1.2.0", "1.2.0"), 0)
        self.assertLess(compare_versions("1.2.0-beta.1", "1.2.0"), 0)
        self.assertLess(compare_versions("1.2.0-beta.2", "1.2.0-beta.10"), 0)
        self.assertGreater(compare_versions("2.0", "1.9.9"), 0)
        self.assertEqual(compare_versions("1.0.0+build.1", "1.0.0"), 0)

    def test_caret_and_tilde_ranges(self) -> None:
        self.assertTrue(version_satisfies("2.3.1", "^2.0.0"))
        self.assertFalse(version_satisfies("3.0.0", "^2.0.0"))
        self.assertTrue(version_satisfies("0.2.5", "^0.2.0"))
        self.assertFalse(version_satisfies("0.3.0", "^0.2.0"))
        self.assertTrue(version_satisfies("1.2.9", "~1.2.3"))
        self.assertFalse(version_satisfies("1.3.0", "~1.2.3"))
        self.assertFalse(version_satisfies("1.2.2", "~1.2.3"))

    def test_bad_range_is_unsatisfiable(self) -> None:
        self.assertFalse(version_satisfies("1.0.0", "^not-a-version"))

    def test_tag_detection_and_sorting(self) -> None:
        self.assertTrue(is_version_tag("v1.0.0"))
        self.assertFalse(is_version_tag("release-candidate"))
        self.assertEqual(sort_versions(["v1.10.0", "v1.2.0", "v1.9.0"]), ["v1.2.0", "v1.9.0", "v1.10.0"])


if __name__ == "__main__":
    unittest.main()
