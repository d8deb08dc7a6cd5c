import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from inbox_organizer.blacklist import BlacklistFilter  # noqa: E402
from inbox_organizer.file_store import FolderRef  # noqa: E402


def _folder(path: str) -> FolderRef:
    return FolderRef(id=path, name=path.rsplit("/", 1)[-1])


class TestBlacklistFilter(unittest.TestCase):
    def test_no_rules_excludes_nothing(self) -> None:
        blacklist = BlacklistFilter()
        self.assertFalse(blacklist.is_excluded(_folder("/Archive"), "/Archive"))

    def test_bare_name_matches_anywhere(self) -> None:
        blacklist = BlacklistFilter(["Archive"])
        self.assertTrue(blacklist.is_excluded(_folder("/Archive"), "/Archive"))
        self.assertTrue(blacklist.is_excluded(_folder("/Work/Archive"), "/Work/Archive"))
        self.assertFalse(blacklist.is_excluded(_folder("/Archived"), "/Archived"))
        self.assertFalse(blacklist.is_excluded(_folder("/archive"), "/archive"))

    def test_path_rule_matches_subtree_by_segment(self) -> None:
        blacklist = BlacklistFilter(["/School/Highschool/"])
        self.assertEqual(blacklist.rules, ["/School/Highschool"])
        self.assertTrue(
            blacklist.is_excluded(_folder("/School/Highschool"), "/School/Highschool")
        )
        self.assertTrue(
            blacklist.is_excluded(
                _folder("/School/Highschool/Math"), "/School/Highschool/Math"
            )
        )
        self.assertFalse(
            blacklist.is_excluded(_folder("/School/Highschool2"), "/School/Highschool2")
        )
        self.assertFalse(blacklist.is_excluded(_folder("/School"), "/School"))

    def test_leading_slash_rule_is_anchored_at_root(self) -> None:
        blacklist = BlacklistFilter(["/Archive"])
        self.assertTrue(blacklist.is_excluded(_folder("/Archive"), "/Archive"))
        self.assertTrue(blacklist.is_excluded(_folder("/Archive/2019"), "/Archive/2019"))
        self.assertFalse(
            blacklist.is_excluded(_folder("/Projects/Archive"), "/Projects/Archive")
        )

    def test_first_matching_rule_wins(self) -> None:
        blacklist = BlacklistFilter(["Private", "Work/Private"])
        self.assertEqual(
            blacklist.matching_rule(_folder("/Work/Private"), "/Work/Private"), "Private"
        )


if __name__ == "__main__":
    unittest.main()
