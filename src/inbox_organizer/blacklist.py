from typing import Iterable, List, Optional

from .file_store import FolderRef


class BlacklistFilter:
    """Excludes folders (and their subtrees) from indexing.

    A rule without any ``/`` is a folder name and matches that name anywhere
    in the tree. Any other rule, such as ``School/Highschool`` or
    ``/Archive``, is a root-relative path matching only that folder and
    everything below it. Matching is case-sensitive and by whole segment.
    """

    def __init__(self, rules: Optional[Iterable[str]] = None) -> None:
        self.rules: List[str] = [rule.rstrip("/") for rule in rules or [] if rule.strip("/")]

    def matching_rule(self, folder: FolderRef, path: Optional[str]) -> Optional[str]:
        if not self.rules:
            return None
        clean_path = path[1:] if path and path.startswith("/") else (path or "")
        for rule in self.rules:
            if "/" not in rule:
                if folder.name == rule or clean_path == rule or clean_path.startswith(rule + "/"):
                    return rule
                continue
            rule_path = rule.lstrip("/")
            if clean_path == rule_path or clean_path.startswith(rule_path + "/"):
                return rule
        return None

    def is_excluded(self, folder: FolderRef, path: Optional[str]) -> bool:
        return self.matching_rule(folder, path) is not None
