import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .file_store import LocalFileStore
from .util import normalize_store_path, split_path

logger = logging.getLogger(__name__)

RESOLVED_CACHED = "cached"
RESOLVED_LIVE = "live"
RESOLVED_FALLBACK = "fallback"
RESOLVED_UNKNOWN = "unknown"


@dataclass(frozen=True)
class Resolution:
    kind: str
    path: str
    folder_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.kind != RESOLVED_UNKNOWN


class DestinationResolver:
    """Accepts cached or live destinations; unknown ones trigger one rescan per run."""

    def __init__(self, files: LocalFileStore, request_rescan: Callable[[], object]) -> None:
        self.files = files
        self.request_rescan = request_rescan
        self.rescan_requested = False

    def resolve(self, suggested_path: str, folder_cache: Iterable[str]) -> Resolution:
        path = normalize_store_path(suggested_path)
        if path in set(folder_cache):
            return Resolution(kind=RESOLVED_CACHED, path=path, folder_id=self.materialize(path))
        logger.warning(
            'Folder path "%s" not found in folder cache. Checking the live tree...', path
        )
        if self.find_live(path) is None:
            logger.warning(
                'Destination path "%s" does not exist. Triggering folder rescan; '
                "the file stays in the source folder for now.",
                path,
            )
            if not self.rescan_requested:
                self.rescan_requested = True
                self.request_rescan()
            return Resolution(kind=RESOLVED_UNKNOWN, path=path)
        logger.info("Folder exists but was missing from the cache. Using existing folder.")
        return Resolution(kind=RESOLVED_LIVE, path=path, folder_id=self.materialize(path))

    def resolve_fallback(self, fallback_path: str) -> Resolution:
        """The fallback bucket is always accepted and created on demand."""
        path = normalize_store_path(fallback_path)
        return Resolution(kind=RESOLVED_FALLBACK, path=path, folder_id=self.materialize(path))

    def find_live(self, path: str) -> Optional[str]:
        current = self.files.root_id()
        for name in split_path(path):
            child = self.files.find_child_folder(current, name)
            if child is None:
                return None
            current = child.id
        return current

    def materialize(self, path: str) -> str:
        """Walk ``path`` from the root, creating any missing segment."""
        current = self.files.root_id()
        for name in split_path(path):
            child = self.files.find_child_folder(current, name)
            if child is None:
                logger.info("Creating missing folder '%s' under %s.", name, current)
                child = self.files.create_folder(current, name)
            current = child.id
        return current
