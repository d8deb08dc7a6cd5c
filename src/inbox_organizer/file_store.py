import mimetypes
import shutil
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .util import is_hidden_name, normalize_store_path, split_path

DEFAULT_MIME_TYPE = "application/octet-stream"


class FileStoreError(Exception):
    pass


class FolderNotFoundError(FileStoreError):
    pass


@dataclass(frozen=True)
class FolderRef:
    id: str
    name: str


@dataclass(frozen=True)
class FileRef:
    id: str
    name: str
    size_bytes: int


class LocalFileStore:
    """File store over a local directory tree.

    Identifiers are root-relative ``/``-separated strings, the root being
    ``"/"``. Children are listed sorted by name, so lookups by name resolve
    same-named candidates to the first one in that order.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()

    def _resolve(self, item_id: str) -> Path:
        parts = split_path(item_id)
        if any(part in {".", ".."} for part in parts):
            raise FileStoreError(f"invalid identifier: {item_id}")
        return self.root.joinpath(*parts)

    def _id_for(self, path: Path) -> str:
        rel = path.relative_to(self.root)
        return normalize_store_path(rel.as_posix()) if rel.parts else "/"

    def root_id(self) -> str:
        return "/"

    def get_folder(self, folder_id: str) -> FolderRef:
        path = self._resolve(folder_id)
        if not path.is_dir():
            raise FolderNotFoundError(f"folder not found: {folder_id}")
        name = path.name if path != self.root else ""
        return FolderRef(id=self._id_for(path), name=name)

    def parent_id(self, item_id: str) -> Optional[str]:
        parts = split_path(item_id)
        if not parts:
            return None
        return normalize_store_path("/".join(parts[:-1]))

    def folder_path(self, folder_id: str) -> str:
        """Absolute path of a folder, built by walking its parent chain."""
        names: List[str] = []
        current: Optional[str] = folder_id
        while current is not None:
            parent = self.parent_id(current)
            if parent is None:
                break
            names.insert(0, self.get_folder(current).name)
            current = parent
        return "/" + "/".join(names)

    def list_child_folders(self, folder_id: str) -> List[FolderRef]:
        path = self._resolve(folder_id)
        if not path.is_dir():
            raise FolderNotFoundError(f"folder not found: {folder_id}")
        children = []
        for child in sorted(path.iterdir(), key=lambda p: p.name):
            if child.is_symlink() or not child.is_dir():
                continue
            children.append(FolderRef(id=self._id_for(child), name=child.name))
        return children

    def find_child_folder(self, parent_id: str, name: str) -> Optional[FolderRef]:
        for child in self.list_child_folders(parent_id):
            if child.name == name:
                return child
        return None

    def find_folder_by_name(self, name: str) -> Optional[FolderRef]:
        """Breadth-first search for the first folder called ``name``."""
        queue = deque([self.root_id()])
        while queue:
            current = queue.popleft()
            for child in self.list_child_folders(current):
                if child.name == name:
                    return child
                if not is_hidden_name(child.name):
                    queue.append(child.id)
        return None

    def create_folder(self, parent_id: str, name: str) -> FolderRef:
        if not name or "/" in name or name in {".", ".."}:
            raise FileStoreError(f"invalid folder name: {name!r}")
        parent = self._resolve(parent_id)
        if not parent.is_dir():
            raise FolderNotFoundError(f"folder not found: {parent_id}")
        path = parent / name
        path.mkdir(exist_ok=True)
        return FolderRef(id=self._id_for(path), name=name)

    def list_files(self, folder_id: str) -> List[FileRef]:
        path = self._resolve(folder_id)
        if not path.is_dir():
            raise FolderNotFoundError(f"folder not found: {folder_id}")
        files = []
        for child in sorted(path.iterdir(), key=lambda p: p.name):
            if child.is_symlink() or not child.is_file():
                continue
            if is_hidden_name(child.name):
                continue
            files.append(
                FileRef(id=self._id_for(child), name=child.name, size_bytes=child.stat().st_size)
            )
        return files

    def read_file(self, file_id: str) -> Tuple[bytes, str]:
        path = self._resolve(file_id)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise FileStoreError(f"cannot read {file_id}: {exc}") from exc
        mime, _ = mimetypes.guess_type(path.name)
        return data, mime or DEFAULT_MIME_TYPE

    def move_file(self, file_id: str, folder_id: str, new_name: str) -> str:
        """Rename ``file_id`` to ``new_name`` inside ``folder_id``; returns the new id."""
        src = self._resolve(file_id)
        if not src.is_file():
            raise FileStoreError(f"file not found: {file_id}")
        dest_dir = self._resolve(folder_id)
        if not dest_dir.is_dir():
            raise FolderNotFoundError(f"folder not found: {folder_id}")
        dest = dest_dir / new_name
        if dest.resolve() != src.resolve():
            dest = _resolve_collision(dest)
        try:
            shutil.move(str(src), str(dest))
        except (OSError, shutil.Error) as exc:
            raise FileStoreError(f"cannot move {file_id}: {exc}") from exc
        return self._id_for(dest)


def _resolve_collision(dest: Path) -> Path:
    if not dest.exists():
        return dest
    stem = dest.stem
    suffix = dest.suffix
    parent = dest.parent
    for i in range(1, 1000):
        candidate = parent / f"{stem}__{i}{suffix}"
        if not candidate.exists():
            return candidate
    return parent / f"{stem}__overflow{suffix}"
