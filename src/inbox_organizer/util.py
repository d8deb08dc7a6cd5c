import os
import re
import time
from pathlib import Path
from typing import List

HIDDEN_MARKER = "."

_CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def now_ms() -> int:
    return int(time.time() * 1000)


def is_hidden_name(name: str) -> bool:
    return name.startswith(HIDDEN_MARKER)


def split_path(path: str) -> List[str]:
    return [part for part in path.split("/") if part]


def normalize_store_path(path: str) -> str:
    """Return ``path`` as ``/A/B``: leading slash, no empty or trailing segments."""
    parts = split_path(path.strip())
    return "/" + "/".join(parts)


def sanitize_filename(name: str) -> str:
    cleaned = re.sub(r"[\\/]+", "-", name)
    cleaned = re.sub(r"[\x00-\x1f]", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if cleaned in {".", ".."}:
        return ""
    if len(cleaned) > 200:
        cleaned = cleaned[:200].rstrip()
    return cleaned


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE_RE.sub("", text).strip()


def ensure_dir(path: Path) -> None:
    os.makedirs(path, exist_ok=True)
