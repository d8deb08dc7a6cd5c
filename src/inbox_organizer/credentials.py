import json
import os
from pathlib import Path
from typing import Dict, Optional

from .config import CONFIG_DIR

CREDENTIALS_FILE = CONFIG_DIR / "credentials.json"

PLACEHOLDER_KEYS = {"", "PASTE_YOUR_GEMINI_API_KEY_HERE", "PASTE_YOUR_OPENAI_API_KEY_HERE"}


def _env_name(platform: str) -> str:
    return f"INBOX_ORGANIZER_{platform.upper()}_API_KEY"


class CredentialStore:
    """API keys per platform: environment first, then a private JSON file."""

    def __init__(self, path: Path = CREDENTIALS_FILE) -> None:
        self.path = path

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        if not isinstance(raw, dict):
            return {}
        return {str(key): str(value) for key, value in raw.items() if isinstance(value, str)}

    def get(self, platform: str) -> Optional[str]:
        value = os.environ.get(_env_name(platform))
        if value:
            return value
        stored = self._load().get(platform.lower(), "")
        if stored.strip() in PLACEHOLDER_KEYS:
            return None
        return stored.strip()

    def set(self, platform: str, api_key: str) -> bool:
        if api_key.strip() in PLACEHOLDER_KEYS:
            return False
        keys = self._load()
        keys[platform.lower()] = api_key.strip()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(keys, fh, indent=2)
            fh.write("\n")
        tmp_path.replace(self.path)
        return True
