import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .ai_log import resolve_log_path

CONFIG_DIR = Path.home() / ".config" / "inbox-organizer"
CONFIG_FILE = CONFIG_DIR / "config.json"

SUPPORTED_PLATFORMS = ("gemini", "openai", "ollama")

DEFAULT_CONFIG: Dict[str, Any] = {
    "file_store_root": str(Path.home() / "Drive"),
    "source_folder_name": "Scanned content",
    "batch_size": 5,
    "max_runtime_seconds": 240,
    "folder_batch_size": 100,
    "folder_cache_refresh_hours": 24,
    "file_processing_interval_minutes": 10,
    "continuation_delay_seconds": 60,
    "stall_threshold_minutes": 30,
    "max_file_size_mb": 18,
    "ai_platform": "gemini",
    "gemini_model": "gemini-2.5-flash-lite-preview-06-17",
    "openai_model": "gpt-4.1-nano",
    "ollama_model": "gemma3:12b",
    "ollama_base_url": "http://localhost:11434",
    "min_api_call_spacing_ms": 500,
    "file_delay_ms": 100,
    "lock_timeout_ms": 100,
    "request_timeout_seconds": 120,
    "blacklisted_paths": [],
    "state_dir": str(CONFIG_DIR / "state"),
    "ai_log_path": str(CONFIG_DIR / "ai-interactions.jsonl"),
    "log_level": "INFO",
    "log_file": None,
}

ENV_OVERRIDES = {
    "INBOX_ORGANIZER_FILE_STORE_ROOT": "file_store_root",
    "INBOX_ORGANIZER_AI_PLATFORM": "ai_platform",
    "INBOX_ORGANIZER_STATE_DIR": "state_dir",
    "INBOX_ORGANIZER_LOG_LEVEL": "log_level",
    "INBOX_ORGANIZER_OLLAMA_BASE_URL": "ollama_base_url",
}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class OrganizerSettings:
    file_store_root: Path
    source_folder_name: str
    batch_size: int
    max_runtime_seconds: float
    folder_batch_size: int
    folder_cache_refresh_hours: int
    file_processing_interval_minutes: int
    continuation_delay_seconds: float
    stall_threshold_minutes: float
    max_file_size_mb: float
    ai_platform: str
    gemini_model: str
    openai_model: str
    ollama_model: str
    ollama_base_url: str
    min_api_call_spacing_ms: int
    file_delay_ms: int
    lock_timeout_ms: int
    request_timeout_seconds: float
    blacklisted_paths: List[str]
    state_dir: Path
    ai_log_path: Optional[Path]

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)

    @property
    def stall_threshold_ms(self) -> int:
        return int(self.stall_threshold_minutes * 60 * 1000)

    @property
    def db_path(self) -> Path:
        return self.state_dir / "state.db"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "pipeline.lock"

    def model_for_platform(self) -> str:
        if self.ai_platform == "gemini":
            return self.gemini_model
        if self.ai_platform == "openai":
            return self.openai_model
        return self.ollama_model


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    updated = dict(cfg)
    for env_key, cfg_key in ENV_OVERRIDES.items():
        value = os.environ.get(env_key)
        if value:
            updated[cfg_key] = value
    return updated


def load_config() -> Dict[str, Any]:
    if not CONFIG_FILE.exists():
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        CONFIG_FILE.write_text(json.dumps(DEFAULT_CONFIG, indent=2), encoding="utf-8")
    cfg = json.loads(CONFIG_FILE.read_text(encoding="utf-8"))
    merged = dict(DEFAULT_CONFIG)
    merged.update(cfg)
    if merged != cfg:
        CONFIG_FILE.write_text(json.dumps(merged, indent=2), encoding="utf-8")
    return _apply_env_overrides(merged)


def config_path() -> Path:
    return CONFIG_FILE


def _positive_int(cfg: Dict[str, Any], key: str) -> int:
    raw = cfg.get(key, DEFAULT_CONFIG[key])
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def _non_negative_float(cfg: Dict[str, Any], key: str) -> float:
    raw = cfg.get(key, DEFAULT_CONFIG[key])
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {value}")
    return value


def _blacklist(cfg: Dict[str, Any]) -> List[str]:
    raw = cfg.get("blacklisted_paths", [])
    if not isinstance(raw, list):
        raise ConfigError("blacklisted_paths must be a list of folder names or paths")
    return [str(item) for item in raw if isinstance(item, str) and item]


def settings_from_config(cfg: Dict[str, Any]) -> OrganizerSettings:
    platform = str(cfg.get("ai_platform", "gemini")).strip().lower()
    if platform not in SUPPORTED_PLATFORMS:
        raise ConfigError(
            f"Unsupported ai_platform: {platform!r} (expected one of {', '.join(SUPPORTED_PLATFORMS)})"
        )
    source_folder_name = str(cfg.get("source_folder_name", "")).strip()
    if not source_folder_name:
        raise ConfigError("source_folder_name must not be empty")
    return OrganizerSettings(
        file_store_root=Path(str(cfg["file_store_root"])).expanduser(),
        source_folder_name=source_folder_name,
        batch_size=_positive_int(cfg, "batch_size"),
        max_runtime_seconds=_non_negative_float(cfg, "max_runtime_seconds"),
        folder_batch_size=_positive_int(cfg, "folder_batch_size"),
        folder_cache_refresh_hours=_positive_int(cfg, "folder_cache_refresh_hours"),
        file_processing_interval_minutes=_positive_int(cfg, "file_processing_interval_minutes"),
        continuation_delay_seconds=_non_negative_float(cfg, "continuation_delay_seconds"),
        stall_threshold_minutes=_non_negative_float(cfg, "stall_threshold_minutes"),
        max_file_size_mb=_non_negative_float(cfg, "max_file_size_mb"),
        ai_platform=platform,
        gemini_model=str(cfg.get("gemini_model", DEFAULT_CONFIG["gemini_model"])),
        openai_model=str(cfg.get("openai_model", DEFAULT_CONFIG["openai_model"])),
        ollama_model=str(cfg.get("ollama_model", DEFAULT_CONFIG["ollama_model"])),
        ollama_base_url=str(cfg.get("ollama_base_url", DEFAULT_CONFIG["ollama_base_url"])),
        min_api_call_spacing_ms=int(_non_negative_float(cfg, "min_api_call_spacing_ms")),
        file_delay_ms=int(_non_negative_float(cfg, "file_delay_ms")),
        lock_timeout_ms=int(_non_negative_float(cfg, "lock_timeout_ms")),
        request_timeout_seconds=_non_negative_float(cfg, "request_timeout_seconds"),
        blacklisted_paths=_blacklist(cfg),
        state_dir=Path(str(cfg["state_dir"])).expanduser(),
        ai_log_path=resolve_log_path(cfg.get("ai_log_path"), CONFIG_DIR),
    )
