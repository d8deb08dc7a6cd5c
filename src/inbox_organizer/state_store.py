import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List

# Persisted keys shared by the indexer, the pipeline and the rate limiter.
SCAN_FOLDER_STACK = "scan_state.folder_stack"
SCAN_FOUND_PATHS = "scan_state.found_paths"
SCAN_IN_PROGRESS = "scan_state.in_progress"
SCAN_START_TIME = "scan_state.start_time"
SCAN_CONTINUATION_ID = "scan_state.continuation_id"
FOLDER_CACHE = "folder_cache"
FOLDER_CACHE_TIMESTAMP = "folder_cache.timestamp"
LAST_API_CALL_TIME = "last_api_call_time"
SOURCE_FOLDER_ID = "source_folder_id"

SCAN_STATE_KEYS = (
    SCAN_FOLDER_STACK,
    SCAN_FOUND_PATHS,
    SCAN_IN_PROGRESS,
    SCAN_START_TIME,
    SCAN_CONTINUATION_ID,
)

_MIGRATIONS: Dict[int, str] = {
    1: """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS state (
        key TEXT PRIMARY KEY,
        value_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _connect(path: Path) -> sqlite3.Connection:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations "
        "(version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    current = conn.execute("SELECT MAX(version) AS v FROM schema_migrations").fetchone()[
        "v"
    ]
    current_version = int(current or 0)
    for version in sorted(_MIGRATIONS.keys()):
        if version <= current_version:
            continue
        with conn:
            conn.executescript(_MIGRATIONS[version])
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, _utc_now()),
            )


def _decode(raw: str, default: Any) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


class StateStore:
    """Durable key/value store that survives across invocations.

    Values are JSON-encoded. ``set_many`` and ``delete_many`` run in a single
    transaction so a group of keys is written or removed atomically.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn = _connect(db_path)
        apply_migrations(self._conn)

    def close(self) -> None:
        self._conn.close()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def get(self, key: str, default: Any = None) -> Any:
        row = self._conn.execute(
            "SELECT value_json FROM state WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return default
        return _decode(row["value_json"], default)

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Dict[str, Any]) -> None:
        self.apply(values)

    def delete(self, key: str) -> None:
        self.delete_many([key])

    def delete_many(self, keys: Iterable[str]) -> None:
        self.apply({}, keys)

    def apply(self, values: Dict[str, Any], delete_keys: Iterable[str] = ()) -> None:
        """Write ``values`` and remove ``delete_keys`` in one transaction."""
        now = _utc_now()
        with self._conn:
            for key, value in values.items():
                self._conn.execute(
                    """
                    INSERT INTO state (key, value_json, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value_json = excluded.value_json,
                        updated_at = excluded.updated_at
                    """,
                    (key, json.dumps(value), now),
                )
            for key in delete_keys:
                self._conn.execute("DELETE FROM state WHERE key = ?", (key,))

    def keys(self) -> List[str]:
        rows = self._conn.execute("SELECT key FROM state ORDER BY key").fetchall()
        return [row["key"] for row in rows]

    def schema_version(self) -> int:
        row = self._conn.execute("SELECT MAX(version) AS v FROM schema_migrations").fetchone()
        return int(row["v"] or 0)
