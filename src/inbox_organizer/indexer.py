"""Resumable folder-tree indexer checkpointed to the state store."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .blacklist import BlacklistFilter
from .file_store import FolderNotFoundError, LocalFileStore
from .scheduler import HANDLER_CONTINUE_SCAN, Scheduler
from .state_store import (
    FOLDER_CACHE,
    FOLDER_CACHE_TIMESTAMP,
    SCAN_CONTINUATION_ID,
    SCAN_FOLDER_STACK,
    SCAN_FOUND_PATHS,
    SCAN_IN_PROGRESS,
    SCAN_START_TIME,
    SCAN_STATE_KEYS,
    StateStore,
)
from .util import is_hidden_name, now_ms

logger = logging.getLogger(__name__)

SCAN_IDLE = "idle"
SCAN_RUNNING = "running"
SCAN_STALLED = "stalled"

STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_NOT_RUNNING = "not_running"

DEFAULT_STALL_THRESHOLD_MS = 30 * 60 * 1000


@dataclass
class ScanState:
    folder_stack: List[str]
    found_paths: List[str]
    in_progress: bool
    start_time_ms: Optional[int]
    continuation_id: Optional[str]


@dataclass(frozen=True)
class ScanProgress:
    status: str
    folders_processed: int = 0
    folders_remaining: int = 0
    paths_found: int = 0
    continuation_id: Optional[str] = None
    error: Optional[str] = None


def load_scan_state(store: StateStore) -> Optional[ScanState]:
    in_progress = store.get(SCAN_IN_PROGRESS)
    stack = store.get(SCAN_FOLDER_STACK)
    if in_progress is None and stack is None:
        return None
    start = store.get(SCAN_START_TIME)
    return ScanState(
        folder_stack=[str(item) for item in stack or []],
        found_paths=[str(item) for item in store.get(SCAN_FOUND_PATHS) or []],
        in_progress=bool(in_progress),
        start_time_ms=int(start) if start is not None else None,
        continuation_id=store.get(SCAN_CONTINUATION_ID),
    )


def load_folder_cache(store: StateStore) -> Optional[List[str]]:
    cache = store.get(FOLDER_CACHE)
    if not isinstance(cache, list):
        return None
    return [str(path) for path in cache]


def clear_scan_state(store: StateStore, scheduler: Scheduler) -> None:
    scheduler.cancel(store.get(SCAN_CONTINUATION_ID))
    store.delete_many(SCAN_STATE_KEYS)


def reset_scan_state(store: StateStore, scheduler: Scheduler) -> int:
    """Clear the checkpoint; returns how many stray continuations were removed."""
    clear_scan_state(store, scheduler)
    stray = scheduler.cancel_handler(HANDLER_CONTINUE_SCAN)
    if stray:
        logger.info("Deleted %d stray continuation trigger(s).", stray)
    logger.info("Scan state reset complete.")
    return stray


def scan_status(
    store: StateStore,
    scheduler: Scheduler,
    *,
    now: int,
    stall_threshold_ms: int = DEFAULT_STALL_THRESHOLD_MS,
) -> str:
    if not store.get(SCAN_IN_PROGRESS, False):
        return SCAN_IDLE
    start = store.get(SCAN_START_TIME)
    if start is None or now - int(start) <= stall_threshold_ms:
        return SCAN_RUNNING
    if scheduler.is_active(store.get(SCAN_CONTINUATION_ID)):
        return SCAN_RUNNING
    return SCAN_STALLED


def describe_scan_state(store: StateStore, scheduler: Scheduler, *, now: int) -> Dict[str, Any]:
    state = load_scan_state(store)
    cache = load_folder_cache(store)
    info: Dict[str, Any] = {
        "in_progress": bool(state and state.in_progress),
        "start_time": None,
        "elapsed_minutes": None,
        "continuation_id": state.continuation_id if state else None,
        "continuation_active": scheduler.is_active(state.continuation_id) if state else False,
        "folders_remaining": len(state.folder_stack) if state else 0,
        "paths_found": len(state.found_paths) if state else 0,
        "cached_folders": len(cache) if cache is not None else None,
        "cache_timestamp": store.get(FOLDER_CACHE_TIMESTAMP),
        "triggers": [
            {"id": trigger.id, "handler": trigger.handler, "recurring": trigger.recurring}
            for trigger in scheduler.list_triggers()
        ],
    }
    if state and state.start_time_ms is not None:
        started = datetime.fromtimestamp(state.start_time_ms / 1000, tz=timezone.utc)
        info["start_time"] = started.isoformat()
        info["elapsed_minutes"] = round((now - state.start_time_ms) / 60000)
    return info


def _utc_string(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime(
        "%a, %d %b %Y %H:%M:%S GMT"
    )


class FolderIndexer:
    def __init__(
        self,
        store: StateStore,
        files: LocalFileStore,
        scheduler: Scheduler,
        *,
        source_folder_name: str,
        blacklist: Optional[BlacklistFilter] = None,
        max_runtime_seconds: float = 240,
        folder_batch_size: int = 100,
        continuation_delay_seconds: float = 60,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.files = files
        self.scheduler = scheduler
        self.source_folder_name = source_folder_name
        self.blacklist = blacklist or BlacklistFilter()
        self.max_runtime_seconds = max_runtime_seconds
        self.folder_batch_size = max(1, int(folder_batch_size))
        self.continuation_delay_seconds = continuation_delay_seconds
        self.clock = clock

    def start_scan(self) -> ScanProgress:
        """Discard any existing checkpoint and scan from the root."""
        clear_scan_state(self.store, self.scheduler)
        self.store.set_many(
            {
                SCAN_FOLDER_STACK: [self.files.root_id()],
                SCAN_FOUND_PATHS: [],
                SCAN_IN_PROGRESS: True,
                SCAN_START_TIME: self.clock(),
            }
        )
        logger.info("Folder scan started. Kicking off first continuation.")
        return self.continue_scan()

    def continue_scan(self) -> ScanProgress:
        started = self.clock()
        state = load_scan_state(self.store)
        if state is None or not state.in_progress:
            logger.warning("No folder scan in progress; nothing to continue.")
            return ScanProgress(status=STATUS_NOT_RUNNING)
        stack = list(state.folder_stack)
        found = list(state.found_paths)
        processed = 0
        batch_count = 0
        try:
            while stack:
                self._visit(stack.pop(), stack, found)
                processed += 1
                batch_count += 1
                if batch_count < self.folder_batch_size:
                    continue
                batch_count = 0
                elapsed = (self.clock() - started) / 1000
                if elapsed >= self.max_runtime_seconds and stack:
                    continuation_id = self._checkpoint(stack, found)
                    logger.info(
                        "Scan paused due to time limit. Processed %d folders this run, %d remain.",
                        processed,
                        len(stack),
                    )
                    return ScanProgress(
                        status=STATUS_PAUSED,
                        folders_processed=processed,
                        folders_remaining=len(stack),
                        paths_found=len(found),
                        continuation_id=continuation_id,
                    )
            paths = self._publish(found)
        except Exception as exc:  # noqa: BLE001 - a failed scan keeps the last good cache
            logger.exception("Error during folder scan; discarding scan state.")
            clear_scan_state(self.store, self.scheduler)
            return ScanProgress(
                status=STATUS_FAILED,
                folders_processed=processed,
                error=str(exc),
            )
        logger.info("Folder scan complete. Successfully cached %d folders.", len(paths))
        return ScanProgress(
            status=STATUS_COMPLETED,
            folders_processed=processed,
            paths_found=len(paths),
        )

    def _visit(self, folder_id: str, stack: List[str], found: List[str]) -> None:
        try:
            folder = self.files.get_folder(folder_id)
            path = self.files.folder_path(folder_id)
        except FolderNotFoundError:
            logger.warning("Folder %s disappeared during the scan; skipping it.", folder_id)
            return
        if self.blacklist.is_excluded(folder, path):
            logger.info("Skipping blacklisted folder: %s", path)
            return
        if path and path != "/":
            found.append(path)
        for child in self.files.list_child_folders(folder_id):
            if child.name == self.source_folder_name or is_hidden_name(child.name):
                continue
            stack.append(child.id)

    def _checkpoint(self, stack: List[str], found: List[str]) -> str:
        self.scheduler.cancel(self.store.get(SCAN_CONTINUATION_ID))
        continuation_id = self.scheduler.schedule_once(
            HANDLER_CONTINUE_SCAN, self.continuation_delay_seconds
        )
        self.store.set_many(
            {
                SCAN_FOLDER_STACK: stack,
                SCAN_FOUND_PATHS: found,
                SCAN_CONTINUATION_ID: continuation_id,
            }
        )
        return continuation_id

    def _publish(self, found: List[str]) -> List[str]:
        paths = list(dict.fromkeys(found))
        self.scheduler.cancel(self.store.get(SCAN_CONTINUATION_ID))
        self.store.apply(
            {
                FOLDER_CACHE: paths,
                FOLDER_CACHE_TIMESTAMP: _utc_string(self.clock()),
            },
            SCAN_STATE_KEYS,
        )
        return paths
