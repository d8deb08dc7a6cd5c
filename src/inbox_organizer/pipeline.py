"""Batch pipeline that classifies files in the source folder and moves them."""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

from .backends import FALLBACK_FOLDER, BackendError, FileTask, HttpBackend
from .credentials import CredentialStore
from .file_store import FileRef, FileStoreError, FolderRef, LocalFileStore
from .indexer import (
    DEFAULT_STALL_THRESHOLD_MS,
    SCAN_RUNNING,
    SCAN_STALLED,
    FolderIndexer,
    clear_scan_state,
    load_folder_cache,
    scan_status,
)
from .locks import AdvisoryLock
from .ratelimit import RateLimiter
from .resolver import DestinationResolver
from .scheduler import Scheduler
from .state_store import SOURCE_FOLDER_ID, StateStore
from .util import normalize_store_path, now_ms

logger = logging.getLogger(__name__)

OUTCOME_MOVED = "moved"
OUTCOME_TOO_LARGE = "too_large"
OUTCOME_MISSING_CREDENTIALS = "missing_credentials"
OUTCOME_READ_FAILED = "read_failed"
OUTCOME_BACKEND_FAILED = "backend_failed"
OUTCOME_DEFERRED = "deferred"
OUTCOME_MOVE_FAILED = "move_failed"
OUTCOME_ERROR = "error"

SKIP_SCAN_IN_PROGRESS = "scan_in_progress"
SKIP_LOCKED = "locked"
SKIP_NO_FOLDER_CACHE = "no_folder_cache"
SKIP_NO_SOURCE_FOLDER = "no_source_folder"
SKIP_NO_FILES = "no_files"
SKIP_ERROR = "error"

_FAILURE_KINDS = {
    OUTCOME_MISSING_CREDENTIALS,
    OUTCOME_READ_FAILED,
    OUTCOME_BACKEND_FAILED,
    OUTCOME_MOVE_FAILED,
    OUTCOME_ERROR,
}


@dataclass(frozen=True)
class FileOutcome:
    file_id: str
    name: str
    kind: str
    destination: Optional[str] = None
    new_name: Optional[str] = None
    fallback_used: bool = False
    detail: Optional[str] = None


@dataclass
class RunSummary:
    skipped: Optional[str] = None
    stall_reset: bool = False
    outcomes: List[FileOutcome] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def moved(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.kind == OUTCOME_MOVED)

    @property
    def errors(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.kind in _FAILURE_KINDS)


class OrganizationPipeline:
    def __init__(
        self,
        *,
        store: StateStore,
        files: LocalFileStore,
        scheduler: Scheduler,
        indexer: FolderIndexer,
        credentials: CredentialStore,
        backend_factory: Callable[[Optional[str]], HttpBackend],
        platform: str,
        lock: AdvisoryLock,
        rate_limiter: RateLimiter,
        source_folder_name: str,
        batch_size: int = 5,
        max_file_size_bytes: int = 18 * 1024 * 1024,
        stall_threshold_ms: int = DEFAULT_STALL_THRESHOLD_MS,
        lock_timeout_ms: int = 100,
        file_delay_ms: int = 100,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.files = files
        self.scheduler = scheduler
        self.indexer = indexer
        self.credentials = credentials
        self.backend_factory = backend_factory
        self.platform = platform
        self.lock = lock
        self.rate_limiter = rate_limiter
        self.source_folder_name = source_folder_name
        self.batch_size = batch_size
        self.max_file_size_bytes = max_file_size_bytes
        self.stall_threshold_ms = stall_threshold_ms
        self.lock_timeout_ms = lock_timeout_ms
        self.file_delay_ms = file_delay_ms
        self.clock = clock
        self.sleep = sleep

    def run(self) -> RunSummary:
        status = scan_status(
            self.store,
            self.scheduler,
            now=self.clock(),
            stall_threshold_ms=self.stall_threshold_ms,
        )
        if status == SCAN_RUNNING:
            logger.info("Folder scan is in progress. Skipping file processing run.")
            return RunSummary(skipped=SKIP_SCAN_IN_PROGRESS)
        stall_reset = False
        if status == SCAN_STALLED:
            logger.warning(
                "Scan appears stuck (no active continuation past the stall threshold). "
                "Resetting scan state."
            )
            clear_scan_state(self.store, self.scheduler)
            stall_reset = True

        if not self.lock.try_acquire(timeout_ms=self.lock_timeout_ms):
            logger.info("Could not acquire lock, another instance is likely running. Exiting.")
            return RunSummary(skipped=SKIP_LOCKED, stall_reset=stall_reset)
        try:
            logger.info("Lock acquired. Starting file processing.")
            summary = self._run_locked()
        except Exception:  # noqa: BLE001 - a failed run must not break future runs
            logger.exception("Critical error during file processing run.")
            summary = RunSummary(skipped=SKIP_ERROR)
        finally:
            self.lock.release()
            logger.info("Lock released.")
        summary.stall_reset = stall_reset
        return summary

    def _run_locked(self) -> RunSummary:
        folder_cache = load_folder_cache(self.store)
        if folder_cache is None:
            logger.info("Folder cache is empty. Run setup or wait for the folder scan to complete.")
            return RunSummary(skipped=SKIP_NO_FOLDER_CACHE)
        source = self._source_folder()
        if source is None:
            logger.info("Source folder '%s' not found. Exiting.", self.source_folder_name)
            return RunSummary(skipped=SKIP_NO_SOURCE_FOLDER)
        pending = self.files.list_files(source.id)[: self.batch_size]
        if not pending:
            logger.info("No files found in source folder. Exiting.")
            return RunSummary(skipped=SKIP_NO_FILES)

        started = time.perf_counter()
        resolver = DestinationResolver(self.files, self.indexer.start_scan)
        source_path = self.files.folder_path(source.id)
        summary = RunSummary()
        for index, ref in enumerate(pending):
            try:
                outcome = self.process_file(ref, folder_cache, resolver, source_path)
            except Exception as exc:  # noqa: BLE001 - one file must not stop the batch
                logger.exception("Error processing file %s (ID: %s).", ref.name, ref.id)
                outcome = FileOutcome(file_id=ref.id, name=ref.name, kind=OUTCOME_ERROR, detail=str(exc))
            summary.outcomes.append(outcome)
            if index < len(pending) - 1 and self.file_delay_ms:
                self.sleep(self.file_delay_ms / 1000)
        summary.elapsed_seconds = time.perf_counter() - started
        logger.info(
            "Processing complete for this batch. %d file(s) moved of %d in %.2f seconds. Errors: %d",
            summary.moved,
            summary.processed,
            summary.elapsed_seconds,
            summary.errors,
        )
        return summary

    def _source_folder(self) -> Optional[FolderRef]:
        """The remembered source folder if it still exists, else a fresh search."""
        cached_id = self.store.get(SOURCE_FOLDER_ID)
        if cached_id:
            try:
                folder = self.files.get_folder(cached_id)
            except FileStoreError:
                folder = None
            if folder is not None and folder.name == self.source_folder_name:
                return folder
        folder = self.files.find_folder_by_name(self.source_folder_name)
        if folder is not None:
            self.store.set(SOURCE_FOLDER_ID, folder.id)
        elif cached_id:
            self.store.delete(SOURCE_FOLDER_ID)
        return folder

    def process_file(
        self,
        ref: FileRef,
        folder_cache: List[str],
        resolver: DestinationResolver,
        source_path: Optional[str] = None,
    ) -> FileOutcome:
        if ref.size_bytes > self.max_file_size_bytes:
            size_mb = round(ref.size_bytes / 1024 / 1024, 1)
            limit_mb = round(self.max_file_size_bytes / 1024 / 1024, 1)
            logger.info(
                "File %s is too large (%sMB). Maximum size is %sMB. Skipping.",
                ref.name,
                size_mb,
                limit_mb,
            )
            return FileOutcome(file_id=ref.id, name=ref.name, kind=OUTCOME_TOO_LARGE)

        api_key = self.credentials.get(self.platform)
        backend = self.backend_factory(api_key)
        if backend.requires_api_key and not api_key:
            logger.error(
                "API key for %s not found. Run 'inbox-organizer set-key' first.", self.platform
            )
            return FileOutcome(file_id=ref.id, name=ref.name, kind=OUTCOME_MISSING_CREDENTIALS)

        self.rate_limiter.wait()

        try:
            content, mime_type = self.files.read_file(ref.id)
        except FileStoreError as exc:
            logger.warning("Error getting file content for %s: %s. Skipping.", ref.name, exc)
            return FileOutcome(file_id=ref.id, name=ref.name, kind=OUTCOME_READ_FAILED, detail=str(exc))
        task = FileTask(
            id=ref.id,
            name=ref.name,
            size_bytes=ref.size_bytes,
            content=content,
            mime_type=mime_type,
        )

        try:
            result, fallback_used = backend.classify(task, folder_cache)
        except BackendError as exc:
            logger.error("Classification failed for %s: %s", ref.name, exc)
            return FileOutcome(file_id=ref.id, name=ref.name, kind=OUTCOME_BACKEND_FAILED, detail=str(exc))
        finally:
            self.rate_limiter.mark()
        if not fallback_used and _is_within(result.destination_folder, source_path):
            logger.warning(
                "Suggested destination '%s' for %s is inside the source folder. Using %s.",
                result.destination_folder,
                ref.name,
                FALLBACK_FOLDER,
            )
            fallback_used = True
            result = replace(result, destination_folder=FALLBACK_FOLDER)
        elif fallback_used:
            logger.info("Using fallback values for %s: %s", ref.name, FALLBACK_FOLDER)

        try:
            if fallback_used:
                resolution = resolver.resolve_fallback(result.destination_folder)
            else:
                resolution = resolver.resolve(result.destination_folder, folder_cache)
        except FileStoreError as exc:
            logger.error("Error preparing destination for %s: %s. File was not moved.", ref.name, exc)
            return FileOutcome(file_id=ref.id, name=ref.name, kind=OUTCOME_MOVE_FAILED, detail=str(exc))
        if not resolution.accepted or resolution.folder_id is None:
            return FileOutcome(
                file_id=ref.id,
                name=ref.name,
                kind=OUTCOME_DEFERRED,
                destination=resolution.path,
                new_name=result.new_filename,
            )

        try:
            new_id = self.files.move_file(ref.id, resolution.folder_id, result.new_filename)
        except FileStoreError as exc:
            logger.error("Error moving file %s: %s. File was not moved.", ref.name, exc)
            return FileOutcome(file_id=ref.id, name=ref.name, kind=OUTCOME_MOVE_FAILED, detail=str(exc))
        logger.info("File '%s' moved to '%s'.", result.new_filename, resolution.path)
        return FileOutcome(
            file_id=new_id,
            name=ref.name,
            kind=OUTCOME_MOVED,
            destination=resolution.path,
            new_name=result.new_filename,
            fallback_used=fallback_used,
        )


def _is_within(path: str, folder_path: Optional[str]) -> bool:
    if folder_path is None:
        return False
    path = normalize_store_path(path)
    return path == folder_path or path.startswith(folder_path.rstrip("/") + "/")
