import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from inbox_organizer.backends import (  # noqa: E402
    BackendError,
    ClassificationResult,
    fallback_result,
)
from inbox_organizer.credentials import CredentialStore  # noqa: E402
from inbox_organizer.file_store import FileStoreError, LocalFileStore  # noqa: E402
from inbox_organizer.indexer import FolderIndexer, load_scan_state  # noqa: E402
from inbox_organizer.locks import AdvisoryLock  # noqa: E402
from inbox_organizer.pipeline import (  # noqa: E402
    OUTCOME_BACKEND_FAILED,
    OUTCOME_DEFERRED,
    OUTCOME_ERROR,
    OUTCOME_MISSING_CREDENTIALS,
    OUTCOME_MOVE_FAILED,
    OUTCOME_MOVED,
    OUTCOME_READ_FAILED,
    OUTCOME_TOO_LARGE,
    SKIP_LOCKED,
    SKIP_NO_FILES,
    SKIP_NO_FOLDER_CACHE,
    SKIP_NO_SOURCE_FOLDER,
    SKIP_SCAN_IN_PROGRESS,
    OrganizationPipeline,
)
from inbox_organizer.ratelimit import RateLimiter  # noqa: E402
from inbox_organizer.scheduler import Scheduler  # noqa: E402
from inbox_organizer.state_store import (  # noqa: E402
    FOLDER_CACHE,
    LAST_API_CALL_TIME,
    SCAN_IN_PROGRESS,
    SCAN_START_TIME,
    SOURCE_FOLDER_ID,
    StateStore,
)

PLATFORM = "testai"


class _Clock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += int(round(seconds * 1000))


class _FakeBackend:
    def __init__(self, *replies, requires_api_key: bool = True) -> None:
        self.replies = list(replies)
        self.requires_api_key = requires_api_key
        self.calls = []

    def classify(self, task, folder_paths):
        self.calls.append(task.name)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def _moved_to(folder: str, name: str):
    return ClassificationResult(new_filename=name, destination_folder=folder), False


class TestOrganizationPipeline(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.root = base / "drive"
        (self.root / "Finance" / "Invoices").mkdir(parents=True)
        (self.root / "Work").mkdir()
        self.source = self.root / "Inbox" / "Scanned content"
        self.source.mkdir(parents=True)
        self.state_dir = base / "state"
        self.store = StateStore(base / "state.db")
        self.clock = _Clock()
        self.sleeps = []
        self.scheduler = Scheduler(self.store, clock=self.clock)
        self.files = LocalFileStore(self.root)
        self.indexer = FolderIndexer(
            self.store,
            self.files,
            self.scheduler,
            source_folder_name="Scanned content",
            clock=self.clock,
        )
        self.credentials = CredentialStore(base / "credentials.json")
        self.credentials.set(PLATFORM, "key-123")
        self.lock_path = self.state_dir / "pipeline.lock"
        self.indexer.start_scan()

    def tearDown(self) -> None:
        self.store.close()
        self._tmp.cleanup()

    def _pipeline(self, backend: _FakeBackend, **kwargs) -> OrganizationPipeline:
        self.factory_keys = []

        def factory(api_key):
            self.factory_keys.append(api_key)
            return backend

        options = dict(
            store=self.store,
            files=self.files,
            scheduler=self.scheduler,
            indexer=self.indexer,
            credentials=self.credentials,
            backend_factory=factory,
            platform=PLATFORM,
            lock=AdvisoryLock(self.lock_path, owner="test"),
            rate_limiter=RateLimiter(
                self.store, min_spacing_ms=500, clock=self.clock, sleep=self.clock.sleep
            ),
            source_folder_name="Scanned content",
            batch_size=5,
            clock=self.clock,
            sleep=self.sleeps.append,
        )
        options.update(kwargs)
        return OrganizationPipeline(**options)

    def _drop(self, name: str, content: bytes = b"%PDF-1.4") -> Path:
        path = self.source / name
        path.write_bytes(content)
        return path

    def test_moves_and_renames_file(self) -> None:
        self._drop("scan1.pdf")
        backend = _FakeBackend(_moved_to("/Finance/Invoices", "Invoice ACME.pdf"))

        summary = self._pipeline(backend).run()

        self.assertIsNone(summary.skipped)
        self.assertEqual([o.kind for o in summary.outcomes], [OUTCOME_MOVED])
        self.assertEqual(summary.outcomes[0].destination, "/Finance/Invoices")
        self.assertTrue((self.root / "Finance" / "Invoices" / "Invoice ACME.pdf").exists())
        self.assertFalse((self.source / "scan1.pdf").exists())
        self.assertEqual(self.factory_keys, ["key-123"])
        self.assertIsNotNone(self.store.get(LAST_API_CALL_TIME))

    def test_oversized_file_is_skipped_without_backend_call(self) -> None:
        big = self.source / "huge.pdf"
        with big.open("wb") as fh:
            fh.truncate(25 * 1024 * 1024)
        backend = _FakeBackend(_moved_to("/Finance", "x.pdf"))

        summary = self._pipeline(backend, max_file_size_bytes=18 * 1024 * 1024).run()

        self.assertEqual([o.kind for o in summary.outcomes], [OUTCOME_TOO_LARGE])
        self.assertEqual(backend.calls, [])
        self.assertTrue(big.exists())

    def test_unknown_destination_defers_file_and_requests_rescan(self) -> None:
        self._drop("report.pdf")
        backend = _FakeBackend(_moved_to("/Reports/2024", "Report 2024.pdf"))

        with mock.patch.object(self.indexer, "start_scan") as start_scan:
            summary = self._pipeline(backend).run()

        self.assertEqual([o.kind for o in summary.outcomes], [OUTCOME_DEFERRED])
        self.assertEqual(summary.outcomes[0].destination, "/Reports/2024")
        start_scan.assert_called_once_with()
        self.assertTrue((self.source / "report.pdf").exists())
        self.assertFalse((self.root / "Reports").exists())

    def test_folder_created_after_scan_is_used(self) -> None:
        (self.root / "Projects").mkdir()
        self._drop("plan.pdf")
        backend = _FakeBackend(_moved_to("/Projects", "Plan.pdf"))

        summary = self._pipeline(backend).run()

        self.assertEqual([o.kind for o in summary.outcomes], [OUTCOME_MOVED])
        self.assertTrue((self.root / "Projects" / "Plan.pdf").exists())

    def test_malformed_reply_moves_to_fallback_folder(self) -> None:
        self._drop("mystery.pdf")
        backend = _FakeBackend((fallback_result("mystery.pdf"), True))

        summary = self._pipeline(backend).run()

        outcome = summary.outcomes[0]
        self.assertEqual(outcome.kind, OUTCOME_MOVED)
        self.assertTrue(outcome.fallback_used)
        self.assertTrue((self.root / "Unprocessed Files" / "mystery.pdf").exists())

    def test_skips_while_scan_in_progress(self) -> None:
        self._drop("scan1.pdf")
        self.store.set_many({SCAN_IN_PROGRESS: True, SCAN_START_TIME: self.clock()})
        backend = _FakeBackend(_moved_to("/Finance", "x.pdf"))

        summary = self._pipeline(backend).run()

        self.assertEqual(summary.skipped, SKIP_SCAN_IN_PROGRESS)
        self.assertEqual(backend.calls, [])
        self.assertTrue((self.source / "scan1.pdf").exists())

    def test_stalled_scan_is_reset_and_run_proceeds(self) -> None:
        self._drop("scan1.pdf")
        self.store.set_many(
            {SCAN_IN_PROGRESS: True, SCAN_START_TIME: self.clock() - 31 * 60 * 1000}
        )
        backend = _FakeBackend(_moved_to("/Finance", "Statement.pdf"))

        summary = self._pipeline(backend).run()

        self.assertTrue(summary.stall_reset)
        self.assertIsNone(load_scan_state(self.store))
        self.assertEqual([o.kind for o in summary.outcomes], [OUTCOME_MOVED])

    def test_lock_contention_skips_run(self) -> None:
        self._drop("scan1.pdf")
        holder = AdvisoryLock(self.lock_path, owner="other")
        self.assertTrue(holder.try_acquire())
        backend = _FakeBackend(_moved_to("/Finance", "x.pdf"))
        try:
            summary = self._pipeline(backend, lock_timeout_ms=20).run()
        finally:
            holder.release()

        self.assertEqual(summary.skipped, SKIP_LOCKED)
        self.assertEqual(backend.calls, [])

    def test_missing_cache_source_or_files_skip(self) -> None:
        backend = _FakeBackend(_moved_to("/Finance", "x.pdf"))
        self.assertEqual(self._pipeline(backend).run().skipped, SKIP_NO_FILES)
        self.assertEqual(
            self._pipeline(backend, source_folder_name="Nowhere").run().skipped,
            SKIP_NO_SOURCE_FOLDER,
        )
        self.store.delete(FOLDER_CACHE)
        self._drop("scan1.pdf")
        self.assertEqual(self._pipeline(backend).run().skipped, SKIP_NO_FOLDER_CACHE)
        self.assertEqual(backend.calls, [])

    def test_missing_credentials_skip_file(self) -> None:
        self._drop("scan1.pdf")
        backend = _FakeBackend(_moved_to("/Finance", "x.pdf"))
        credentials = CredentialStore(Path(self._tmp.name) / "empty.json")

        summary = self._pipeline(backend, credentials=credentials).run()

        self.assertEqual([o.kind for o in summary.outcomes], [OUTCOME_MISSING_CREDENTIALS])
        self.assertEqual(backend.calls, [])

    def test_keyless_backend_runs_without_credentials(self) -> None:
        self._drop("scan1.pdf")
        backend = _FakeBackend(_moved_to("/Work", "Notes.pdf"), requires_api_key=False)
        credentials = CredentialStore(Path(self._tmp.name) / "empty.json")

        summary = self._pipeline(backend, credentials=credentials).run()

        self.assertEqual([o.kind for o in summary.outcomes], [OUTCOME_MOVED])

    def test_one_failure_does_not_stop_batch(self) -> None:
        self._drop("a.pdf")
        self._drop("b.pdf")
        self._drop("c.pdf")
        backend = _FakeBackend(
            BackendError("API call failed with status 500"),
            RuntimeError("unexpected"),
            _moved_to("/Work", "C.pdf"),
        )

        summary = self._pipeline(backend).run()

        kinds = [o.kind for o in summary.outcomes]
        self.assertEqual(kinds, [OUTCOME_BACKEND_FAILED, OUTCOME_ERROR, OUTCOME_MOVED])
        self.assertEqual(summary.errors, 2)
        self.assertEqual(summary.moved, 1)
        self.assertEqual(self.sleeps, [0.1, 0.1])
        self.assertTrue((self.source / "a.pdf").exists())
        self.assertTrue((self.root / "Work" / "C.pdf").exists())
        other = AdvisoryLock(self.lock_path)
        self.assertTrue(other.try_acquire(timeout_ms=10))
        other.release()

    def test_batch_size_limits_files_per_run(self) -> None:
        for name in ("a.pdf", "b.pdf", "c.pdf"):
            self._drop(name)
        backend = _FakeBackend(_moved_to("/Work", "Doc.pdf"))

        summary = self._pipeline(backend, batch_size=2).run()

        self.assertEqual(summary.processed, 2)
        self.assertEqual(backend.calls, ["a.pdf", "b.pdf"])
        self.assertTrue((self.source / "c.pdf").exists())
        self.assertTrue((self.root / "Work" / "Doc__1.pdf").exists())

    def test_calls_are_spaced_by_rate_limiter(self) -> None:
        self._drop("a.pdf")
        self._drop("b.pdf")
        starts = []
        backend = _FakeBackend(_moved_to("/Work", "Doc.pdf"))
        original = backend.classify

        def timed(task, folder_paths):
            starts.append(self.clock.now)
            return original(task, folder_paths)

        backend.classify = timed
        self._pipeline(backend).run()

        self.assertEqual(len(starts), 2)
        self.assertGreaterEqual(starts[1] - starts[0], 500)

    def test_backend_failure_still_records_call_time(self) -> None:
        self._drop("a.pdf")
        backend = _FakeBackend(BackendError("API call failed with status 503"))

        summary = self._pipeline(backend).run()

        self.assertEqual([o.kind for o in summary.outcomes], [OUTCOME_BACKEND_FAILED])
        self.assertEqual(self.store.get(LAST_API_CALL_TIME), self.clock.now)

    def test_unreadable_file_is_left_in_place(self) -> None:
        self._drop("scan1.pdf")
        backend = _FakeBackend(_moved_to("/Work", "x.pdf"))

        with mock.patch.object(
            self.files, "read_file", side_effect=FileStoreError("permission denied")
        ):
            summary = self._pipeline(backend).run()

        outcome = summary.outcomes[0]
        self.assertEqual(outcome.kind, OUTCOME_READ_FAILED)
        self.assertEqual(outcome.detail, "permission denied")
        self.assertEqual(summary.errors, 1)
        self.assertEqual(backend.calls, [])
        self.assertTrue((self.source / "scan1.pdf").exists())

    def test_failed_move_is_reported_and_file_stays(self) -> None:
        self._drop("scan1.pdf")
        backend = _FakeBackend(_moved_to("/Work", "Notes.pdf"))

        with mock.patch.object(
            self.files, "move_file", side_effect=FileStoreError("disk full")
        ):
            summary = self._pipeline(backend).run()

        outcome = summary.outcomes[0]
        self.assertEqual(outcome.kind, OUTCOME_MOVE_FAILED)
        self.assertEqual(outcome.detail, "disk full")
        self.assertEqual(summary.moved, 0)
        self.assertTrue((self.source / "scan1.pdf").exists())
        self.assertFalse((self.root / "Work" / "Notes.pdf").exists())

    def test_destination_inside_source_goes_to_fallback_folder(self) -> None:
        (self.source / "Nested").mkdir()
        self._drop("a.pdf")
        self._drop("b.pdf")
        backend = _FakeBackend(
            _moved_to("/Inbox/Scanned content", "Renamed A.pdf"),
            _moved_to("/Inbox/Scanned content/Nested", "Renamed B.pdf"),
        )

        summary = self._pipeline(backend).run()

        self.assertEqual([o.kind for o in summary.outcomes], [OUTCOME_MOVED, OUTCOME_MOVED])
        self.assertTrue(all(o.fallback_used for o in summary.outcomes))
        self.assertEqual(
            [o.destination for o in summary.outcomes], ["/Unprocessed Files"] * 2
        )
        self.assertTrue((self.root / "Unprocessed Files" / "Renamed A.pdf").exists())
        self.assertFalse((self.source / "Renamed A.pdf").exists())
        self.assertFalse((self.source / "Nested" / "Renamed B.pdf").exists())

    def test_source_folder_location_is_remembered(self) -> None:
        self._drop("a.pdf")
        backend = _FakeBackend(_moved_to("/Work", "A.pdf"))
        self._pipeline(backend).run()
        self.assertEqual(self.store.get(SOURCE_FOLDER_ID), "/Inbox/Scanned content")

        self._drop("b.pdf")
        with mock.patch.object(self.files, "find_folder_by_name") as search:
            summary = self._pipeline(backend).run()

        search.assert_not_called()
        self.assertEqual(summary.moved, 1)

    def test_stale_source_folder_location_is_searched_again(self) -> None:
        self.store.set(SOURCE_FOLDER_ID, "/Gone")
        self._drop("a.pdf")
        backend = _FakeBackend(_moved_to("/Work", "A.pdf"))

        summary = self._pipeline(backend).run()

        self.assertEqual(summary.moved, 1)
        self.assertEqual(self.store.get(SOURCE_FOLDER_ID), "/Inbox/Scanned content")


if __name__ == "__main__":
    unittest.main()
