import contextlib
import io
import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from inbox_organizer import cli  # noqa: E402
from inbox_organizer.config import DEFAULT_CONFIG  # noqa: E402
from inbox_organizer.scheduler import (  # noqa: E402
    HANDLER_PROCESS_FILES,
    HANDLER_START_SCAN,
    Scheduler,
)
from inbox_organizer.state_store import FOLDER_CACHE, StateStore  # noqa: E402


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.root = base / "drive"
        (self.root / "Finance").mkdir(parents=True)
        (self.root / "Scanned content").mkdir()
        self.state_dir = base / "state"
        self.cfg = dict(
            DEFAULT_CONFIG,
            file_store_root=str(self.root),
            state_dir=str(self.state_dir),
            ai_log_path="",
        )
        patches = [
            mock.patch.object(cli, "load_config", return_value=self.cfg),
            mock.patch.object(cli, "configure_logging"),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _run(self, *argv: str):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = cli.main(list(argv))
        return code, out.getvalue()

    def _store(self) -> StateStore:
        store = StateStore(self.state_dir / "state.db")
        self.addCleanup(store.close)
        return store

    def test_setup_registers_triggers(self) -> None:
        code, output = self._run("setup", "--skip-scan")
        self.assertEqual(code, 0)
        self.assertIn("Registered triggers", output)
        handlers = sorted(t.handler for t in Scheduler(self._store()).list_triggers())
        self.assertEqual(handlers, [HANDLER_PROCESS_FILES, HANDLER_START_SCAN])

    def test_index_start_and_status(self) -> None:
        code, output = self._run("index", "start")
        self.assertEqual(code, 0)
        self.assertIn("Scan completed", output)
        self.assertEqual(self._store().get(FOLDER_CACHE), ["/Finance"])

        code, output = self._run("index", "status")
        self.assertEqual(code, 0)
        info = json.loads(output)
        self.assertFalse(info["in_progress"])
        self.assertEqual(info["cached_folders"], 1)

    def test_process_without_cache_is_skipped(self) -> None:
        code, output = self._run("process")
        self.assertEqual(code, 0)
        self.assertIn("Run skipped: no_folder_cache", output)

    def test_daemon_once_without_triggers(self) -> None:
        code, output = self._run("daemon", "--once")
        self.assertEqual(code, 0)
        self.assertIn("no due triggers", output)

    def test_config_error_is_reported(self) -> None:
        self.cfg["batch_size"] = 0
        code, output = self._run("process")
        self.assertEqual(code, 2)
        self.assertIn("Configuration error", output)


if __name__ == "__main__":
    unittest.main()
