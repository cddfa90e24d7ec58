from __future__ import annotations

import contextlib
import importlib.util
import io
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from analytics.database import Database
from analytics.pending_queue import PendingQueue

SCRIPTS_DIR = Path(__file__).resolve().parents[1] / "scripts"
QUEUE_KEY = "pending_reports"


def load_script(name: str):
    spec = importlib.util.spec_from_file_location(f"scripts_{name}", SCRIPTS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestQueueScripts(unittest.TestCase):
    def setUp(self) -> None:
        self.tempdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tempdir.name) / "scripts.db"
        db = Database(self.db_path)
        try:
            queue = PendingQueue(db, QUEUE_KEY)
            queue.append({"sessionId": "a", "timestamp": "2026-01-01T00:00:00.000Z"})
            queue.append({"sessionId": "b", "timestamp": "2026-01-01T00:00:01.000Z"})
        finally:
            db.close()

    def tearDown(self) -> None:
        self.tempdir.cleanup()

    def _run(self, name: str) -> str:
        module = load_script(name)
        output = io.StringIO()
        with mock.patch.object(module, "DB_PATH", self.db_path), mock.patch.object(
            module, "PENDING_QUEUE_KEY", QUEUE_KEY
        ), contextlib.redirect_stdout(output):
            self.assertEqual(module.main(), 0)
        return output.getvalue()

    def _remaining(self) -> int:
        db = Database(self.db_path)
        try:
            return len(PendingQueue(db, QUEUE_KEY))
        finally:
            db.close()

    def test_dump_logs_and_reports_discarded(self) -> None:
        with self.assertLogs("analytics.channels", level="INFO") as logs:
            text = self._run("dump_pending")

        self.assertEqual(sum("Payload:" in line for line in logs.output), 2)
        self.assertIn("Queued reports written to the log: 2", text)
        self.assertIn("Discarded after logging: 2", text)
        self.assertIn("Remaining queued reports: 0", text)
        self.assertEqual(self._remaining(), 0)

    def test_clear_reports_count(self) -> None:
        text = self._run("clear_pending")
        self.assertIn("Discarded queued reports: 2", text)
        self.assertEqual(self._remaining(), 0)


if __name__ == "__main__":
    unittest.main()
