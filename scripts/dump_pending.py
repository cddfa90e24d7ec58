from __future__ import annotations

import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from analytics.channels import DiagnosticChannel
from analytics.database import Database
from analytics.dispatcher import ReportDispatcher
from analytics.pending_queue import PendingQueue
from config import DB_PATH, LOG_LEVEL, PENDING_QUEUE_KEY


def main() -> int:
    """Write every queued report to the log, then discard the queue.

    Offline there is no host transport, so this is the last retry those reports get.
    """
    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
    db = Database(DB_PATH)
    try:
        pending = PendingQueue(db, PENDING_QUEUE_KEY)
        before = len(pending)
        dispatcher = ReportDispatcher([], pending, fallback=DiagnosticChannel(), flush_delay_seconds=None, db=db)
        delivered = dispatcher.flush_pending()

        print(f"DB: {DB_PATH}")
        print(f"Queued reports written to the log: {before}")
        print(f"Discarded after logging: {before - delivered}")
        print(f"Remaining queued reports: {len(pending)}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
