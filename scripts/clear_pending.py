from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from analytics.database import Database
from analytics.pending_queue import PendingQueue
from config import DB_PATH, PENDING_QUEUE_KEY


def main() -> int:
    db = Database(DB_PATH)
    try:
        discarded = PendingQueue(db, PENDING_QUEUE_KEY).drain()
        print(f"DB: {DB_PATH}")
        print(f"Discarded queued reports: {len(discarded)}")
        print(f"Cleared state key: {PENDING_QUEUE_KEY}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
