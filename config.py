from __future__ import annotations

import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
DATA_DIR = PROJECT_ROOT / "data"

DB_PATH = Path(os.getenv("LEVEL_TELEMETRY_DB_PATH", str(DATA_DIR / "telemetry.db")))

PENDING_QUEUE_KEY = os.getenv("LEVEL_TELEMETRY_PENDING_KEY", "pending_reports").strip() or "pending_reports"

FLUSH_DELAY_SECONDS = float(os.getenv("LEVEL_TELEMETRY_FLUSH_DELAY_SECONDS", "2.0"))
DEFAULT_PARENT_ORIGIN = os.getenv("LEVEL_TELEMETRY_PARENT_ORIGIN", "*").strip() or "*"
STREAM_BUFFER_SIZE = int(os.getenv("LEVEL_TELEMETRY_STREAM_BUFFER", "64"))
DELIVERY_LOG_LIMIT = int(os.getenv("LEVEL_TELEMETRY_DELIVERY_LOG_LIMIT", "500"))

LOG_LEVEL = os.getenv("LEVEL_TELEMETRY_LOG_LEVEL", "INFO").strip().upper() or "INFO"

GAME_ID = os.getenv("LEVEL_TELEMETRY_GAME_ID", "black_hole_square")
AUTO_INITIALIZE = os.getenv("LEVEL_TELEMETRY_AUTO_INIT", "1").strip().lower() not in {"0", "false", "no", "off"}
