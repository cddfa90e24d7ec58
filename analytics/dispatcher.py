from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from .channels import Channel, DiagnosticChannel, parse_handshake
from .database import Database
from .models import SessionSnapshot, utc_now
from .pending_queue import PendingQueue
from .report import build_report_payload, log_report_summary

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], object]], threading.Timer]


@dataclass(slots=True)
class DeliveryResult:
    delivered: bool
    accepted_by: list[str] = field(default_factory=list)


class ReportDispatcher:
    """Best-effort delivery of session reports over whatever transports the host exposes.

    A report counts as delivered when at least one channel accepts it. Reports no
    channel accepted go to the pending queue; each queued report gets exactly one more
    try on the next flush and is dropped afterwards either way.
    """

    def __init__(
        self,
        channels: Sequence[Channel],
        pending: PendingQueue,
        *,
        fallback: Channel | None = None,
        flush_delay_seconds: float | None = 2.0,
        db: Database | None = None,
        delivery_log_limit: int = 500,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.channels = list(channels)
        self.pending = pending
        self.fallback = fallback if fallback is not None else DiagnosticChannel()
        self.flush_delay_seconds = flush_delay_seconds
        self.db = db
        self.delivery_log_limit = delivery_log_limit
        self._timer_factory = timer_factory or threading.Timer
        self._timer: threading.Timer | None = None
        self._timer_lock = threading.Lock()

    def submit(self, snapshot: SessionSnapshot) -> dict[str, Any]:
        payload = build_report_payload(snapshot)
        log_report_summary(payload)
        result = self.deliver(payload, origin="submit")
        if not result.delivered:
            if self.pending.append(payload):
                logger.info("No channel accepted report for %s; queued for retry", payload["sessionId"])
        self._schedule_flush()
        return payload

    def deliver(self, payload: dict[str, Any], origin: str = "submit") -> DeliveryResult:
        result = DeliveryResult(delivered=False)
        for channel in self.channels:
            if self._try_channel(channel, payload):
                result.accepted_by.append(channel.name)
        result.delivered = bool(result.accepted_by)
        if not result.delivered:
            # The fallback only leaves a trace; it does not stop the report being queued.
            self._try_channel(self.fallback, payload)
        self._log_delivery(payload, origin, result)
        return result

    def flush_pending(self) -> int:
        entries = self.pending.drain()
        if not entries:
            return 0
        delivered = 0
        for payload in entries:
            if self.deliver(payload, origin="flush").delivered:
                delivered += 1
        dropped = len(entries) - delivered
        if dropped:
            logger.warning("Dropped %d of %d queued reports after retry", dropped, len(entries))
        else:
            logger.info("Flushed %d queued reports", delivered)
        return delivered

    def on_reconnect(self) -> int:
        return self.flush_pending()

    def on_visible(self) -> int:
        return self.flush_pending()

    def handle_message(self, message: object) -> bool:
        origin = parse_handshake(message)
        if origin is None:
            return False
        for channel in self.channels:
            set_origin = getattr(channel, "set_target_origin", None)
            if callable(set_origin):
                set_origin(origin)
        logger.info("Parent origin set to %s", origin)
        return True

    def close(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule_flush(self) -> None:
        if self.flush_delay_seconds is None:
            return
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = self._timer_factory(self.flush_delay_seconds, self._delayed_flush)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _delayed_flush(self) -> None:
        with self._timer_lock:
            # A submit may already have replaced this timer; keep the newer one cancellable.
            if self._timer is threading.current_thread():
                self._timer = None
        try:
            self.flush_pending()
        except Exception:
            logger.exception("Delayed flush of pending reports failed")

    def _try_channel(self, channel: Channel, payload: dict[str, Any]) -> bool:
        try:
            if not channel.is_available():
                return False
            channel.send(payload)
            return True
        except Exception as exc:
            logger.debug("Channel %s rejected report: %s", channel.name, exc)
            return False

    def _log_delivery(self, payload: dict[str, Any], origin: str, result: DeliveryResult) -> None:
        if self.db is None:
            return
        try:
            self.db.execute(
                """
                INSERT INTO delivery_log (
                    attempted_at_utc,
                    origin,
                    session_id,
                    report_timestamp,
                    delivered,
                    channels
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    utc_now(),
                    origin,
                    payload.get("sessionId"),
                    payload.get("timestamp"),
                    1 if result.delivered else 0,
                    ",".join(result.accepted_by),
                ),
            )
            self.db.execute(
                """
                DELETE FROM delivery_log
                WHERE id <= (SELECT COALESCE(MAX(id), 0) FROM delivery_log) - ?
                """,
                (self.delivery_log_limit,),
            )
        except Exception as exc:
            logger.warning("Could not record delivery attempt: %s", exc)


def recent_deliveries(db: Database, limit: int = 50) -> list[dict[str, Any]]:
    rows = db.query_all(
        """
        SELECT id, attempted_at_utc, origin, session_id, report_timestamp, delivered, channels
        FROM delivery_log
        ORDER BY id DESC
        LIMIT ?
        """,
        (limit,),
    )
    deliveries = []
    for row in rows:
        item = dict(row)
        item["delivered"] = bool(item["delivered"])
        item["channels"] = [name for name in str(item["channels"] or "").split(",") if name]
        deliveries.append(item)
    return deliveries
