from __future__ import annotations

import copy
import logging
import secrets
import string
import time

from .level_ids import is_further_than
from .models import Attempt, LevelAggregate, RawMetric, SessionSnapshot, SubEvent, utc_now

logger = logging.getLogger(__name__)

SESSION_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
SESSION_SUFFIX_LENGTH = 9


def new_session_id() -> str:
    suffix = "".join(secrets.choice(SESSION_SUFFIX_ALPHABET) for _ in range(SESSION_SUFFIX_LENGTH))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class SessionRecorder:
    """Owns all mutable telemetry state of one play session.

    Callers drive it through the attempt lifecycle (start, sub-events, end) and take
    snapshots for delivery. Calls are expected to be serialized by the caller; the
    recorder itself does no locking. Misuse (no initialize, unknown level id) is logged
    and ignored so that analytics can never interrupt gameplay.
    """

    def __init__(self) -> None:
        self.initialized = False
        self.game_id = ""
        self.session_id = ""
        self.display_name = ""
        self.created_at = ""
        self._clear_state()

    def initialize(self, game_id: str, session_name: str) -> str:
        self.game_id = game_id
        self.display_name = session_name
        self.session_id = new_session_id()
        self.created_at = utc_now()
        self._clear_state()
        self.initialized = True
        logger.info("Analytics initialized for %s (session %s)", game_id, self.session_id)
        return self.session_id

    def reset(self) -> None:
        if not self._require_initialized("reset"):
            return
        self._clear_state()
        logger.info("Analytics data reset for session %s", self.session_id)

    def start_attempt(self, level_id: str) -> None:
        if not self._require_initialized("start_attempt"):
            return
        self.attempts.append(Attempt(level_id=level_id))
        logger.debug("Level started: %s", level_id)

    def end_attempt(self, level_id: str, successful: bool, elapsed_ms: int, reward: float) -> bool:
        if not self._require_initialized("end_attempt"):
            return False
        attempt = self._open_attempt_for(level_id, operation="end_attempt")
        if attempt is None:
            return False

        attempt.successful = bool(successful)
        attempt.elapsed_ms = int(elapsed_ms)
        attempt.reward_earned = reward
        attempt.closed = True

        self.reward_earned_total += reward
        self.last_played_level_id = level_id
        if is_further_than(level_id, self.highest_level_id):
            self.highest_level_id = level_id

        stats = self.level_stats.get(level_id)
        if stats is None:
            stats = LevelAggregate()
            self.level_stats[level_id] = stats
        stats.record(attempt.successful, attempt.elapsed_ms, reward)

        logger.info(
            "Level completed: %s successful=%s time=%.2fs reward=%s",
            level_id,
            attempt.successful,
            attempt.elapsed_ms / 1000,
            reward,
        )
        return True

    def abandon_attempt(self, level_id: str, elapsed_ms: int) -> bool:
        """Close the newest open attempt at ``level_id`` as a zero-reward failure.

        Used when the host is shutting down mid-level. Returns False without logging
        when there is nothing open to close.
        """
        if not self._require_initialized("abandon_attempt"):
            return False
        if self._latest_open_attempt(level_id) is None:
            return False
        return self.end_attempt(level_id, False, elapsed_ms, 0)

    def attach_sub_event(
        self,
        level_id: str,
        sub_event_id: str,
        label: str,
        expected: str,
        actual: str,
        elapsed_ms: int,
        reward: float,
    ) -> bool:
        if not self._require_initialized("attach_sub_event"):
            return False
        attempt = self._open_attempt_for(level_id, operation="attach_sub_event")
        if attempt is None:
            return False
        attempt.sub_events.append(
            SubEvent(
                sub_event_id=sub_event_id,
                label=label,
                expected=expected,
                actual=actual,
                successful=expected == actual,
                elapsed_ms=int(elapsed_ms),
                reward=reward,
            )
        )
        return True

    def add_raw_metric(self, key: str, value: object) -> None:
        if not self._require_initialized("add_raw_metric"):
            return
        self.raw_metrics.append(RawMetric(key=key, value=_stringify(value)))

    def snapshot(self) -> SessionSnapshot | None:
        if not self._require_initialized("snapshot"):
            return None
        return SessionSnapshot(
            game_id=self.game_id,
            session_id=self.session_id,
            display_name=self.display_name,
            created_at=self.created_at,
            captured_at=utc_now(),
            reward_earned_total=self.reward_earned_total,
            last_played_level_id=self.last_played_level_id,
            highest_level_id=self.highest_level_id,
            attempts=copy.deepcopy(self.attempts),
            level_stats=copy.deepcopy(self.level_stats),
            raw_metrics=list(self.raw_metrics),
        )

    def current_open_level(self) -> str | None:
        for attempt in reversed(self.attempts):
            if not attempt.closed:
                return attempt.level_id
        return None

    def _clear_state(self) -> None:
        self.attempts: list[Attempt] = []
        self.level_stats: dict[str, LevelAggregate] = {}
        self.raw_metrics: list[RawMetric] = []
        self.reward_earned_total: float = 0
        self.last_played_level_id = ""
        self.highest_level_id = ""

    def _latest_open_attempt(self, level_id: str) -> Attempt | None:
        # Newest first, so a repeated start targets its own entry while older ones stay closable.
        for attempt in reversed(self.attempts):
            if attempt.level_id == level_id and not attempt.closed:
                return attempt
        return None

    def _open_attempt_for(self, level_id: str, operation: str) -> Attempt | None:
        attempt = self._latest_open_attempt(level_id)
        if attempt is not None:
            return attempt
        if any(entry.level_id == level_id for entry in self.attempts):
            logger.warning("%s called for already closed level: %s", operation, level_id)
        else:
            logger.warning("%s called for unknown level: %s", operation, level_id)
        return None

    def _require_initialized(self, operation: str) -> bool:
        if self.initialized:
            return True
        logger.warning("Analytics not initialized; ignoring %s", operation)
        return False


def _stringify(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)
