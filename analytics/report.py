"""Build the JSON report sent to the host from a session snapshot.

Field names follow the host's payload contract (camelCase). Reward fields keep the
host's historic "xp" naming inside ``perLevelAnalytics`` and ``diagnostics``.
"""
from __future__ import annotations

import logging
from typing import Any

from .models import Attempt, LevelAggregate, SessionSnapshot, SubEvent, utc_now

logger = logging.getLogger(__name__)

# Sub-events carry no option list; the host contract wants an empty JSON array string.
EMPTY_OPTIONS = "[]"


def build_report_payload(snapshot: SessionSnapshot, timestamp: str | None = None) -> dict[str, Any]:
    """Return the report dict for ``snapshot``.

    ``timestamp`` defaults to now; the snapshot's own capture time is not reused.
    The result shares no objects with the snapshot.
    """
    return {
        "gameId": snapshot.game_id,
        "sessionId": snapshot.session_id,
        "timestamp": timestamp or utc_now(),
        "name": snapshot.display_name,
        "rewardEarnedTotal": snapshot.reward_earned_total,
        "rewardEarned": snapshot.reward_earned,
        "rewardTotal": snapshot.reward_total,
        "bestReward": snapshot.best_reward,
        "lastPlayedLevel": snapshot.last_played_level_id,
        "highestLevelPlayed": snapshot.highest_level_id,
        "perLevelAnalytics": {
            level_id: _level_stats_payload(stats) for level_id, stats in snapshot.level_stats.items()
        },
        "rawData": [{"key": metric.key, "value": metric.value} for metric in snapshot.raw_metrics],
        "diagnostics": {
            "levels": [_attempt_payload(attempt) for attempt in snapshot.attempts],
        },
    }


def _level_stats_payload(stats: LevelAggregate) -> dict[str, Any]:
    return {
        "attempts": stats.attempts,
        "wins": stats.wins,
        "losses": stats.losses,
        "totalTimeMs": stats.total_elapsed_ms,
        "bestTimeMs": stats.reported_best_elapsed_ms,
        "totalXp": stats.total_reward,
        "averageTimeMs": stats.average_elapsed_ms,
    }


def _attempt_payload(attempt: Attempt) -> dict[str, Any]:
    return {
        "levelId": attempt.level_id,
        "successful": attempt.successful,
        "timeTaken": attempt.elapsed_ms,
        "timeDirection": False,
        "xpEarned": attempt.reward_earned,
        "tasks": [_sub_event_payload(event) for event in attempt.sub_events],
    }


def _sub_event_payload(event: SubEvent) -> dict[str, Any]:
    return {
        "taskId": event.sub_event_id,
        "question": event.label,
        "options": EMPTY_OPTIONS,
        "correctChoice": event.expected,
        "choiceMade": event.actual,
        "successful": event.successful,
        "timeTaken": event.elapsed_ms,
        "xpEarned": event.reward,
    }


def log_report_summary(payload: dict[str, Any]) -> None:
    levels = payload.get("diagnostics", {}).get("levels", [])
    logger.info(
        "Report submitted: game=%s session=%s (%s) reward=%s last=%s highest=%s attempts=%d metrics=%d",
        payload.get("gameId"),
        payload.get("name"),
        payload.get("sessionId"),
        payload.get("rewardEarnedTotal"),
        payload.get("lastPlayedLevel") or "-",
        payload.get("highestLevelPlayed") or "-",
        len(levels),
        len(payload.get("rawData", [])),
    )
