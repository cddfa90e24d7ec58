from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import math


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class SubEvent:
    sub_event_id: str
    label: str
    expected: str
    actual: str
    successful: bool
    elapsed_ms: int
    reward: float


@dataclass(slots=True)
class Attempt:
    level_id: str
    successful: bool = False
    elapsed_ms: int = 0
    reward_earned: float = 0
    sub_events: list[SubEvent] = field(default_factory=list)
    closed: bool = False


@dataclass(slots=True)
class LevelAggregate:
    attempts: int = 0
    wins: int = 0
    losses: int = 0
    total_elapsed_ms: int = 0
    # None until the first win; reported as 0.
    best_elapsed_ms: int | None = None
    total_reward: float = 0
    average_elapsed_ms: int = 0

    def record(self, successful: bool, elapsed_ms: int, reward: float) -> None:
        self.attempts += 1
        if successful:
            self.wins += 1
            self.total_reward += reward
            if self.best_elapsed_ms is None or elapsed_ms < self.best_elapsed_ms:
                self.best_elapsed_ms = elapsed_ms
        else:
            self.losses += 1
        self.total_elapsed_ms += elapsed_ms
        self.average_elapsed_ms = round_half_up(self.total_elapsed_ms / self.attempts)

    @property
    def reported_best_elapsed_ms(self) -> int:
        return 0 if self.best_elapsed_ms is None else self.best_elapsed_ms


@dataclass(frozen=True, slots=True)
class RawMetric:
    key: str
    value: str


@dataclass(slots=True)
class SessionSnapshot:
    game_id: str
    session_id: str
    display_name: str
    created_at: str
    captured_at: str
    reward_earned_total: float
    last_played_level_id: str
    highest_level_id: str
    attempts: list[Attempt]
    level_stats: dict[str, LevelAggregate]
    raw_metrics: list[RawMetric]

    @property
    def reward_earned(self) -> float:
        return self.reward_earned_total

    @property
    def reward_total(self) -> float:
        return self.reward_earned_total

    @property
    def best_reward(self) -> float:
        return self.reward_earned_total


def round_half_up(value: float) -> int:
    # round() would use banker's rounding; averages round .5 upwards.
    return math.floor(value + 0.5)
