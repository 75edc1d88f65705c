"""Collaborator interfaces consumed by the fusion engine.

The behavioural scorer, fatigue detector and chronotype engine are
external components.  The engine only depends on the protocols below;
:class:`CircadianChronotypeEngine` and :class:`HeuristicFatigueDetector`
are the default implementations shipped with the package.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Protocol, Sequence, runtime_checkable

import structlog

from flowstate.flow.models import (
    BehavioralBaseline,
    BehavioralFeatures,
    BehavioralResult,
    Chronotype,
    FatigueAssessment,
    FatigueLevel,
    PastSession,
    SleepRecord,
)

logger = structlog.get_logger(__name__)


# ── Protocols ────────────────────────────────────────────────


@runtime_checkable
class BehavioralScorer(Protocol):
    def score(self, features: BehavioralFeatures) -> BehavioralResult: ...


@runtime_checkable
class FatigueDetector(Protocol):
    def detect(
        self,
        session_duration_seconds: float,
        features: BehavioralFeatures,
        session_history: Sequence[PastSession],
        sleep_history: Sequence[SleepRecord] | None = None,
        baseline: BehavioralBaseline | None = None,
        hours_since_wake: float | None = None,
    ) -> FatigueAssessment: ...


@runtime_checkable
class ChronotypeEngine(Protocol):
    def circadian_multiplier(self, chronotype: Chronotype, hour: int) -> float: ...

    def is_optimal_hour(self, chronotype: Chronotype, hour: int) -> bool: ...


# ── Chronotype ───────────────────────────────────────────────

# Inclusive hour windows
_PEAK_WINDOWS: dict[Chronotype, tuple[int, int]] = {
    Chronotype.EXTREME_MORNING: (7, 10),
    Chronotype.MODERATE_MORNING: (9, 12),
    Chronotype.INTERMEDIATE: (11, 14),
    Chronotype.MODERATE_EVENING: (16, 19),
    Chronotype.EXTREME_EVENING: (19, 22),
}

_DIP_WINDOWS: dict[Chronotype, tuple[int, int]] = {
    Chronotype.EXTREME_MORNING: (13, 15),
    Chronotype.MODERATE_MORNING: (14, 16),
    Chronotype.INTERMEDIATE: (13, 15),
    Chronotype.MODERATE_EVENING: (12, 14),
    Chronotype.EXTREME_EVENING: (11, 13),
}

_SECOND_WIND_WINDOWS: dict[Chronotype, tuple[int, int]] = {
    Chronotype.MODERATE_EVENING: (20, 22),
    Chronotype.EXTREME_EVENING: (21, 23),
}

PEAK_MULTIPLIER = 1.10
DIP_MULTIPLIER = 0.85
SECOND_WIND_MULTIPLIER = 1.05
BIOLOGICAL_NIGHT_MULTIPLIER = 0.75
LATE_NIGHT_MULTIPLIER = 0.90


def _in_window(hour: int, window: tuple[int, int] | None) -> bool:
    return window is not None and window[0] <= hour <= window[1]


class CircadianChronotypeEngine:
    """Time-of-day multipliers (0.75–1.10) per chronotype."""

    def circadian_multiplier(self, chronotype: Chronotype, hour: int) -> float:
        hour %= 24
        if _in_window(hour, _PEAK_WINDOWS[chronotype]):
            return PEAK_MULTIPLIER
        if _in_window(hour, _DIP_WINDOWS[chronotype]):
            return DIP_MULTIPLIER
        if _in_window(hour, _SECOND_WIND_WINDOWS.get(chronotype)):
            return SECOND_WIND_MULTIPLIER
        if 3 <= hour <= 5:
            return BIOLOGICAL_NIGHT_MULTIPLIER
        if hour >= 23 or hour <= 2:
            return LATE_NIGHT_MULTIPLIER
        return 1.0

    def is_optimal_hour(self, chronotype: Chronotype, hour: int) -> bool:
        return _in_window(hour % 24, _PEAK_WINDOWS[chronotype])

    def peak_window(self, chronotype: Chronotype) -> tuple[int, int]:
        return _PEAK_WINDOWS[chronotype]


# ── Fatigue ──────────────────────────────────────────────────

MAX_OPTIMAL_SESSION_MINUTES = 90
MAX_DAILY_DEEP_WORK_HOURS = 4.0
MIN_RECOVERY_MINUTES = 30
LATE_HOUR = 23
EARLY_HOUR = 5
BIOLOGICAL_NIGHT = (3, 5)

_FATIGUE_RECOMMENDATIONS = {
    FatigueLevel.FRESH: "You're well-rested. Great time for challenging work!",
    FatigueLevel.MILD: "Slight fatigue detected. Stay hydrated and take regular breaks.",
    FatigueLevel.MODERATE: "Moderate fatigue. Consider a 10-15 minute break soon.",
    FatigueLevel.HIGH: "High fatigue detected. Take a 20-minute break or power nap.",
    FatigueLevel.SEVERE: "You're pushing too hard. Rest now to avoid burnout.",
}


def fatigue_recommendation(level: FatigueLevel) -> str:
    return _FATIGUE_RECOMMENDATIONS[level]


def _completion_trend(sessions: Sequence[PastSession]) -> float:
    """Completion rate of the newer half minus the older half (last 10)."""
    recent = list(sessions)[-10:]
    if len(recent) < 5:
        return 0.0
    half = len(recent) // 2
    first, second = recent[:half], recent[-half:]
    first_rate = sum(1 for s in first if s.completed) / len(first)
    second_rate = sum(1 for s in second if s.completed) / len(second)
    return second_rate - first_rate


class HeuristicFatigueDetector:
    """Additive fatigue score from session load, timing, recovery and sleep.

    Parameters
    ----------
    clock:
        Returns the current time; sessions started on the same UTC date
        count towards today's load.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def detect(
        self,
        session_duration_seconds: float,
        features: BehavioralFeatures,
        session_history: Sequence[PastSession],
        sleep_history: Sequence[SleepRecord] | None = None,
        baseline: BehavioralBaseline | None = None,
        hours_since_wake: float | None = None,
    ) -> FatigueAssessment:
        score = 0.0
        signals: list[str] = []
        duration = max(0.0, session_duration_seconds)

        # Session length
        optimal_s = MAX_OPTIMAL_SESSION_MINUTES * 60
        if duration > optimal_s:
            overtime = (duration - optimal_s) / (30 * 60)
            score += min(0.3, overtime * 0.1)
            signals.append("long_session")

        # Deep work today
        today = self._clock().astimezone(timezone.utc).date()
        todays = [s for s in session_history if _utc_date(s.started_at) == today]
        deep_work_hours = (sum(s.duration_seconds for s in todays) + duration) / 3600
        if deep_work_hours > MAX_DAILY_DEEP_WORK_HOURS:
            score += min(0.25, (deep_work_hours - MAX_DAILY_DEEP_WORK_HOURS) * 0.1)
            signals.append("excessive_deep_work")

        session_count = len(todays) + (1 if duration > 0 else 0)
        if session_count > 6:
            score += 0.15
            signals.append("many_sessions")
        elif session_count > 4:
            score += 0.08

        # Time of day
        hour = features.hour_of_day
        if hour >= LATE_HOUR:
            score += 0.15
            signals.append("late_hour")
        if 0 < hour <= EARLY_HOUR:
            score += 0.15
            signals.append("early_hour")
        if BIOLOGICAL_NIGHT[0] <= hour <= BIOLOGICAL_NIGHT[1]:
            score += 0.1

        # Interaction irregularity
        if baseline is not None and baseline.avg_touch_variance > 0 and features.touch_interval_variance > 0:
            if features.touch_interval_variance > baseline.avg_touch_variance * 1.5:
                score += 0.12
                signals.append("inconsistent_touches")
            elif features.touch_interval_variance > baseline.avg_touch_variance * 1.3:
                score += 0.06

        if _completion_trend(session_history) < -0.15:
            score += 0.1
            signals.append("declining_completion")

        # Recovery since the previous session
        gap = features.minutes_since_last_session
        if gap is not None and 0 < gap < MIN_RECOVERY_MINUTES:
            score += 0.1
            signals.append("short_recovery")

        if hours_since_wake is not None:
            if hours_since_wake > 14:
                score += 0.15
                signals.append("long_hours_awake")
            elif hours_since_wake > 12:
                score += 0.08
            elif hours_since_wake > 10:
                score += 0.04

        if sleep_history:
            recent = list(sleep_history)[:3]
            avg_quality = sum(r.quality for r in recent) / len(recent)
            avg_hours = sum(r.hours_slept for r in recent) / len(recent)
            if avg_quality < 0.6 or avg_hours < 6:
                score += 0.12
                signals.append("poor_sleep_history")
            elif avg_quality < 0.75 or avg_hours < 7:
                score += 0.06

        score = max(0.0, min(1.0, score))
        level = FatigueLevel.from_score(score)
        signals = list(dict.fromkeys(signals))
        logger.debug("fatigue.detected", level=level.value, score=round(score, 2), signals=signals)

        return FatigueAssessment(
            level=level,
            score=score,
            signals=signals,
            recommendation=fatigue_recommendation(level),
        )


def _utc_date(ts: datetime):
    if ts.tzinfo is None:
        return ts.date()
    return ts.astimezone(timezone.utc).date()
