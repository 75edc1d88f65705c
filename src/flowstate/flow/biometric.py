"""Biometric flow scoring — baseline-relative HRV / HR sub-models.

Maps an :class:`HRVMetrics` snapshot plus the current heart rate to a
0–100 flow score, a discrete :class:`BiometricState` and a confidence
tier.

Sub-models
----------
=========================  ======  ==============================================
Component                  Weight  Shape
=========================  ======  ==============================================
Parasympathetic (RMSSD)    0.35    Piecewise linear in RMSSD / resting RMSSD
Sympathetic optimality     0.35    Inverted-U over the LF-power percentile
Heart-rate zone            0.15    Optimal at 110–130 % of resting HR
Sleep readiness            0.10    Supplied sleep quality, else baseline average
Signal quality             0.05    1 − artifact fraction (0.3 when invalid)
=========================  ======  ==============================================

State transitions into flow require persistence across readings, so a
single noisy window cannot flip the reported state.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

import structlog

from flowstate.flow.baseline import CALIBRATION_DAYS, default_baseline, percentile_rank
from flowstate.flow.history import DEFAULT_HISTORY_SIZE, SessionHistory
from flowstate.flow.models import (
    BiometricBaseline,
    BiometricBreakdown,
    BiometricConfidence,
    BiometricFlowResult,
    BiometricState,
    HRVMetrics,
    RMSSDSource,
    SpectralSource,
)

logger = structlog.get_logger(__name__)

# ── Weights ──────────────────────────────────────────────────

PARASYMPATHETIC_WEIGHT = 0.35
SYMPATHETIC_WEIGHT = 0.35
HR_ZONE_WEIGHT = 0.15
SLEEP_WEIGHT = 0.10
SIGNAL_QUALITY_WEIGHT = 0.05

# ── Thresholds ───────────────────────────────────────────────

DEEP_FLOW_THRESHOLD = 80.0
LIGHT_FLOW_THRESHOLD = 60.0
PRE_FLOW_THRESHOLD = 40.0

OVERLOAD_PERCENTILE = 0.90
BOREDOM_PERCENTILE = 0.10
OPTIMAL_SYMPATHETIC = (0.40, 0.60)
OPTIMAL_HR_RATIO = (1.10, 1.30)

DEEP_FLOW_PERSISTENCE = 3  # readings; N-1 must already be flow
LIGHT_FLOW_PERSISTENCE = 2

INVALID_SIGNAL_QUALITY = 0.3
MEDIUM_ARTIFACT_PCT = 0.03
STALE_BASELINE_DAYS = 14
AGING_BASELINE_DAYS = 7

SECONDS_PER_READING = 60
RESULT_HISTORY_LEN = 5

_FLOW_STATES = frozenset({BiometricState.DEEP_FLOW, BiometricState.LIGHT_FLOW})
_PROGRESS_STATES = _FLOW_STATES | {BiometricState.PRE_FLOW}


# ── Sub-scores ───────────────────────────────────────────────


def parasympathetic_score(rmssd: float, resting_rmssd: float) -> float:
    """Vagal tone relative to the personal resting RMSSD."""
    if resting_rmssd <= 0 or not math.isfinite(rmssd):
        return 0.5
    ratio = max(0.0, rmssd) / resting_rmssd

    if ratio < 0.5:
        return 0.2
    if ratio < 0.8:
        return 0.2 + (ratio - 0.5) / 0.3 * 0.3
    if ratio < 1.0:
        return 0.5 + (ratio - 0.8) / 0.2 * 0.3
    if ratio < 1.2:
        return 0.8 + (ratio - 1.0) / 0.2 * 0.2
    return min(1.0, 0.95 + (ratio - 1.2) * 0.1)


def estimate_lf_from_time_domain(rmssd: float, sdnn: float | None) -> float:
    """LF ≈ SDNN² − RMSSD².

    RMSSD mostly captures HF variability, so what SDNN has left over is
    attributed to LF.  An approximation only; results built on it carry
    ``SpectralSource.ESTIMATED_TIME_DOMAIN``.
    """
    if sdnn is None:
        return 0.0
    return max(0.0, sdnn * sdnn - rmssd * rmssd)


def sympathetic_optimality(
    hrv: HRVMetrics,
    baseline: BiometricBaseline,
) -> tuple[float, float, SpectralSource]:
    """Inverted-U score over the LF percentile.

    Returns ``(score, percentile, lf_source)``.  Without a full LF
    distribution the percentile falls back to half the ratio against
    resting LF power, a rough heuristic kept for continuity with
    existing baselines.
    """
    if hrv.lf_power is not None:
        lf_power = hrv.lf_power
        lf_source = SpectralSource.MEASURED
    else:
        lf_power = estimate_lf_from_time_domain(hrv.rmssd, hrv.sdnn)
        lf_source = SpectralSource.ESTIMATED_TIME_DOMAIN

    if len(baseline.lf_percentiles) >= 5:
        percentile = percentile_rank(lf_power, baseline.lf_percentiles)
    else:
        ratio = lf_power / max(1.0, baseline.resting_lf_power)
        percentile = min(1.0, max(0.0, ratio * 0.5))

    score = 1.0 - abs(percentile - 0.5) * 2.0
    lo, hi = OPTIMAL_SYMPATHETIC
    if lo <= percentile <= hi:
        score = max(score, 0.9)

    if percentile > OVERLOAD_PERCENTILE:
        score *= 0.3
    elif percentile < BOREDOM_PERCENTILE:
        score *= 0.5

    return max(0.0, min(1.0, score)), percentile, lf_source


def hr_zone_score(current_hr: float, resting_hr: float) -> float:
    """Engagement from heart rate as a fraction of resting HR."""
    if resting_hr <= 0 or not math.isfinite(current_hr) or current_hr <= 0:
        return 0.5
    ratio = current_hr / resting_hr
    lo, hi = OPTIMAL_HR_RATIO

    if lo <= ratio <= hi:
        return 1.0
    if ratio < 1.0:
        return max(0.3, ratio)
    if ratio < lo:
        progress = (ratio - 1.0) / (lo - 1.0)
        return 0.7 + progress * 0.3
    if ratio <= 1.5:
        return max(0.5, 1.0 - (ratio - hi) * 2.5)
    return 0.2


def sleep_readiness(sleep_quality: float | None, baseline: BiometricBaseline) -> float:
    if sleep_quality is None or not math.isfinite(sleep_quality):
        return baseline.avg_sleep_quality
    return max(0.0, min(1.0, sleep_quality))


def signal_quality(hrv: HRVMetrics) -> float:
    if not hrv.is_valid:
        return INVALID_SIGNAL_QUALITY
    return max(0.0, min(1.0, 1.0 - hrv.artifact_percentage))


# ── Recommendations ──────────────────────────────────────────


def _recommendation(state: BiometricState, breakdown: BiometricBreakdown) -> str:
    if state == BiometricState.DEEP_FLOW:
        return "You're in deep flow! Avoid interruptions. This is your peak performance zone."
    if state == BiometricState.LIGHT_FLOW:
        return "You're entering flow. Keep going, full immersion is building."
    if state == BiometricState.PRE_FLOW:
        if breakdown.parasympathetic_score > 0.7:
            return "Good relaxation. Increase challenge slightly to enter flow."
        return "Focus is building. Remove distractions and commit fully to the task."
    if state == BiometricState.OVERLOAD:
        return "Stress detected! Take a break. Try slow breathing or step away for 5 minutes."
    if state == BiometricState.BOREDOM:
        return "Low engagement detected. Try a more challenging task or increase difficulty."

    if breakdown.parasympathetic_score < 0.5:
        return "Your nervous system seems stressed. Try 5 minutes of slow breathing (5-6 breaths/min)."
    if breakdown.hr_zone_score < 0.5:
        return "Your heart rate suggests low engagement. Try a more challenging aspect of your task."
    if breakdown.sleep_readiness < 0.5:
        return "Sleep deficit may be limiting your focus capacity. Consider a power nap."
    return "Normal state. Start your task and focus will build naturally."


# ── Scorer ───────────────────────────────────────────────────


class BiometricScorer:
    """Scores HRV windows against one user's baseline.

    Holds the baseline by reference and a bounded state history used for
    persistence checks.  ``score`` never mutates the baseline.
    """

    def __init__(
        self,
        baseline: BiometricBaseline | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        calibration_days: int = CALIBRATION_DAYS,
    ) -> None:
        self.baseline = baseline if baseline is not None else default_baseline()
        self._history: SessionHistory[BiometricState] = SessionHistory(history_size)
        self._calibration_days = calibration_days

    @property
    def state_history(self) -> list[BiometricState]:
        return self._history.states

    @property
    def score_history(self) -> list[float]:
        return self._history.scores

    def score(
        self,
        hrv: HRVMetrics,
        current_hr: float,
        sleep_quality: float | None = None,
        *,
        now: datetime | None = None,
    ) -> BiometricFlowResult:
        """Score one reading and append its state to the history."""
        now = now or datetime.now(timezone.utc)
        baseline = self.baseline

        para = parasympathetic_score(hrv.rmssd, baseline.resting_rmssd)
        symp, percentile, lf_source = sympathetic_optimality(hrv, baseline)
        breakdown = BiometricBreakdown(
            parasympathetic_score=para,
            sympathetic_optimality=symp,
            hr_zone_score=hr_zone_score(current_hr, baseline.resting_hr),
            sleep_readiness=sleep_readiness(sleep_quality, baseline),
            signal_quality=signal_quality(hrv),
            sympathetic_percentile=percentile,
            lf_source=lf_source,
        )

        raw = (
            breakdown.parasympathetic_score * PARASYMPATHETIC_WEIGHT
            + breakdown.sympathetic_optimality * SYMPATHETIC_WEIGHT
            + breakdown.hr_zone_score * HR_ZONE_WEIGHT
            + breakdown.sleep_readiness * SLEEP_WEIGHT
            + breakdown.signal_quality * SIGNAL_QUALITY_WEIGHT
        )
        score = max(0.0, min(100.0, raw * 100.0))

        state = self._determine_state(score, percentile, para)
        self._history.append(score, state)
        confidence = self._determine_confidence(hrv, now)

        result = BiometricFlowResult(
            score=score,
            state=state,
            confidence=confidence,
            breakdown=breakdown,
            state_history=self._history.recent_states(RESULT_HISTORY_LEN),
            recommendation=_recommendation(state, breakdown),
            timestamp=now,
        )
        logger.debug(
            "biometric.score_computed",
            score=round(score, 1),
            state=state.value,
            confidence=confidence.value,
            lf_source=lf_source.value,
        )
        return result

    def _determine_state(
        self,
        score: float,
        sympathetic_percentile: float,
        parasympathetic: float,
    ) -> BiometricState:
        if sympathetic_percentile > OVERLOAD_PERCENTILE:
            return BiometricState.OVERLOAD
        if sympathetic_percentile < BOREDOM_PERCENTILE and parasympathetic > 0.7:
            return BiometricState.BOREDOM

        history = self._history
        if score >= DEEP_FLOW_THRESHOLD:
            flow_count = history.count_recent(DEEP_FLOW_PERSISTENCE, _FLOW_STATES)
            if flow_count >= DEEP_FLOW_PERSISTENCE - 1:
                return BiometricState.DEEP_FLOW

        if score >= LIGHT_FLOW_THRESHOLD:
            progress_count = history.count_recent(LIGHT_FLOW_PERSISTENCE, _PROGRESS_STATES)
            if progress_count >= LIGHT_FLOW_PERSISTENCE - 1:
                return BiometricState.LIGHT_FLOW

        if score >= PRE_FLOW_THRESHOLD:
            scores = history.scores
            if len(scores) >= 3:
                recent = scores[-3:]
                older = scores[: min(5, len(scores))]
                if sum(recent) / len(recent) > sum(older) / len(older) + 5:
                    logger.debug("biometric.rising_trend", score=round(score, 1))
            return BiometricState.PRE_FLOW

        return BiometricState.BASELINE

    def _determine_confidence(self, hrv: HRVMetrics, now: datetime) -> BiometricConfidence:
        baseline = self.baseline
        if (
            not baseline.is_calibrated
            or baseline.days_of_data < self._calibration_days
            or not hrv.is_valid
        ):
            return BiometricConfidence.LOW

        age_days = self._baseline_age_days(now)
        if age_days is not None and age_days > STALE_BASELINE_DAYS:
            return BiometricConfidence.LOW
        if hrv.rmssd_source != RMSSDSource.BEAT_TO_BEAT:
            return BiometricConfidence.MEDIUM
        if hrv.artifact_percentage > MEDIUM_ARTIFACT_PCT:
            return BiometricConfidence.MEDIUM
        if age_days is not None and age_days >= AGING_BASELINE_DAYS:
            return BiometricConfidence.MEDIUM
        return BiometricConfidence.HIGH

    def _baseline_age_days(self, now: datetime) -> float | None:
        last = self.baseline.last_updated
        if last is None:
            return None
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return (now - last).total_seconds() / 86400.0

    # ── Session queries ──────────────────────────────────────

    @property
    def current_state(self) -> BiometricState | None:
        states = self._history.states
        return states[-1] if states else None

    def flow_state_duration(self) -> float:
        """Seconds spent in the current state, assuming one reading a minute."""
        current = self.current_state
        if current is None:
            return 0.0
        return float(self._history.consecutive_tail(current) * SECONDS_PER_READING)

    def has_sustained_flow(self) -> bool:
        recent = self._history.recent_states(3)
        return len(recent) == 3 and all(s in _FLOW_STATES for s in recent)

    def reset_history(self) -> None:
        self._history.clear()
        logger.debug("biometric.history_reset")

    def reset_baseline(self) -> None:
        self.baseline = default_baseline()
        self._history.clear()
        logger.info("biometric.baseline_reset")
