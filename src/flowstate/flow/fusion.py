"""Fusion engine orchestrator — one unified flow assessment per cycle.

:class:`FusionEngine` is constructed once per user session.  Each call to
:meth:`FusionEngine.assess` runs:

1. Per-modality scoring (behavioural always, biometric when a valid HRV
   window and heart rate are present)
2. Contextual scoring from sleep, circadian phase and active substances
3. Dynamic weighting and early fusion
4. Fatigue capping
5. State selection with persistence (hysteresis)
6. Confidence arbitration and recommendation synthesis
7. History update and listener notification
"""

from __future__ import annotations

import math
from typing import Callable, NamedTuple

import structlog
from pydantic import BaseModel, Field

from flowstate.config import Settings, get_settings
from flowstate.flow.baseline import default_baseline
from flowstate.flow.biometric import BiometricScorer
from flowstate.flow.collaborators import (
    BehavioralScorer,
    ChronotypeEngine,
    CircadianChronotypeEngine,
    FatigueDetector,
    HeuristicFatigueDetector,
)
from flowstate.flow.history import SessionHistory
from flowstate.flow.models import (
    AssessmentConfidence,
    BehavioralBaseline,
    BehavioralFeatures,
    BehavioralResult,
    BiometricBaseline,
    BiometricConfidence,
    BiometricFlowResult,
    BiometricState,
    Chronotype,
    DataSource,
    DataSourceBreakdown,
    FatigueAssessment,
    FatigueLevel,
    FlowState,
    HRVMetrics,
    PastSession,
    ScoreTrend,
    SleepRecord,
    UnifiedFlowAssessment,
)

logger = structlog.get_logger(__name__)

Listener = Callable[[UnifiedFlowAssessment], None]

# ── Constants ─────────────────────────────────────────────────

DEEP_FLOW_THRESHOLD = 80.0
LIGHT_FLOW_THRESHOLD = 60.0
PRE_FLOW_THRESHOLD = 40.0

# Fused-score floors that let a biometric flow state carry through
BIOMETRIC_DEEP_FLOOR = 75.0
BIOMETRIC_LIGHT_FLOOR = 55.0

MAX_RECOMMENDATIONS = 4
SUSTAINED_FLOW_READINGS = 4

FATIGUE_MULTIPLIERS: dict[FatigueLevel, float] = {
    FatigueLevel.FRESH: 1.00,
    FatigueLevel.MILD: 0.95,
    FatigueLevel.MODERATE: 0.85,
    FatigueLevel.HIGH: 0.70,
    FatigueLevel.SEVERE: 0.50,
}

_FATIGUE_ORDER = list(FatigueLevel)
_FLOW_STATES = frozenset({FlowState.DEEP_FLOW, FlowState.LIGHT_FLOW})

_PRIMARY_MESSAGES: dict[FlowState, str] = {
    FlowState.DEEP_FLOW: "You're in deep flow! Protect this state and avoid all interruptions.",
    FlowState.LIGHT_FLOW: "Good focus! Keep going to deepen your flow state.",
    FlowState.PRE_FLOW: "Focus is building. Remove distractions and commit fully.",
    FlowState.BASELINE: "Start your task and let focus build naturally.",
    FlowState.OVERLOAD: "Stress detected! Take a 5-minute break with slow breathing.",
    FlowState.RECOVERING: "Fatigue detected. Consider ending this session and resting.",
}

CONNECT_WEARABLE_MESSAGE = "Connect a heart-rate wearable for 30% more accurate flow detection."
LOG_SLEEP_MESSAGE = "Log your sleep for better flow predictions."
BREATHING_TIP = "Try 5 slow breaths (5-6/min) to boost parasympathetic activity."
LOW_ENGAGEMENT_TIP = "Your heart rate suggests low engagement. Increase challenge."


class FusionWeights(NamedTuple):
    biometric: float
    behavioral: float
    contextual: float


WEIGHTS_WITH_BIOMETRIC = FusionWeights(0.50, 0.30, 0.20)
WEIGHTS_PHONE_ONLY = FusionWeights(0.0, 0.48, 0.52)


class FusionInputs(BaseModel):
    """Everything the engine consumes for one assessment cycle."""

    behavioral_features: BehavioralFeatures
    hrv: HRVMetrics | None = None
    current_hr: float | None = None
    sleep_quality: float | None = None
    active_substances: dict[str, float] | None = None
    session_history: list[PastSession] = Field(default_factory=list)
    sleep_history: list[SleepRecord] | None = None
    behavioral_baseline: BehavioralBaseline | None = None
    hours_since_wake: float | None = None
    chronotype: Chronotype = Chronotype.INTERMEDIATE
    # None: use the biometric scorer's baseline calibration flag
    baseline_calibrated: bool | None = None


# ── Pure helpers ─────────────────────────────────────────────


def _clean_unit(value: float | None) -> float | None:
    """Clamp to [0, 1]; non-finite values count as missing."""
    if value is None or not math.isfinite(value):
        return None
    return max(0.0, min(1.0, value))


def substance_bonus(substances: dict[str, float] | None) -> float:
    """Contextual adjustment for active caffeine / L-theanine (mg)."""
    if not substances:
        return 0.0
    bonus = 0.0
    caffeine = substances.get("caffeine")
    if caffeine is not None and math.isfinite(caffeine):
        if 50 <= caffeine <= 200:
            bonus += 0.05
        elif caffeine > 300:
            bonus -= 0.05
        elif 0 < caffeine < 30:
            bonus -= 0.02

        theanine = substances.get("l_theanine")
        if theanine is not None and theanine >= 100 and 50 <= caffeine <= 200:
            bonus += 0.05
    return max(-0.1, min(0.1, bonus))


def contextual_score(
    sleep_quality: float | None,
    circadian_multiplier: float,
    substances: dict[str, float] | None = None,
) -> float:
    """Situational readiness in [0, 1], centred on 0.5."""
    score = 0.5
    sleep = _clean_unit(sleep_quality)
    if sleep is not None:
        score += (sleep - 0.5) * 0.4
    if math.isfinite(circadian_multiplier):
        score += (circadian_multiplier - 1.0) * 0.4
    score += substance_bonus(substances)
    return max(0.0, min(1.0, score))


def dynamic_weights(has_biometric: bool) -> FusionWeights:
    return WEIGHTS_WITH_BIOMETRIC if has_biometric else WEIGHTS_PHONE_ONLY


def fatigue_multiplier(level: FatigueLevel) -> float:
    return FATIGUE_MULTIPLIERS[level]


def _at_least(level: FatigueLevel, floor: FatigueLevel) -> bool:
    return _FATIGUE_ORDER.index(level) >= _FATIGUE_ORDER.index(floor)


# ── Engine ───────────────────────────────────────────────────


class FusionEngine:
    """Fuses biometric, behavioural and contextual signals for one session.

    Parameters
    ----------
    behavioral_scorer : BehavioralScorer
        External phone-signal model.
    fatigue_detector : FatigueDetector
        Supplies the fatigue level used to cap the fused score.
    chronotype_engine : ChronotypeEngine
        Supplies circadian multipliers.
    biometric_scorer : BiometricScorer | None
        Wearable path; without it every cycle is phone-only.
    history_size : int
        Readings kept for hysteresis and trend queries.
    seconds_per_reading : float
        Assessment cadence used by :meth:`time_in_current_state`.
    """

    def __init__(
        self,
        behavioral_scorer: BehavioralScorer,
        fatigue_detector: FatigueDetector,
        chronotype_engine: ChronotypeEngine,
        biometric_scorer: BiometricScorer | None = None,
        history_size: int = 10,
        seconds_per_reading: float = 45,
    ) -> None:
        self._behavioral = behavioral_scorer
        self._fatigue = fatigue_detector
        self._chronotype = chronotype_engine
        self._biometric = biometric_scorer
        self._history: SessionHistory[FlowState] = SessionHistory(history_size)
        self._seconds_per_reading = seconds_per_reading
        self._listeners: list[Listener] = []
        self._last: UnifiedFlowAssessment | None = None

    @property
    def biometric_scorer(self) -> BiometricScorer | None:
        return self._biometric

    # ── Listeners ─────────────────────────────────────────────

    def add_listener(self, fn: Listener) -> None:
        """Register a callback that receives every assessment."""
        self._listeners.append(fn)

    def _notify(self, assessment: UnifiedFlowAssessment) -> None:
        for listener in self._listeners:
            try:
                listener(assessment)
            except Exception as exc:
                logger.error(
                    "fusion.listener_error",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(exc),
                )

    # ── Main cycle ────────────────────────────────────────────

    def assess(self, inputs: FusionInputs) -> UnifiedFlowAssessment:
        features = inputs.behavioral_features
        sleep_quality = _clean_unit(inputs.sleep_quality)

        behavioral = self._behavioral.score(features)
        biometric = self._score_biometric(inputs.hrv, inputs.current_hr, sleep_quality)

        circadian = self._chronotype.circadian_multiplier(inputs.chronotype, features.hour_of_day)
        context = contextual_score(sleep_quality, circadian, inputs.active_substances)

        weights = dynamic_weights(biometric is not None)
        fused = behavioral.score * weights.behavioral + context * 100 * weights.contextual
        if biometric is not None:
            fused += biometric.score * weights.biometric
        pre_fatigue = max(0.0, min(100.0, fused))

        fatigue = self._fatigue.detect(
            features.session_duration_seconds,
            features,
            inputs.session_history,
            sleep_history=inputs.sleep_history,
            baseline=inputs.behavioral_baseline,
            hours_since_wake=inputs.hours_since_wake,
        )
        multiplier = fatigue_multiplier(fatigue.level)
        score = max(0.0, min(100.0, pre_fatigue * multiplier))

        state = self._determine_state(score, biometric, fatigue.level)
        self._history.append(score, state)

        calibrated = inputs.baseline_calibrated
        if calibrated is None:
            calibrated = self._biometric is not None and self._biometric.baseline.is_calibrated
        confidence = self._determine_confidence(biometric, behavioral, calibrated)

        sources = self._available_sources(features, biometric, sleep_quality, inputs.active_substances)
        breakdown = DataSourceBreakdown(
            biometric_score=biometric.score if biometric is not None else None,
            biometric_weight=weights.biometric,
            behavioral_score=behavioral.score,
            behavioral_weight=weights.behavioral,
            contextual_score=context,
            contextual_weight=weights.contextual,
            fatigue_adjustment=multiplier,
            fatigue_level=fatigue.level,
            pre_fatigue_score=pre_fatigue,
            available_sources=sources,
        )

        assessment = UnifiedFlowAssessment(
            score=score,
            confidence=confidence,
            state=state,
            data_source_breakdown=breakdown,
            recommendations=self._recommendations(
                state, fatigue, biometric, behavioral, sleep_quality
            ),
        )
        self._last = assessment

        logger.info(
            "fusion.assessment_complete",
            score=round(score, 1),
            state=state.value,
            confidence=confidence.value,
            biometric=biometric is not None,
            fatigue=fatigue.level.value,
        )
        self._notify(assessment)
        return assessment

    def _score_biometric(
        self,
        hrv: HRVMetrics | None,
        current_hr: float | None,
        sleep_quality: float | None,
    ) -> BiometricFlowResult | None:
        if self._biometric is None:
            return None
        match (hrv, current_hr):
            case (HRVMetrics(is_valid=True), float() | int() as hr) if math.isfinite(hr) and hr > 0:
                return self._biometric.score(hrv, float(hr), sleep_quality)
            case _:
                logger.debug("fusion.biometric_unavailable")
                return None

    def _determine_state(
        self,
        score: float,
        biometric: BiometricFlowResult | None,
        fatigue: FatigueLevel,
    ) -> FlowState:
        if fatigue == FatigueLevel.SEVERE:
            return FlowState.RECOVERING

        if biometric is not None:
            if biometric.state == BiometricState.OVERLOAD:
                return FlowState.OVERLOAD
            if biometric.state == BiometricState.DEEP_FLOW and score >= BIOMETRIC_DEEP_FLOOR:
                return FlowState.DEEP_FLOW
            if biometric.state == BiometricState.LIGHT_FLOW and score >= BIOMETRIC_LIGHT_FLOOR:
                return FlowState.LIGHT_FLOW

        if fatigue == FatigueLevel.HIGH:
            return FlowState.RECOVERING

        if score >= DEEP_FLOW_THRESHOLD:
            if self._history.count_recent(3, _FLOW_STATES) >= 2:
                return FlowState.DEEP_FLOW
            return FlowState.LIGHT_FLOW
        if score >= LIGHT_FLOW_THRESHOLD:
            if self._history.count_recent(2, _FLOW_STATES) >= 1:
                return FlowState.LIGHT_FLOW
            return FlowState.PRE_FLOW
        if score >= PRE_FLOW_THRESHOLD:
            return FlowState.PRE_FLOW
        return FlowState.BASELINE

    @staticmethod
    def _determine_confidence(
        biometric: BiometricFlowResult | None,
        behavioral: BehavioralResult,
        calibrated: bool,
    ) -> AssessmentConfidence:
        if not calibrated:
            return AssessmentConfidence.VERY_LOW
        if biometric is not None:
            if biometric.confidence == BiometricConfidence.HIGH:
                return AssessmentConfidence.VERY_HIGH
            if biometric.confidence == BiometricConfidence.MEDIUM:
                return AssessmentConfidence.HIGH
            return AssessmentConfidence.MEDIUM
        if behavioral.confidence == BiometricConfidence.LOW:
            return AssessmentConfidence.VERY_LOW
        return AssessmentConfidence.LOW

    @staticmethod
    def _available_sources(
        features: BehavioralFeatures,
        biometric: BiometricFlowResult | None,
        sleep_quality: float | None,
        substances: dict[str, float] | None,
    ) -> list[DataSource]:
        sources = [DataSource.BEHAVIORAL_PATTERNS]
        if features.touch_count > 0:
            sources.append(DataSource.TOUCH_DYNAMICS)
        if biometric is not None:
            sources.extend([DataSource.WATCH_HRV, DataSource.WATCH_HR])
        if sleep_quality is not None:
            sources.append(DataSource.SLEEP_QUALITY)
        sources.append(DataSource.CIRCADIAN_TIMING)
        if substances:
            sources.append(DataSource.SUBSTANCE_TIMING)
        return sources

    @staticmethod
    def _recommendations(
        state: FlowState,
        fatigue: FatigueAssessment,
        biometric: BiometricFlowResult | None,
        behavioral: BehavioralResult,
        sleep_quality: float | None,
    ) -> list[str]:
        recs = [_PRIMARY_MESSAGES[state]]
        if biometric is None:
            recs.append(CONNECT_WEARABLE_MESSAGE)
        if sleep_quality is None:
            recs.append(LOG_SLEEP_MESSAGE)
        if biometric is not None:
            if biometric.breakdown.parasympathetic_score < 0.4:
                recs.append(BREATHING_TIP)
            if biometric.breakdown.hr_zone_score < 0.5:
                recs.append(LOW_ENGAGEMENT_TIP)
        recs.extend(behavioral.recommendations[:2])
        if _at_least(fatigue.level, FatigueLevel.MODERATE) and fatigue.recommendation:
            recs.append(fatigue.recommendation)

        recs = [r for r in dict.fromkeys(recs) if r]
        return recs[:MAX_RECOMMENDATIONS]

    # ── Session queries ───────────────────────────────────────

    @property
    def last_assessment(self) -> UnifiedFlowAssessment | None:
        return self._last

    @property
    def is_in_flow(self) -> bool:
        return self._last is not None and self._last.state.is_flow

    @property
    def state_history(self) -> list[FlowState]:
        return self._history.states

    def time_in_current_state(self) -> float:
        """Seconds spent in the latest state at the configured cadence."""
        if self._last is None:
            return 0.0
        return self._history.consecutive_tail(self._last.state) * float(self._seconds_per_reading)

    @property
    def has_sustained_flow(self) -> bool:
        recent = self._history.recent_states(SUSTAINED_FLOW_READINGS)
        return len(recent) == SUSTAINED_FLOW_READINGS and all(s.is_flow for s in recent)

    @property
    def score_trend(self) -> ScoreTrend:
        return self._history.trend()

    def reset_history(self) -> None:
        """Clear session history (call at session start)."""
        self._history.clear()
        self._last = None
        if self._biometric is not None:
            self._biometric.reset_history()
        logger.info("fusion.history_reset")


# ── Factory ───────────────────────────────────────────────────


def create_session_engine(
    behavioral_scorer: BehavioralScorer,
    baseline: BiometricBaseline | None = None,
    settings: Settings | None = None,
    *,
    fatigue_detector: FatigueDetector | None = None,
    chronotype_engine: ChronotypeEngine | None = None,
) -> FusionEngine:
    """Build a fully wired :class:`FusionEngine` for one user session."""
    settings = settings or get_settings()
    if baseline is None:
        baseline = default_baseline()
        baseline.ewma_alpha = settings.baseline_ewma_alpha
    scorer = BiometricScorer(
        baseline,
        history_size=settings.history_size,
        calibration_days=settings.calibration_days,
    )
    return FusionEngine(
        behavioral_scorer,
        fatigue_detector or HeuristicFatigueDetector(),
        chronotype_engine or CircadianChronotypeEngine(),
        biometric_scorer=scorer,
        history_size=settings.history_size,
        seconds_per_reading=settings.seconds_per_reading,
    )
