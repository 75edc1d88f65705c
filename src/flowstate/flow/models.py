"""Pydantic models for the flow-state estimation subsystem.

These models represent:
- HRV metrics derived from a window of inter-beat intervals
- The personalised biometric baseline (mutable, one per user)
- Biometric and fused flow results with explainability fields
- Inputs exchanged with the behavioural, fatigue and chronotype collaborators
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ─────────────────────────────────────────────────────


class RMSSDSource(str, Enum):
    """Where an RMSSD value came from.

    Only ``BEAT_TO_BEAT`` is a measurement over cleaned intervals; the
    SDNN approximation is an empirical resting ratio.
    """

    BEAT_TO_BEAT = "beat_to_beat"
    PRECOMPUTED = "precomputed"
    SDNN_APPROXIMATION = "sdnn_approximation"


class SpectralSource(str, Enum):
    """Provenance of the LF power used for sympathetic scoring."""

    MEASURED = "measured"
    ESTIMATED_TIME_DOMAIN = "estimated_time_domain"  # SDNN² − RMSSD²


class BiometricState(str, Enum):
    """Discrete state produced by the biometric scorer."""

    DEEP_FLOW = "deep_flow"
    LIGHT_FLOW = "light_flow"
    PRE_FLOW = "pre_flow"
    BASELINE = "baseline"
    OVERLOAD = "overload"  # sympathetic >90th percentile
    BOREDOM = "boredom"  # sympathetic <10th percentile + high vagal tone


class BiometricConfidence(str, Enum):
    """Confidence tier for a biometric evaluation."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WindowQuality(str, Enum):
    """Data quality of a single HRV analysis window."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FlowState(str, Enum):
    """Discrete state of the fused assessment."""

    DEEP_FLOW = "deep_flow"
    LIGHT_FLOW = "light_flow"
    PRE_FLOW = "pre_flow"
    BASELINE = "baseline"
    OVERLOAD = "overload"
    RECOVERING = "recovering"

    @property
    def is_flow(self) -> bool:
        return self in (FlowState.DEEP_FLOW, FlowState.LIGHT_FLOW)

    @property
    def should_interrupt(self) -> bool:
        return self in (FlowState.OVERLOAD, FlowState.RECOVERING)


class AssessmentConfidence(str, Enum):
    """Confidence tier for a fused assessment.

    Ordered from phone-only with an uncalibrated baseline up to the full
    sensor suite with a calibrated baseline.
    """

    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class DataSource(str, Enum):
    """Signal families that may contribute to an assessment."""

    WATCH_HRV = "watch_hrv"
    WATCH_HR = "watch_hr"
    BEHAVIORAL_PATTERNS = "behavioral_patterns"
    TOUCH_DYNAMICS = "touch_dynamics"
    SLEEP_QUALITY = "sleep_quality"
    CIRCADIAN_TIMING = "circadian_timing"
    SUBSTANCE_TIMING = "substance_timing"


class FatigueLevel(str, Enum):
    """Fatigue level reported by the fatigue detector, mildest first."""

    FRESH = "fresh"
    MILD = "mild"
    MODERATE = "moderate"
    HIGH = "high"
    SEVERE = "severe"

    @classmethod
    def from_score(cls, score: float) -> FatigueLevel:
        if score < 0.2:
            return cls.FRESH
        if score < 0.4:
            return cls.MILD
        if score < 0.6:
            return cls.MODERATE
        if score < 0.8:
            return cls.HIGH
        return cls.SEVERE


class Chronotype(str, Enum):
    """Circadian preference used to look up time-of-day multipliers."""

    EXTREME_MORNING = "extreme_morning"
    MODERATE_MORNING = "moderate_morning"
    INTERMEDIATE = "intermediate"
    MODERATE_EVENING = "moderate_evening"
    EXTREME_EVENING = "extreme_evening"


class ScoreTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


# ── HRV ───────────────────────────────────────────────────────


class HRVMetrics(BaseModel):
    """Immutable HRV snapshot for one analysis window."""

    model_config = ConfigDict(frozen=True)

    rmssd: float = Field(ge=0.0, description="RMSSD in ms.")
    sdnn: float | None = Field(None, ge=0.0, description="SDNN in ms.")
    pnn50: float | None = None
    nn50: int | None = Field(None, ge=0, description="Successive differences above 50 ms.")
    sdsd: float | None = Field(None, ge=0.0, description="SD of successive differences (ms).")
    mean_rr: float | None = None
    mean_hr: float | None = None

    # ── Frequency domain (null when the window is too short)
    vlf_power: float | None = Field(None, ge=0.0, description="0.003–0.04 Hz power (ms²).")
    lf_power: float | None = Field(None, ge=0.0, description="0.04–0.15 Hz power (ms²).")
    hf_power: float | None = Field(None, ge=0.0, description="0.15–0.40 Hz power (ms²).")
    total_power: float | None = Field(None, ge=0.0, description="0.003–0.40 Hz power (ms²).")
    lf_hf_ratio: float | None = None
    lf_nu: float | None = Field(None, ge=0.0, description="LF / (total − VLF) × 100.")
    hf_nu: float | None = Field(None, ge=0.0, description="HF / (total − VLF) × 100.")

    # ── Quality
    sample_count: int = 0
    artifact_count: int = 0
    artifact_percentage: float = Field(0.0, ge=0.0, le=1.0)
    window_seconds: float = 0.0
    is_valid: bool = True
    rmssd_source: RMSSDSource = RMSSDSource.BEAT_TO_BEAT
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def quality(self) -> WindowQuality:
        """Window quality from artifact rate, sample count and duration."""
        if self.artifact_percentage > 0.05 or self.sample_count < 30:
            return WindowQuality.LOW
        if self.window_seconds < 30:
            return WindowQuality.MEDIUM
        if self.window_seconds >= 60 and self.artifact_percentage < 0.02:
            return WindowQuality.HIGH
        return WindowQuality.MEDIUM


class BiometricReading(BaseModel):
    """Already-windowed sample from the wearable bridge."""

    heart_rate: float
    inter_beat_intervals: list[float] | None = None
    interval_timestamps: list[float] | None = None
    precomputed_rmssd: float | None = None
    sdnn: float | None = None
    timestamp: datetime = Field(default_factory=_utcnow)


# ── Baseline ──────────────────────────────────────────────────


LF_POPULATION_PERCENTILES = [500.0, 800.0, 1200.0, 1800.0, 2500.0]
RMSSD_POPULATION_PERCENTILES = [20.0, 30.0, 45.0, 65.0, 90.0]


class BiometricBaseline(BaseModel):
    """Personalised biometric baseline, updated via EWMA.

    Percentile distributions hold the [10th, 25th, 50th, 75th, 90th]
    points.  Full calibration requires 14+ days of data.
    """

    model_config = ConfigDict(validate_assignment=True)

    # ── HRV
    resting_rmssd: float = 50.0
    resting_rmssd_std: float = 10.0
    resting_hf_power: float = 1000.0
    resting_lf_power: float = 1500.0

    # ── Heart rate
    resting_hr: float = 65.0
    resting_hr_std: float = 5.0
    max_hr: float = 180.0

    # ── Percentile distributions
    lf_percentiles: list[float] = Field(default_factory=list)
    rmssd_percentiles: list[float] = Field(default_factory=list)

    # ── Calibration
    days_of_data: int = 0
    total_readings: int = 0
    is_calibrated: bool = False
    last_updated: datetime | None = None

    # ── Circadian (hour → multiplier)
    circadian_hrv_modifiers: dict[int, float] = Field(default_factory=dict)

    # ── Sleep
    avg_sleep_quality: float = Field(0.75, ge=0.0, le=1.0)
    avg_sleep_duration_hours: float = 7.0

    ewma_alpha: float = Field(0.1, gt=0.0, le=1.0)

    @field_validator("lf_percentiles", "rmssd_percentiles")
    @classmethod
    def _check_percentiles(cls, value: list[float]) -> list[float]:
        if not value:
            return value
        if len(value) != 5:
            raise ValueError("percentile distribution must be empty or have exactly 5 points")
        if any(b < a for a, b in zip(value, value[1:])):
            raise ValueError("percentile distribution must be non-decreasing")
        return value


# ── Biometric result ─────────────────────────────────────────


_CONTRIBUTOR_LABELS = {
    "parasympathetic_score": "Parasympathetic balance",
    "sympathetic_optimality": "Arousal optimality",
    "hr_zone_score": "Heart rate zone",
    "sleep_readiness": "Sleep readiness",
}


class BiometricBreakdown(BaseModel):
    """What contributed to a biometric flow score."""

    model_config = ConfigDict(frozen=True)

    parasympathetic_score: float = Field(ge=0.0, le=1.0)
    sympathetic_optimality: float = Field(ge=0.0, le=1.0)
    hr_zone_score: float = Field(ge=0.0, le=1.0)
    sleep_readiness: float = Field(ge=0.0, le=1.0)
    signal_quality: float = Field(ge=0.0, le=1.0)
    sympathetic_percentile: float = Field(0.5, ge=0.0, le=1.0)
    lf_source: SpectralSource = SpectralSource.MEASURED

    def _ranked(self) -> list[tuple[str, float]]:
        return [(label, getattr(self, attr)) for attr, label in _CONTRIBUTOR_LABELS.items()]

    @property
    def strongest_contributor(self) -> str:
        return max(self._ranked(), key=lambda item: item[1])[0]

    @property
    def weakest_contributor(self) -> str:
        return min(self._ranked(), key=lambda item: item[1])[0]


class BiometricFlowResult(BaseModel):
    """Result of one biometric evaluation."""

    model_config = ConfigDict(frozen=True)

    score: float = Field(ge=0.0, le=100.0)
    state: BiometricState
    confidence: BiometricConfidence
    breakdown: BiometricBreakdown
    state_history: list[BiometricState] = Field(default_factory=list)
    recommendation: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def summary(self) -> str:
        return f"{self.state.value} ({int(self.score)}%)"


# ── Collaborator payloads ────────────────────────────────────


class BehavioralFeatures(BaseModel):
    """Interaction-pattern features extracted by the behavioural collector."""

    session_duration_seconds: float = 0.0
    touch_count: int = 0
    touch_interval_variance: float = 0.0
    app_switch_count: int = 0
    hour_of_day: int = Field(12, ge=0, le=23)
    minutes_since_last_session: float | None = None
    streak_days: int = 0
    completed_sessions_last_7_days: int = 0


class BehavioralResult(BaseModel):
    """Output of the external behavioural scorer."""

    score: float = Field(ge=0.0, le=100.0)
    confidence: BiometricConfidence = BiometricConfidence.LOW
    recommendations: list[str] = Field(default_factory=list)


class PastSession(BaseModel):
    """A completed focus session, as supplied by the caller."""

    started_at: datetime
    duration_seconds: float = 0.0
    completed: bool = True


class SleepRecord(BaseModel):
    """One night of sleep, most recent first when passed as a history."""

    quality: float = Field(ge=0.0, le=1.0)
    hours_slept: float = Field(ge=0.0)


class BehavioralBaseline(BaseModel):
    """Per-user interaction norms used by the fatigue detector."""

    avg_touch_variance: float = 0.0
    avg_session_minutes: float = 45.0


class FatigueAssessment(BaseModel):
    """Output of the fatigue detector."""

    level: FatigueLevel
    score: float = Field(0.0, ge=0.0, le=1.0)
    signals: list[str] = Field(default_factory=list)
    recommendation: str = ""


# ── Fused assessment ─────────────────────────────────────────


class DataSourceBreakdown(BaseModel):
    """Per-modality scores and the weights used to fuse them."""

    model_config = ConfigDict(frozen=True)

    biometric_score: float | None = Field(None, ge=0.0, le=100.0)
    biometric_weight: float = Field(ge=0.0, le=1.0)
    behavioral_score: float = Field(ge=0.0, le=100.0)
    behavioral_weight: float = Field(ge=0.0, le=1.0)
    contextual_score: float = Field(ge=0.0, le=1.0)
    contextual_weight: float = Field(ge=0.0, le=1.0)
    fatigue_adjustment: float = Field(1.0, ge=0.0, le=1.0)
    fatigue_level: FatigueLevel = FatigueLevel.FRESH
    pre_fatigue_score: float = Field(0.0, ge=0.0, le=100.0)
    available_sources: list[DataSource] = Field(default_factory=list)

    @property
    def primary_source(self) -> str:
        if self.biometric_weight > 0:
            return "Biometric + Behavioral Fusion"
        return "Behavioral Analysis"

    @property
    def data_quality_score(self) -> float:
        quality = 0.3
        if self.biometric_score is not None:
            quality += 0.4
        if DataSource.SLEEP_QUALITY in self.available_sources:
            quality += 0.15
        if DataSource.SUBSTANCE_TIMING in self.available_sources:
            quality += 0.15
        return min(1.0, quality)


class UnifiedFlowAssessment(BaseModel):
    """The fused flow assessment returned once per cycle."""

    model_config = ConfigDict(frozen=True)

    score: float = Field(ge=0.0, le=100.0)
    confidence: AssessmentConfidence
    state: FlowState
    data_source_breakdown: DataSourceBreakdown
    recommendations: list[str] = Field(default_factory=list, max_length=4)
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def summary(self) -> str:
        return f"{self.state.value} ({int(self.score)}%)"

    @property
    def status_line(self) -> str:
        return (
            f"{self.state.value} • {self.confidence.value} confidence • "
            f"{len(self.data_source_breakdown.available_sources)} sources"
        )
