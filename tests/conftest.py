"""Shared pytest fixtures."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

import pytest
import structlog

from flowstate.config import get_settings
from flowstate.flow.baseline import default_baseline
from flowstate.flow.models import (
    BehavioralFeatures,
    BehavioralResult,
    BiometricBaseline,
    BiometricConfidence,
    FatigueAssessment,
    FatigueLevel,
    HRVMetrics,
)

NOW = datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)


class FixedBehavioralScorer:
    """Returns scores from a list, repeating the last one."""

    def __init__(
        self,
        scores: Iterable[float] = (70.0,),
        confidence: BiometricConfidence = BiometricConfidence.HIGH,
        recommendations: list[str] | None = None,
    ) -> None:
        self._scores = list(scores)
        self._confidence = confidence
        self._recommendations = recommendations or []
        self.calls = 0

    def score(self, features: BehavioralFeatures) -> BehavioralResult:
        idx = min(self.calls, len(self._scores) - 1)
        self.calls += 1
        return BehavioralResult(
            score=self._scores[idx],
            confidence=self._confidence,
            recommendations=list(self._recommendations),
        )


class FixedFatigueDetector:
    def __init__(self, level: FatigueLevel = FatigueLevel.FRESH, recommendation: str = "") -> None:
        self.level = level
        self.recommendation = recommendation

    def detect(self, session_duration_seconds, features, session_history, sleep_history=None, baseline=None, hours_since_wake=None):
        return FatigueAssessment(level=self.level, recommendation=self.recommendation)


class NeutralChronotypeEngine:
    def circadian_multiplier(self, chronotype, hour: int) -> float:
        return 1.0

    def is_optimal_hour(self, chronotype, hour: int) -> bool:
        return False


@pytest.fixture(autouse=True)
def _reset_logging_and_settings():
    yield
    structlog.reset_defaults()
    get_settings.cache_clear()


@pytest.fixture
def calibrated_baseline() -> BiometricBaseline:
    baseline = default_baseline()
    baseline.days_of_data = 20
    baseline.total_readings = 400
    baseline.is_calibrated = True
    baseline.last_updated = NOW
    return baseline


@pytest.fixture
def flow_hrv() -> HRVMetrics:
    """RMSSD 70 ms against a 50 ms resting norm, LF at the population median."""
    return HRVMetrics(
        rmssd=70.0,
        sdnn=80.0,
        lf_power=1200.0,
        hf_power=900.0,
        lf_hf_ratio=1200.0 / 900.0,
        sample_count=150,
        artifact_percentage=0.0,
        window_seconds=150.0,
        timestamp=NOW,
    )


@pytest.fixture
def features() -> BehavioralFeatures:
    return BehavioralFeatures(
        session_duration_seconds=1200,
        touch_count=25,
        hour_of_day=10,
    )
