"""Tests for the fusion engine."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from flowstate.config import Settings
from flowstate.flow.biometric import BiometricScorer
from flowstate.flow.fusion import (
    CONNECT_WEARABLE_MESSAGE,
    FATIGUE_MULTIPLIERS,
    LOG_SLEEP_MESSAGE,
    WEIGHTS_PHONE_ONLY,
    WEIGHTS_WITH_BIOMETRIC,
    FusionEngine,
    FusionInputs,
    contextual_score,
    create_session_engine,
    dynamic_weights,
    substance_bonus,
)
from flowstate.flow.models import (
    AssessmentConfidence,
    BiometricConfidence,
    DataSource,
    FatigueLevel,
    FlowState,
    HRVMetrics,
    ScoreTrend,
)

from conftest import FixedBehavioralScorer, FixedFatigueDetector, NeutralChronotypeEngine

BOOSTED_SUBSTANCES = {"caffeine": 100.0, "l_theanine": 150.0}


def _engine(
    scores=(70.0,),
    fatigue: FatigueLevel = FatigueLevel.FRESH,
    biometric_scorer: BiometricScorer | None = None,
    **scorer_kwargs,
) -> FusionEngine:
    return FusionEngine(
        FixedBehavioralScorer(scores, **scorer_kwargs),
        FixedFatigueDetector(fatigue, recommendation="Moderate fatigue. Take a break."),
        NeutralChronotypeEngine(),
        biometric_scorer=biometric_scorer,
    )


def _inputs(features, **kwargs) -> FusionInputs:
    kwargs.setdefault("baseline_calibrated", True)
    return FusionInputs(behavioral_features=features, **kwargs)


@pytest.fixture
def fresh_baseline(calibrated_baseline):
    calibrated_baseline.last_updated = datetime.now(timezone.utc)
    return calibrated_baseline


# ── Pure helpers ─────────────────────────────────────────────


class TestWeights:
    @pytest.mark.parametrize("has_biometric", [True, False])
    def test_weights_sum_to_one(self, has_biometric):
        assert sum(dynamic_weights(has_biometric)) == pytest.approx(1.0, abs=1e-9)

    def test_phone_only_weights(self):
        assert dynamic_weights(False) == WEIGHTS_PHONE_ONLY
        assert WEIGHTS_PHONE_ONLY.biometric == 0.0

    def test_fatigue_multipliers_non_increasing(self):
        values = [FATIGUE_MULTIPLIERS[level] for level in FatigueLevel]
        assert all(b <= a for a, b in zip(values, values[1:]))
        assert all(v <= 1.0 for v in values)


class TestContextualScore:
    def test_neutral(self):
        assert contextual_score(None, 1.0) == pytest.approx(0.5)

    def test_sleep_and_circadian(self):
        assert contextual_score(1.0, 1.1) == pytest.approx(0.5 + 0.2 + 0.04)

    def test_nan_sleep_is_ignored(self):
        assert contextual_score(float("nan"), 1.0) == pytest.approx(0.5)

    @pytest.mark.parametrize(
        ("substances", "expected"),
        [
            ({"caffeine": 100.0}, 0.05),
            ({"caffeine": 400.0}, -0.05),
            ({"caffeine": 10.0}, -0.02),
            ({"caffeine": 250.0}, 0.0),
            (BOOSTED_SUBSTANCES, 0.1),
            ({"l_theanine": 200.0}, 0.0),
            ({}, 0.0),
            (None, 0.0),
        ],
    )
    def test_substance_bonus(self, substances, expected):
        assert substance_bonus(substances) == pytest.approx(expected)

    def test_clamped(self):
        assert contextual_score(1.0, 5.0, BOOSTED_SUBSTANCES) == 1.0
        assert contextual_score(0.0, 0.0, {"caffeine": 500.0}) == 0.0


# ── Assessment ───────────────────────────────────────────────


class TestPhoneOnly:
    def test_no_hrv_uses_phone_only_weights(self, features):
        a = _engine().assess(_inputs(features))
        b = a.data_source_breakdown
        assert b.biometric_score is None
        assert (b.biometric_weight, b.behavioral_weight, b.contextual_weight) == WEIGHTS_PHONE_ONLY
        assert a.score == pytest.approx(70 * 0.48 + 50 * 0.52)
        assert a.confidence == AssessmentConfidence.LOW
        assert b.primary_source == "Behavioral Analysis"
        assert DataSource.WATCH_HRV not in b.available_sources

    def test_uncalibrated_is_very_low(self, features):
        a = _engine().assess(_inputs(features, baseline_calibrated=False))
        assert a.confidence == AssessmentConfidence.VERY_LOW

    def test_low_behavioral_confidence(self, features):
        a = _engine(confidence=BiometricConfidence.LOW).assess(_inputs(features))
        assert a.confidence == AssessmentConfidence.VERY_LOW

    def test_nudges(self, features):
        a = _engine().assess(_inputs(features))
        assert a.recommendations[1] == CONNECT_WEARABLE_MESSAGE
        assert LOG_SLEEP_MESSAGE in a.recommendations

    def test_invalid_hrv_falls_back(self, features, fresh_baseline):
        engine = _engine(biometric_scorer=BiometricScorer(fresh_baseline))
        a = engine.assess(
            _inputs(features, hrv=HRVMetrics(rmssd=0.0, is_valid=False), current_hr=80.0)
        )
        assert a.data_source_breakdown.biometric_score is None
        assert a.data_source_breakdown.biometric_weight == 0.0

    def test_bad_heart_rate_falls_back(self, features, fresh_baseline, flow_hrv):
        engine = _engine(biometric_scorer=BiometricScorer(fresh_baseline))
        for hr in (-5.0, 0.0, float("nan"), None):
            a = engine.assess(_inputs(features, hrv=flow_hrv, current_hr=hr))
            assert a.data_source_breakdown.biometric_score is None

    def test_nan_sleep_does_not_raise(self, features):
        a = _engine().assess(_inputs(features, sleep_quality=float("nan")))
        assert DataSource.SLEEP_QUALITY not in a.data_source_breakdown.available_sources


class TestWithBiometric:
    def test_full_fusion(self, features, fresh_baseline, flow_hrv):
        engine = _engine(biometric_scorer=BiometricScorer(fresh_baseline))
        a = engine.assess(_inputs(features, hrv=flow_hrv, current_hr=85.0, sleep_quality=0.8))
        b = a.data_source_breakdown
        assert (b.biometric_weight, b.behavioral_weight, b.contextual_weight) == WEIGHTS_WITH_BIOMETRIC
        assert b.biometric_score is not None and b.biometric_score >= 75
        expected = b.biometric_score * 0.5 + 70 * 0.3 + b.contextual_score * 100 * 0.2
        assert a.score == pytest.approx(expected)
        assert a.confidence == AssessmentConfidence.VERY_HIGH
        assert a.state == FlowState.LIGHT_FLOW
        assert {DataSource.WATCH_HRV, DataSource.WATCH_HR, DataSource.SLEEP_QUALITY} <= set(
            b.available_sources
        )
        assert b.data_quality_score == pytest.approx(0.85)
        assert CONNECT_WEARABLE_MESSAGE not in a.recommendations

    def test_overload_override(self, features, fresh_baseline):
        engine = _engine(biometric_scorer=BiometricScorer(fresh_baseline))
        hrv = HRVMetrics(rmssd=80.0, lf_power=5000.0)
        a = engine.assess(_inputs(features, hrv=hrv, current_hr=78.0, sleep_quality=1.0))
        assert a.state == FlowState.OVERLOAD
        assert a.state.should_interrupt
        assert a.recommendations[0].startswith("Stress detected")

    def test_biometric_flow_beats_high_fatigue(self, features, fresh_baseline, flow_hrv):
        scorer = BiometricScorer(fresh_baseline)
        scorer.score(flow_hrv, 85.0)
        engine = _engine(fatigue=FatigueLevel.HIGH, biometric_scorer=scorer)
        a = engine.assess(_inputs(features, hrv=flow_hrv, current_hr=85.0, sleep_quality=0.8))
        assert a.data_source_breakdown.fatigue_adjustment == 0.70
        assert a.score >= 55
        assert a.state == FlowState.LIGHT_FLOW


class TestFatigue:
    def test_severe_fatigue_recovering(self, features):
        a = _engine(scores=(100.0,), fatigue=FatigueLevel.SEVERE).assess(_inputs(features))
        b = a.data_source_breakdown
        assert a.state == FlowState.RECOVERING
        assert b.pre_fatigue_score == pytest.approx(74.0)
        assert a.score == pytest.approx(37.0)
        assert b.fatigue_level == FatigueLevel.SEVERE

    def test_high_fatigue_without_biometric(self, features):
        a = _engine(scores=(100.0,), fatigue=FatigueLevel.HIGH).assess(_inputs(features))
        assert a.state == FlowState.RECOVERING


class TestStateHysteresis:
    def test_alternating_around_light_threshold_never_upgrades(self, features):
        engine = _engine(scores=[75.0, 66.0] * 5)
        states = []
        for _ in range(10):
            a = engine.assess(_inputs(features))
            states.append(a.state)
        # fused scores alternate 62.0 / 57.68
        assert FlowState.LIGHT_FLOW not in states
        assert set(states) == {FlowState.PRE_FLOW}

    def test_deep_flow_requires_persistence(self, features):
        engine = _engine(scores=(100.0,))
        inputs = _inputs(features, sleep_quality=1.0, active_substances=BOOSTED_SUBSTANCES)
        states = [engine.assess(inputs).state for _ in range(4)]
        assert engine.last_assessment.score == pytest.approx(100 * 0.48 + 80 * 0.52)
        assert states == [
            FlowState.LIGHT_FLOW,
            FlowState.LIGHT_FLOW,
            FlowState.DEEP_FLOW,
            FlowState.DEEP_FLOW,
        ]
        assert engine.is_in_flow
        assert engine.has_sustained_flow
        assert engine.time_in_current_state() == 90.0

    def test_identical_history_gives_identical_results(self, features):
        a = _engine().assess(_inputs(features))
        b = _engine().assess(_inputs(features))
        assert (a.score, a.state, a.confidence) == (b.score, b.state, b.confidence)


class TestRecommendations:
    def test_deduplicated_and_capped(self, features):
        engine = _engine(
            scores=(20.0,),
            fatigue=FatigueLevel.MODERATE,
            recommendations=["Start your task and let focus build naturally.", "Take a walk."],
        )
        a = engine.assess(_inputs(features))
        assert a.state == FlowState.BASELINE
        assert len(a.recommendations) == 4
        assert len(set(a.recommendations)) == 4
        assert a.recommendations[0] == "Start your task and let focus build naturally."
        assert a.recommendations[-1] == "Take a walk."

    def test_fatigue_recommendation_included(self, features):
        engine = _engine(scores=(20.0,), fatigue=FatigueLevel.MODERATE)
        a = engine.assess(_inputs(features, sleep_quality=0.7))
        assert "Moderate fatigue. Take a break." in a.recommendations


class TestSessionQueries:
    def test_empty_engine(self):
        engine = _engine()
        assert engine.last_assessment is None
        assert not engine.is_in_flow
        assert engine.time_in_current_state() == 0.0
        assert engine.score_trend == ScoreTrend.STABLE

    def test_score_trend(self, features):
        rising = _engine(scores=[20, 20, 20, 90, 90, 90])
        falling = _engine(scores=[90, 90, 90, 20, 20, 20])
        for _ in range(6):
            rising.assess(_inputs(features))
            falling.assess(_inputs(features))
        assert rising.score_trend == ScoreTrend.IMPROVING
        assert falling.score_trend == ScoreTrend.DECLINING

    def test_reset_history(self, features, fresh_baseline, flow_hrv):
        scorer = BiometricScorer(fresh_baseline)
        engine = _engine(biometric_scorer=scorer)
        engine.assess(_inputs(features, hrv=flow_hrv, current_hr=85.0))
        engine.reset_history()
        assert engine.state_history == []
        assert engine.last_assessment is None
        assert scorer.state_history == []


class TestListeners:
    def test_listener_receives_assessment(self, features):
        engine = _engine()
        received = []
        engine.add_listener(received.append)
        a = engine.assess(_inputs(features))
        assert received == [a]

    def test_failing_listener_is_isolated(self, features):
        engine = _engine()
        received = []

        def broken(_):
            raise RuntimeError("boom")

        engine.add_listener(broken)
        engine.add_listener(received.append)
        a = engine.assess(_inputs(features))
        assert received == [a]


class TestCreateSessionEngine:
    def test_uses_settings(self, features):
        settings = Settings(history_size=3, seconds_per_reading=30)
        engine = create_session_engine(FixedBehavioralScorer(), settings=settings)
        for _ in range(5):
            a = engine.assess(FusionInputs(behavioral_features=features))
        assert len(engine.state_history) == 3
        assert engine.time_in_current_state() == 90.0
        assert engine.biometric_scorer is not None
        # Default baseline is not calibrated yet
        assert a.confidence == AssessmentConfidence.VERY_LOW
