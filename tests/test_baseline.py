"""Tests for the personal baseline store."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from flowstate.flow.baseline import (
    InMemoryBaselineStore,
    circadian_adjustment,
    default_baseline,
    load_or_default,
    percentile_rank,
    update_circadian_modifier,
    update_with_reading,
)
from flowstate.flow.models import (
    LF_POPULATION_PERCENTILES,
    BiometricBaseline,
    HRVMetrics,
)

from conftest import NOW


# ── Percentile ranks ─────────────────────────────────────────


class TestPercentileRank:
    def test_clamped_at_extremes(self):
        d = LF_POPULATION_PERCENTILES
        assert percentile_rank(100, d) == 0.05
        assert percentile_rank(d[0], d) == 0.05
        assert percentile_rank(d[4], d) == 0.95
        assert percentile_rank(10_000, d) == 0.95

    def test_interpolation_points(self):
        d = LF_POPULATION_PERCENTILES
        assert percentile_rank(1200, d) == pytest.approx(0.5)
        assert percentile_rank(650, d) == pytest.approx(0.175)
        assert percentile_rank(1800, d) == pytest.approx(0.75)

    def test_monotonic(self):
        d = LF_POPULATION_PERCENTILES
        ranks = [percentile_rank(v, d) for v in range(0, 3000, 10)]
        assert all(b >= a for a, b in zip(ranks, ranks[1:]))

    def test_short_distribution_is_neutral(self):
        assert percentile_rank(1000, [1, 2, 3]) == 0.5
        assert percentile_rank(1000, []) == 0.5

    def test_zero_width_segment(self):
        d = [10, 20, 20, 30, 40]
        ranks = [percentile_rank(v, d) for v in (15, 20, 25)]
        assert ranks == sorted(ranks)


# ── Validation ───────────────────────────────────────────────


class TestBaselineValidation:
    def test_wrong_length_rejected(self):
        with pytest.raises(ValidationError):
            BiometricBaseline(lf_percentiles=[1, 2, 3])

    def test_decreasing_rejected(self):
        with pytest.raises(ValidationError):
            BiometricBaseline(rmssd_percentiles=[50, 40, 30, 20, 10])

    def test_default_has_population_percentiles(self):
        b = default_baseline()
        assert len(b.lf_percentiles) == 5
        assert len(b.rmssd_percentiles) == 5
        assert not b.is_calibrated


# ── EWMA updates ─────────────────────────────────────────────


def _hrv(rmssd: float = 70.0, **kwargs) -> HRVMetrics:
    return HRVMetrics(rmssd=rmssd, **kwargs)


class TestUpdateWithReading:
    def test_ewma_moves_towards_reading(self):
        b = default_baseline()
        update_with_reading(b, _hrv(70.0, hf_power=2000.0), 75.0, sleep_quality=0.95, now=NOW)
        assert b.resting_rmssd == pytest.approx(52.0)
        assert b.resting_hr == pytest.approx(66.0)
        assert b.resting_hf_power == pytest.approx(1100.0)
        assert b.resting_lf_power == pytest.approx(1500.0)
        assert b.avg_sleep_quality == pytest.approx(0.77)
        assert b.total_readings == 1

    def test_invalid_hrv_skipped(self):
        b = default_baseline()
        update_with_reading(b, _hrv(70.0, is_valid=False), 75.0, now=NOW)
        assert b.total_readings == 0
        assert b.resting_rmssd == 50.0

    def test_invalid_heart_rate_skipped(self):
        b = default_baseline()
        update_with_reading(b, _hrv(), -5.0, now=NOW)
        assert b.total_readings == 0

    def test_day_counting(self):
        b = default_baseline()
        update_with_reading(b, _hrv(), 70.0, now=NOW)
        assert b.days_of_data == 1
        update_with_reading(b, _hrv(), 70.0, now=NOW + timedelta(hours=2))
        assert b.days_of_data == 1
        update_with_reading(b, _hrv(), 70.0, now=NOW + timedelta(days=1))
        assert b.days_of_data == 2
        assert b.last_updated == NOW + timedelta(days=1)

    def test_calibration_is_sticky(self):
        b = default_baseline()
        for day in range(14):
            update_with_reading(b, _hrv(), 70.0, now=NOW + timedelta(days=day))
        assert b.days_of_data == 14
        assert b.is_calibrated
        b.days_of_data = 3
        update_with_reading(b, _hrv(), 70.0, now=NOW + timedelta(days=14, hours=1))
        assert b.is_calibrated


# ── Circadian ────────────────────────────────────────────────


class TestCircadian:
    def test_first_observation_sets_modifier(self):
        b = default_baseline()
        update_circadian_modifier(b, 9, 60.0)
        assert b.circadian_hrv_modifiers[9] == pytest.approx(1.2)

    def test_later_observations_blend(self):
        b = default_baseline()
        update_circadian_modifier(b, 9, 60.0)
        update_circadian_modifier(b, 9, 40.0)
        assert b.circadian_hrv_modifiers[9] == pytest.approx(1.2 * 0.8 + 0.8 * 0.2)

    def test_adjustment(self):
        b = default_baseline()
        b.circadian_hrv_modifiers[9] = 1.2
        assert circadian_adjustment(b, 60.0, 9) == pytest.approx(50.0)
        assert circadian_adjustment(b, 60.0, 10) == 60.0


# ── Persistence hooks ────────────────────────────────────────


class TestBaselineStore:
    def test_missing_user_gets_population_default(self):
        store = InMemoryBaselineStore()
        b = load_or_default(store, "U1")
        assert b.resting_rmssd == 50.0
        assert b.lf_percentiles == LF_POPULATION_PERCENTILES

    def test_saved_baseline_is_returned(self, calibrated_baseline):
        store = InMemoryBaselineStore()
        store.save("U1", calibrated_baseline)
        loaded = load_or_default(store, "U1")
        assert loaded.is_calibrated
        assert loaded.days_of_data == 20
        assert loaded is not calibrated_baseline
