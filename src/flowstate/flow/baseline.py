"""Personal baseline management — percentile ranks, EWMA updates, circadian norms.

The baseline is a long-lived :class:`BiometricBaseline` value owned by the
caller.  Scoring never mutates it; the update functions here are the only
writers and are invoked explicitly, once per valid reading.

Persistence is external: :class:`BaselineStore` describes the load/save
hooks the engine needs, and :class:`InMemoryBaselineStore` is a
process-local implementation for tests and single-run tools.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Protocol, Sequence

import structlog

from flowstate.flow.models import (
    LF_POPULATION_PERCENTILES,
    RMSSD_POPULATION_PERCENTILES,
    BiometricBaseline,
    HRVMetrics,
)

logger = structlog.get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────

CALIBRATION_DAYS = 14

# Percentile rank at and beyond the outermost distribution points
_RANK_FLOOR = 0.05
_RANK_CEILING = 0.95

# (rank at segment start, rank span) for d0→d1, d1→d2, d2→d3, d3→d4
_SEGMENTS = (
    (0.10, 0.15),
    (0.25, 0.25),
    (0.50, 0.25),
    (0.75, 0.15),
)

# Circadian modifier smoothing (old, new)
_CIRCADIAN_KEEP = 0.8
_CIRCADIAN_BLEND = 0.2


def default_baseline() -> BiometricBaseline:
    """Population-default baseline used before any personal data exists."""
    return BiometricBaseline(
        lf_percentiles=list(LF_POPULATION_PERCENTILES),
        rmssd_percentiles=list(RMSSD_POPULATION_PERCENTILES),
    )


# ── Percentile ranks ─────────────────────────────────────────


def percentile_rank(value: float, distribution: Sequence[float]) -> float:
    """Rank *value* against a [10th, 25th, 50th, 75th, 90th] distribution.

    Piecewise-linear between the five points, clamped to 0.05 / 0.95 at the
    extremes.  Returns a neutral 0.5 when fewer than five points exist or
    the value is not a finite number.
    """
    if len(distribution) < 5 or not math.isfinite(value):
        logger.debug("baseline.percentile_unknown", points=len(distribution))
        return 0.5

    d = distribution
    if value <= d[0]:
        return _RANK_FLOOR
    if value >= d[4]:
        return _RANK_CEILING

    for i, (start, span) in enumerate(_SEGMENTS):
        lo, hi = d[i], d[i + 1]
        if value <= hi:
            width = hi - lo
            if width <= 0:
                return start
            return start + (value - lo) / width * span

    return _RANK_CEILING


# ── EWMA updates ─────────────────────────────────────────────


def _ewma(old: float, new: float, alpha: float) -> float:
    return old * (1 - alpha) + new * alpha


def _ewma_std(old_std: float, old_mean: float, new_val: float, alpha: float) -> float:
    """Approximate running std via EWMA of squared deviations."""
    deviation_sq = (new_val - old_mean) ** 2
    return math.sqrt(alpha * deviation_sq + (1 - alpha) * old_std ** 2)


def update_with_reading(
    baseline: BiometricBaseline,
    hrv: HRVMetrics,
    heart_rate: float,
    sleep_quality: float | None = None,
    *,
    now: datetime | None = None,
    calibration_days: int = CALIBRATION_DAYS,
) -> BiometricBaseline:
    """Fold one valid reading into the baseline (in place) and return it.

    Invalid HRV snapshots and non-positive heart rates are ignored.  A
    new calendar day since ``last_updated`` counts as one more day of
    data; calibration is sticky once reached.
    """
    if not hrv.is_valid or hrv.rmssd <= 0:
        logger.debug("baseline.update_skipped", reason="invalid_hrv")
        return baseline
    if not math.isfinite(heart_rate) or heart_rate <= 0:
        logger.debug("baseline.update_skipped", reason="invalid_heart_rate")
        return baseline

    now = now or datetime.now(timezone.utc)
    alpha = baseline.ewma_alpha

    baseline.resting_rmssd_std = _ewma_std(
        baseline.resting_rmssd_std, baseline.resting_rmssd, hrv.rmssd, alpha
    )
    baseline.resting_rmssd = _ewma(baseline.resting_rmssd, hrv.rmssd, alpha)

    baseline.resting_hr_std = _ewma_std(
        baseline.resting_hr_std, baseline.resting_hr, heart_rate, alpha
    )
    baseline.resting_hr = _ewma(baseline.resting_hr, heart_rate, alpha)

    if hrv.hf_power is not None:
        baseline.resting_hf_power = _ewma(baseline.resting_hf_power, hrv.hf_power, alpha)
    if hrv.lf_power is not None:
        baseline.resting_lf_power = _ewma(baseline.resting_lf_power, hrv.lf_power, alpha)

    if sleep_quality is not None and math.isfinite(sleep_quality):
        clamped = max(0.0, min(1.0, sleep_quality))
        baseline.avg_sleep_quality = _ewma(baseline.avg_sleep_quality, clamped, alpha)

    if baseline.last_updated is None:
        baseline.days_of_data += 1
    elif _as_utc(now).date() > _as_utc(baseline.last_updated).date():
        baseline.days_of_data += 1

    baseline.total_readings += 1
    baseline.last_updated = now

    if not baseline.is_calibrated and baseline.days_of_data >= calibration_days:
        baseline.is_calibrated = True
        logger.info("baseline.calibrated", days_of_data=baseline.days_of_data)

    return baseline


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ── Circadian normalisation ──────────────────────────────────


def circadian_adjustment(baseline: BiometricBaseline, value: float, hour: int) -> float:
    """Normalise a reading taken at *hour* to its baseline-equivalent value."""
    modifier = baseline.circadian_hrv_modifiers.get(hour % 24, 1.0)
    if modifier <= 0:
        modifier = 1.0
    return value / modifier


def update_circadian_modifier(
    baseline: BiometricBaseline,
    hour: int,
    rmssd: float,
) -> BiometricBaseline:
    """Blend this hour's RMSSD-to-baseline ratio into its modifier."""
    if rmssd <= 0 or not math.isfinite(rmssd):
        return baseline
    ratio = rmssd / max(1.0, baseline.resting_rmssd)
    hour = hour % 24
    existing = baseline.circadian_hrv_modifiers.get(hour)
    if existing is None:
        baseline.circadian_hrv_modifiers[hour] = ratio
    else:
        baseline.circadian_hrv_modifiers[hour] = (
            existing * _CIRCADIAN_KEEP + ratio * _CIRCADIAN_BLEND
        )
    return baseline


# ── Persistence hooks ────────────────────────────────────────


class BaselineStore(Protocol):
    """Load/save hooks for a per-user baseline."""

    def load(self, user_id: str) -> BiometricBaseline | None: ...

    def save(self, user_id: str, baseline: BiometricBaseline) -> None: ...


class InMemoryBaselineStore:
    """Process-local :class:`BaselineStore` keeping JSON-serialised copies."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def load(self, user_id: str) -> BiometricBaseline | None:
        raw = self._data.get(user_id)
        if raw is None:
            return None
        return BiometricBaseline.model_validate_json(raw)

    def save(self, user_id: str, baseline: BiometricBaseline) -> None:
        self._data[user_id] = baseline.model_dump_json()


def load_or_default(store: BaselineStore, user_id: str) -> BiometricBaseline:
    """Stored baseline for *user_id*, or the population default."""
    baseline = store.load(user_id)
    if baseline is None:
        logger.info("baseline.using_population_default", user=user_id)
        return default_baseline()
    return baseline
