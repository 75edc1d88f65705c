"""HRV processing — artifact rejection, time-domain and spectral metrics.

Turns a window of inter-beat (RR) intervals into an :class:`HRVMetrics`
snapshot.

Pipeline
--------
1. **Artifact rejection** — physiological bounds (300–2000 ms), absolute
   jumps (>300 ms) and relative jumps (>20 %) against the last accepted beat.
2. **Time domain** — RMSSD, SDNN, SDSD, NN50 / pNN50, mean RR / HR.
3. **Frequency domain** — only for windows of at least 2 minutes: the RR
   series is interpolated onto a uniform 4 Hz grid, detrended, and a
   Welch periodogram is integrated over the VLF / LF / HF bands; LF and
   HF are also reported in normalised units.

Degraded inputs (no beat-level data) are handled by
:func:`metrics_from_reading`, which tags each snapshot with the
provenance of its RMSSD value.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import NamedTuple, Sequence

import numpy as np
import structlog
from scipy import signal as sig
from scipy.integrate import trapezoid

from flowstate.flow.models import BiometricReading, HRVMetrics, RMSSDSource

logger = structlog.get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────

MIN_RR_MS = 300.0  # 200 bpm
MAX_RR_MS = 2000.0  # 30 bpm
MAX_RR_DELTA_MS = 300.0
MAX_RR_RELATIVE_CHANGE = 0.20

MIN_SAMPLES = 30
MAX_ARTIFACT_PCT = 0.05

SPECTRAL_MIN_WINDOW_S = 120.0
SPECTRAL_MIN_BEATS = 120
INTERP_FS = 4.0  # Hz

VLF_BAND = (0.003, 0.04)
LF_BAND = (0.04, 0.15)
HF_BAND = (0.15, 0.40)

# Empirical RMSSD / SDNN ratio at rest
RMSSD_SDNN_RATIO = 1.4


@dataclass
class SpectralPower:
    """Band powers in ms²."""

    vlf: float
    lf: float
    hf: float
    total: float

    @property
    def lf_hf_ratio(self) -> float | None:
        if self.hf <= 0:
            return None
        return self.lf / self.hf

    def normalized_units(self) -> tuple[float | None, float | None]:
        """LF and HF as a percentage of ``total - vlf``."""
        denominator = self.total - self.vlf
        if denominator <= 0:
            return None, None
        return self.lf / denominator * 100.0, self.hf / denominator * 100.0


class BaselineComparison(NamedTuple):
    deviation_pct: float
    interpretation: str


# ---------------------------------------------------------------------------
# Artifact rejection
# ---------------------------------------------------------------------------


def filter_artifacts(rr_intervals: Sequence[float]) -> tuple[list[float], int]:
    """Drop physiologically implausible beats.

    Returns ``(cleaned, artifact_count)``.  Each beat is compared against
    the last *accepted* beat, so a single ectopic beat does not also
    reject its successor.
    """
    cleaned: list[float] = []
    artifacts = 0
    previous: float | None = None

    for rr in rr_intervals:
        rr = float(rr)
        is_artifact = not math.isfinite(rr) or rr < MIN_RR_MS or rr > MAX_RR_MS
        if not is_artifact and previous is not None:
            delta = abs(rr - previous)
            if delta > MAX_RR_DELTA_MS or delta / previous > MAX_RR_RELATIVE_CHANGE:
                is_artifact = True

        if is_artifact:
            artifacts += 1
        else:
            cleaned.append(rr)
            previous = rr

    return cleaned, artifacts


# ---------------------------------------------------------------------------
# Time domain
# ---------------------------------------------------------------------------


def compute_rmssd(rr_intervals: Sequence[float]) -> float | None:
    """Root mean square of successive RR differences (ms).

    Returns None if fewer than 2 intervals are provided.
    """
    if len(rr_intervals) < 2:
        return None
    diffs = np.diff(np.asarray(rr_intervals, dtype=np.float64))
    return float(np.sqrt(np.mean(diffs ** 2)))


def compute_sdnn(rr_intervals: Sequence[float]) -> float | None:
    """Sample standard deviation of RR intervals (ms)."""
    if len(rr_intervals) < 2:
        return None
    return float(np.std(np.asarray(rr_intervals, dtype=np.float64), ddof=1))


def compute_nn50(rr_intervals: Sequence[float]) -> int | None:
    """Count of successive differences above 50 ms."""
    if len(rr_intervals) < 2:
        return None
    diffs = np.abs(np.diff(np.asarray(rr_intervals, dtype=np.float64)))
    return int(np.count_nonzero(diffs > 50.0))


def compute_pnn50(rr_intervals: Sequence[float]) -> float | None:
    """Percentage of successive differences above 50 ms."""
    nn50 = compute_nn50(rr_intervals)
    if nn50 is None:
        return None
    return nn50 / (len(rr_intervals) - 1) * 100.0


def compute_sdsd(rr_intervals: Sequence[float]) -> float | None:
    """Sample standard deviation of successive RR differences (ms)."""
    if len(rr_intervals) < 2:
        return None
    diffs = np.diff(np.asarray(rr_intervals, dtype=np.float64))
    if len(diffs) < 2:
        return 0.0
    return float(np.std(diffs, ddof=1))


def approximate_rmssd_from_sdnn(sdnn: float) -> float:
    """RMSSD ≈ SDNN × 1.4.

    An empirical resting ratio, not a measurement.  Snapshots built from it
    carry ``RMSSDSource.SDNN_APPROXIMATION``.
    """
    return max(0.0, sdnn) * RMSSD_SDNN_RATIO


# ---------------------------------------------------------------------------
# Frequency domain
# ---------------------------------------------------------------------------


def _band_power(freqs: np.ndarray, psd: np.ndarray, band: tuple[float, float]) -> float:
    lo, hi = band
    mask = (freqs >= lo) & (freqs < hi)
    n_bins = np.count_nonzero(mask)
    if n_bins == 0:
        return 0.0
    if n_bins == 1:
        return float(psd[mask][0] * (freqs[1] - freqs[0]))
    return float(trapezoid(psd[mask], freqs[mask]))


def spectral_power(rr_intervals: Sequence[float], fs: float = INTERP_FS) -> SpectralPower:
    """Welch spectral decomposition of an RR series.

    Args:
        rr_intervals: Cleaned successive RR intervals in ms.
        fs: Resampling rate in Hz.
    """
    rr = np.asarray(rr_intervals, dtype=np.float64)
    if len(rr) < 4:
        return SpectralPower(vlf=0.0, lf=0.0, hf=0.0, total=0.0)

    # Beat times in seconds; each RR value is placed at the beat that ends it
    t_beats = np.cumsum(rr) / 1000.0
    t_uniform = np.arange(t_beats[0], t_beats[-1], 1.0 / fs)
    if len(t_uniform) < 16:
        return SpectralPower(vlf=0.0, lf=0.0, hf=0.0, total=0.0)

    rr_uniform = np.interp(t_uniform, t_beats, rr)
    rr_uniform = sig.detrend(rr_uniform, type="linear")

    nperseg = min(len(rr_uniform), 256)
    freqs, psd = sig.welch(rr_uniform, fs=fs, window="hann", nperseg=nperseg)

    vlf = _band_power(freqs, psd, VLF_BAND)
    lf = _band_power(freqs, psd, LF_BAND)
    hf = _band_power(freqs, psd, HF_BAND)
    total = _band_power(freqs, psd, (VLF_BAND[0], HF_BAND[1]))
    return SpectralPower(vlf=max(0.0, vlf), lf=max(0.0, lf), hf=max(0.0, hf), total=max(0.0, total))


# ---------------------------------------------------------------------------
# Window analysis
# ---------------------------------------------------------------------------


def _invalid_metrics(
    window_seconds: float,
    artifact_count: int,
    sample_count: int,
    reason: str,
) -> HRVMetrics:
    logger.warning("hrv.invalid_window", reason=reason, samples=sample_count)
    return HRVMetrics(
        rmssd=0.0,
        sample_count=sample_count,
        artifact_count=artifact_count,
        artifact_percentage=1.0,
        window_seconds=window_seconds,
        is_valid=False,
    )


def compute_hrv_metrics(
    rr_intervals: Sequence[float],
    timestamps: Sequence[float] | None = None,
    window_seconds: float | None = None,
    *,
    min_samples: int = MIN_SAMPLES,
    max_artifact_pct: float = MAX_ARTIFACT_PCT,
    spectral_min_window: float = SPECTRAL_MIN_WINDOW_S,
) -> HRVMetrics:
    """Compute an :class:`HRVMetrics` snapshot for one window.

    Args:
        rr_intervals: RR intervals in ms, in arrival order.
        timestamps: Optional beat timestamps in seconds (same length).
        window_seconds: Explicit window length; otherwise derived from the
            timestamps, or from the RR sum.

    Raises:
        ValueError: if *timestamps* is given with a different length.
    """
    if timestamps is not None and len(timestamps) != len(rr_intervals):
        raise ValueError("timestamps and rr_intervals must have the same length")

    if window_seconds is None:
        if timestamps is not None and len(timestamps) >= 2:
            window_seconds = float(timestamps[-1]) - float(timestamps[0])
        else:
            window_seconds = float(np.nansum(np.asarray(rr_intervals, dtype=np.float64))) / 1000.0

    cleaned, artifacts = filter_artifacts(rr_intervals)
    total = len(rr_intervals)

    if len(cleaned) < min_samples:
        return _invalid_metrics(
            window_seconds,
            artifacts,
            len(cleaned),
            reason=f"insufficient samples ({len(cleaned)} < {min_samples})",
        )

    artifact_pct = artifacts / max(1, total)
    rmssd = compute_rmssd(cleaned) or 0.0
    mean_rr = float(np.mean(cleaned))

    power: SpectralPower | None = None
    lf_nu: float | None = None
    hf_nu: float | None = None
    if window_seconds >= spectral_min_window and len(cleaned) >= SPECTRAL_MIN_BEATS:
        power = spectral_power(cleaned)
        lf_nu, hf_nu = power.normalized_units()

    is_valid = artifact_pct <= max_artifact_pct
    if not is_valid:
        logger.info("hrv.artifact_rate_exceeded", artifact_pct=round(artifact_pct, 3))

    return HRVMetrics(
        rmssd=rmssd,
        sdnn=compute_sdnn(cleaned),
        pnn50=compute_pnn50(cleaned),
        nn50=compute_nn50(cleaned),
        sdsd=compute_sdsd(cleaned),
        mean_rr=mean_rr,
        mean_hr=60000.0 / mean_rr if mean_rr > 0 else None,
        vlf_power=power.vlf if power else None,
        lf_power=power.lf if power else None,
        hf_power=power.hf if power else None,
        total_power=power.total if power else None,
        lf_hf_ratio=power.lf_hf_ratio if power else None,
        lf_nu=lf_nu,
        hf_nu=hf_nu,
        sample_count=len(cleaned),
        artifact_count=artifacts,
        artifact_percentage=min(1.0, artifact_pct),
        window_seconds=window_seconds,
        is_valid=is_valid,
        rmssd_source=RMSSDSource.BEAT_TO_BEAT,
    )


def rolling_hrv(
    rr_intervals: Sequence[float],
    timestamps: Sequence[float],
    window_seconds: float = 60.0,
    overlap_seconds: float = 30.0,
    **kwargs,
) -> list[HRVMetrics]:
    """Sliding-window HRV over a longer recording.

    Windows advance by ``window_seconds - overlap_seconds``; windows with
    too few beats still yield an (invalid) snapshot so callers see gaps.
    """
    if len(timestamps) != len(rr_intervals):
        raise ValueError("timestamps and rr_intervals must have the same length")
    if len(rr_intervals) == 0:
        return []
    step = window_seconds - overlap_seconds
    if step <= 0:
        raise ValueError("overlap_seconds must be smaller than window_seconds")

    ts = np.asarray(timestamps, dtype=np.float64)
    rr = np.asarray(rr_intervals, dtype=np.float64)
    results: list[HRVMetrics] = []

    window_start = ts[0]
    while window_start + window_seconds <= ts[-1]:
        mask = (ts >= window_start) & (ts < window_start + window_seconds)
        results.append(
            compute_hrv_metrics(
                rr[mask].tolist(),
                window_seconds=window_seconds,
                **kwargs,
            )
        )
        window_start += step

    return results


def metrics_from_reading(reading: BiometricReading, **kwargs) -> HRVMetrics | None:
    """Best available HRV snapshot for a wearable-bridge reading.

    Preference order: beat-level intervals, a precomputed RMSSD, then the
    SDNN approximation.  Returns None when the reading carries no HRV data.
    """
    if reading.inter_beat_intervals:
        return compute_hrv_metrics(
            reading.inter_beat_intervals,
            timestamps=reading.interval_timestamps,
            **kwargs,
        )

    if reading.precomputed_rmssd is not None and reading.precomputed_rmssd > 0:
        return HRVMetrics(
            rmssd=reading.precomputed_rmssd,
            sdnn=reading.sdnn,
            rmssd_source=RMSSDSource.PRECOMPUTED,
            timestamp=reading.timestamp,
        )

    if reading.sdnn is not None and reading.sdnn > 0:
        return HRVMetrics(
            rmssd=approximate_rmssd_from_sdnn(reading.sdnn),
            sdnn=reading.sdnn,
            rmssd_source=RMSSDSource.SDNN_APPROXIMATION,
            timestamp=reading.timestamp,
        )

    return None



# ---------------------------------------------------------------------------
# Baseline comparison
# ---------------------------------------------------------------------------


def compare_to_baseline(current: float, baseline: float) -> BaselineComparison:
    """Percentage deviation of an HRV value from its personal baseline.

    Bands are ±10 % (normal) and ±20 % (significant).  A non-positive
    baseline yields a zero deviation.
    """
    if not baseline > 0:
        return BaselineComparison(0.0, "No baseline established")

    deviation = (current - baseline) / baseline * 100.0
    if deviation < -20:
        interpretation = "Significantly below baseline - prioritize recovery"
    elif deviation < -10:
        interpretation = "Below baseline - consider lighter work"
    elif deviation < 10:
        interpretation = "Within normal range"
    elif deviation < 20:
        interpretation = "Above baseline - good recovery state"
    else:
        interpretation = "Significantly above baseline - excellent condition"
    return BaselineComparison(deviation, interpretation)
