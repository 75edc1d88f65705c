"""Engine settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from flowstate.flow.models import Chronotype

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Runtime configuration for the flow-state engine.

    Every variable lives in the flat ``FLOWSTATE_`` namespace, read from
    the environment first and then from a *.env* file at the project root.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLOWSTATE_",
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ── Session ───────────────────────────────────────────────
    history_size: int = Field(10, ge=1)
    seconds_per_reading: float = Field(45.0, gt=0)
    default_chronotype: Chronotype = Chronotype.INTERMEDIATE

    # ── Baseline ──────────────────────────────────────────────
    baseline_ewma_alpha: float = Field(0.1, gt=0.0, le=1.0)
    calibration_days: int = Field(14, ge=1)

    # ── HRV processing ────────────────────────────────────────
    hrv_min_samples: int = Field(30, ge=2)
    hrv_max_artifact_pct: float = Field(0.05, ge=0.0, le=1.0)
    spectral_min_window_seconds: float = 120.0

    def hrv_options(self) -> dict[str, float | int]:
        """Keyword arguments for :func:`flowstate.flow.hrv.compute_hrv_metrics`."""
        return {
            "min_samples": self.hrv_min_samples,
            "max_artifact_pct": self.hrv_max_artifact_pct,
            "spectral_min_window": self.spectral_min_window_seconds,
        }


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` instance."""
    return Settings()
