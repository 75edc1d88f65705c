"""Command-line entrypoint — run HRV analysis or a one-off flow assessment."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from flowstate.config import get_settings
from flowstate.flow.fusion import FusionInputs, create_session_engine
from flowstate.flow.hrv import compute_hrv_metrics
from flowstate.flow.models import (
    BehavioralFeatures,
    BehavioralResult,
    BiometricBaseline,
    HRVMetrics,
)
from flowstate.logger import setup_logging


class StaticBehavioralScorer:
    """Behavioural scorer that replays a precomputed result."""

    def __init__(self, result: BehavioralResult) -> None:
        self._result = result

    def score(self, features: BehavioralFeatures) -> BehavioralResult:
        return self._result


def _read_json(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _hrv_from_payload(payload: Any, hrv_options: dict) -> HRVMetrics:
    if isinstance(payload, list):
        return compute_hrv_metrics(payload, **hrv_options)
    if not isinstance(payload, dict) or "rr_intervals" not in payload:
        raise ValueError("expected a list of RR intervals or an object with 'rr_intervals'")
    return compute_hrv_metrics(
        payload["rr_intervals"],
        timestamps=payload.get("timestamps"),
        window_seconds=payload.get("window_seconds"),
        **hrv_options,
    )


def run_hrv(path: str) -> str:
    settings = get_settings()
    metrics = _hrv_from_payload(_read_json(path), settings.hrv_options())
    return metrics.model_dump_json(indent=2)


def run_assess(path: str) -> str:
    """Assess one cycle from a JSON document.

    The behavioural model is external, so its output is given directly
    under ``behavioral`` (``score``, optional ``confidence`` and
    ``recommendations``).  An ``rr_intervals`` list is processed into the
    HRV window; ``baseline`` optionally carries a stored baseline.
    """
    settings = get_settings()
    doc = _read_json(path)
    if not isinstance(doc, dict):
        raise ValueError("assessment input must be a JSON object")

    behavioral = BehavioralResult.model_validate(doc.get("behavioral", {}))
    baseline = None
    if doc.get("baseline") is not None:
        baseline = BiometricBaseline.model_validate(doc["baseline"])

    fields = {k: v for k, v in doc.items() if k not in ("behavioral", "baseline", "rr_intervals", "timestamps")}
    fields.setdefault("behavioral_features", {})
    fields.setdefault("chronotype", settings.default_chronotype)
    if doc.get("rr_intervals"):
        fields["hrv"] = _hrv_from_payload(doc, settings.hrv_options())
    inputs = FusionInputs.model_validate(fields)

    engine = create_session_engine(StaticBehavioralScorer(behavioral), baseline, settings)
    assessment = engine.assess(inputs)
    return json.dumps(
        {
            **assessment.model_dump(mode="json"),
            "summary": assessment.summary,
            "status_line": assessment.status_line,
        },
        indent=2,
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="flowstate",
        description="Real-time flow-state estimation from biometric and behavioural signals.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── hrv ───────────────────────────────────────────────────
    hrv_parser = sub.add_parser("hrv", help="Compute HRV metrics from RR intervals.")
    hrv_parser.add_argument("file", help="JSON file with RR intervals ('-' for stdin).")

    # ── assess ────────────────────────────────────────────────
    assess_parser = sub.add_parser("assess", help="Run one fused flow assessment.")
    assess_parser.add_argument("file", help="JSON file with assessment inputs ('-' for stdin).")

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    try:
        if args.command == "hrv":
            print(run_hrv(args.file))
        elif args.command == "assess":
            print(run_assess(args.file))
        else:
            parser.print_help()
            sys.exit(1)
    except (OSError, ValueError, ValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
