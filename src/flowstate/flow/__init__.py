"""Flow-state estimation — fusing biometric, behavioural and contextual signals.

This package estimates a person's real-time cognitive flow state as a
0–100 score, a discrete state, a confidence tier and a short list of
recommendations.

Architecture
------------
1. **HRV processing** (`hrv.py`)
   - Artifact rejection over raw inter-beat intervals
   - Time-domain metrics (RMSSD, SDNN, pNN50)
   - Welch spectral LF / HF power for windows of 2 minutes or more

2. **Personal baseline** (`baseline.py`)
   - EWMA resting norms and percentile-rank lookups
   - Circadian normalisation and 14-day calibration tracking

3. **Biometric scoring** (`biometric.py`)
   - Parasympathetic, inverted-U sympathetic, HR-zone, sleep and signal
     quality sub-scores
   - Overload / boredom overrides and persistence-gated flow states

4. **Fusion** (`fusion.py`)
   - Dynamic weighting when the wearable is absent
   - Fatigue capping, hysteresis and confidence arbitration
   - Recommendation synthesis and listener notification

Collaborators
-------------
The behavioural scorer, fatigue detector and chronotype engine are
protocols (`collaborators.py`); default fatigue and chronotype
implementations are included.

Limitations
-----------
- Scores are heuristic estimates, never diagnoses.
- The time-domain LF estimate (SDNN² − RMSSD²) and the half-ratio
  percentile fallback are approximations and are labelled as such.
"""

from flowstate.flow.models import (
    AssessmentConfidence,
    BiometricBaseline,
    BiometricConfidence,
    BiometricFlowResult,
    BiometricState,
    Chronotype,
    DataSource,
    FatigueLevel,
    FlowState,
    HRVMetrics,
    UnifiedFlowAssessment,
    WindowQuality,
)

__all__ = [
    "AssessmentConfidence",
    "BiometricBaseline",
    "BiometricConfidence",
    "BiometricFlowResult",
    "BiometricState",
    "Chronotype",
    "DataSource",
    "FatigueLevel",
    "FlowState",
    "HRVMetrics",
    "UnifiedFlowAssessment",
    "WindowQuality",
]
