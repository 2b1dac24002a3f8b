from statewatch.services.detector.epochs import audit_dedupe_key, compute_epoch_token
from statewatch.services.detector.runner import DetectorSummary, UnitSummary, run_detector

__all__ = [
    "DetectorSummary",
    "UnitSummary",
    "audit_dedupe_key",
    "compute_epoch_token",
    "run_detector",
]
