from __future__ import annotations

from datetime import datetime
import hashlib

from statewatch.persistence.types import as_utc
from statewatch.services.audit import ACTION_STATUS_TRANSITION


def compute_epoch_token(entity_id: str, status: str, status_changed_at: datetime) -> str:
    # Derived from the transition itself, never from run time, so every run agrees on it.
    changed_at = as_utc(status_changed_at).isoformat(timespec="microseconds")
    raw = f"{entity_id}|{status}|{changed_at}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def audit_dedupe_key(epoch_token: str) -> str:
    return f"{ACTION_STATUS_TRANSITION}:{epoch_token}"
