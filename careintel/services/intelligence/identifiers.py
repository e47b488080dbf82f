"""
Deterministic identifiers, fingerprints and time helpers.

Derived records are keyed by uuid5 over their natural key so that rerunning a
pass over the same inputs addresses the same rows.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone, timedelta
from typing import Any

CAREINTEL_NAMESPACE = uuid.UUID("6f1c2a8e-93d4-5b0e-a7f2-3c9d1e4b8a60")


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention for every timestamp"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _key_part(part: Any) -> str:
    if isinstance(part, datetime):
        return to_naive_utc(part).isoformat()
    if hasattr(part, "value"):
        return str(part.value)
    return str(part)


def deterministic_id(*parts: Any) -> str:
    """uuid5 over the '|'-joined natural key"""
    return str(uuid.uuid5(CAREINTEL_NAMESPACE, "|".join(_key_part(p) for p in parts)))


def fingerprint(payload: Any) -> str:
    """Stable sha256 of a JSON-serialisable payload"""
    encoded = json.dumps(payload, sort_keys=True, default=_key_part, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def floor_to_bucket(ts: datetime, bucket_minutes: int) -> datetime:
    """Start of the bucket containing ts (buckets aligned to midnight UTC)"""
    ts = to_naive_utc(ts)
    midnight = ts.replace(hour=0, minute=0, second=0, microsecond=0)
    offset_minutes = int((ts - midnight).total_seconds() // 60)
    return midnight + timedelta(minutes=offset_minutes - offset_minutes % bucket_minutes)


def escalation_id_for(issue_id: str) -> str:
    """One escalation per issue"""
    return deterministic_id("escalation", issue_id)
