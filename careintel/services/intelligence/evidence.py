"""
Evidence references attached to risk factors and explanations.

The set of variants is closed: every consumer dispatches with an isinstance
chain and raises on anything else, so adding a variant forces every handler
to be revisited.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Union, Dict, Any


@dataclass(frozen=True)
class ObservationRef:
    observation_id: str
    metric_type: str
    value: float
    unit: str
    recorded_at: datetime
    source_confidence: str


@dataclass(frozen=True)
class AnomalyRef:
    anomaly_id: str
    observation_id: str
    metric_type: str
    observed_value: float
    baseline_mean: float
    deviation: float
    direction: str
    severity: str
    detection_method: str
    confidence: float


@dataclass(frozen=True)
class RuleTriggerRef:
    rule_trigger_id: str
    rule_key: str
    observed_value: float
    threshold: float
    severity: str
    confidence: float


EvidenceRef = Union[ObservationRef, AnomalyRef, RuleTriggerRef]


def evidence_kind(ref: EvidenceRef) -> str:
    if isinstance(ref, ObservationRef):
        return "observation"
    elif isinstance(ref, AnomalyRef):
        return "anomaly"
    elif isinstance(ref, RuleTriggerRef):
        return "rule_trigger"
    raise TypeError(f"Unsupported evidence type: {type(ref).__name__}")


def evidence_to_dict(ref: EvidenceRef) -> Dict[str, Any]:
    """JSON-ready form with a 'kind' tag"""
    data = asdict(ref)
    if isinstance(ref, ObservationRef):
        data["recorded_at"] = ref.recorded_at.isoformat()
    data["kind"] = evidence_kind(ref)
    return data


def evidence_from_dict(data: Dict[str, Any]) -> EvidenceRef:
    payload = dict(data)
    kind = payload.pop("kind", None)
    if kind == "observation":
        recorded_at = payload["recorded_at"]
        if isinstance(recorded_at, str):
            payload["recorded_at"] = datetime.fromisoformat(recorded_at)
        return ObservationRef(**payload)
    elif kind == "anomaly":
        return AnomalyRef(**payload)
    elif kind == "rule_trigger":
        return RuleTriggerRef(**payload)
    raise ValueError(f"Unknown evidence kind: {kind}")
