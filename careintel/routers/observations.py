"""
Observation Ingestion API Endpoints

Subject registration and observation ingestion. Invalid observations are
rejected with 422 and the list of reasons; they are never clamped.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field

from careintel.database import get_db
from careintel.services.intelligence.config_service import IntelligenceConfigService
from careintel.services.intelligence.observation_aggregator import ObservationAggregator, ObservationInput


router = APIRouter(prefix="/api/v1", tags=["Observations"])


# Request/Response Models
class SubjectRequest(BaseModel):
    tenant_id: str
    subject_id: str
    subject_type: str = Field(..., description="RESIDENT or CAREGIVER")
    display_label: Optional[str] = Field(None, description="Non-identifying label, e.g. a room number")
    context_flags: List[str] = []
    is_active: bool = True


class SubjectResponse(BaseModel):
    tenant_id: str
    subject_id: str
    subject_type: str
    display_label: Optional[str] = None
    context_flags: List[str]
    is_active: bool

    class Config:
        from_attributes = True


class ObservationRequest(BaseModel):
    tenant_id: str
    subject_id: str
    subject_type: str
    metric_type: str
    value: float
    unit: str
    recorded_at: datetime
    source_confidence: str = Field(..., description="HIGH, MEDIUM or LOW")
    source: str = "api"

    def to_input(self) -> ObservationInput:
        return ObservationInput(**self.model_dump())


class ObservationResponse(BaseModel):
    observation_id: str


class BatchObservationRequest(BaseModel):
    observations: List[ObservationRequest]


class BatchObservationResponse(BaseModel):
    total: int
    accepted: int
    rejected: int
    results: List[Dict[str, Any]]


def _aggregator(db: Session, tenant_id: str) -> ObservationAggregator:
    return ObservationAggregator(db, IntelligenceConfigService().get_config(db, tenant_id))


# Endpoints

@router.post("/subjects", response_model=SubjectResponse, status_code=status.HTTP_201_CREATED)
def register_subject(request: SubjectRequest, db: Session = Depends(get_db)):
    """Register or update a resident or caregiver"""
    subject = _aggregator(db, request.tenant_id).register_subject(
        tenant_id=request.tenant_id,
        subject_id=request.subject_id,
        subject_type=request.subject_type,
        display_label=request.display_label,
        context_flags=request.context_flags,
        is_active=request.is_active,
    )
    return subject


@router.post("/observations", response_model=ObservationResponse, status_code=status.HTTP_201_CREATED)
def submit_observation(request: ObservationRequest, db: Session = Depends(get_db)):
    """
    Submit one observation.

    Idempotent: redelivering the same (subject, metric, recorded_at, source)
    returns the id of the stored observation.
    """
    observation_id = _aggregator(db, request.tenant_id).submit_observation(request.to_input())
    return ObservationResponse(observation_id=observation_id)


@router.post("/observations/batch", response_model=BatchObservationResponse)
def submit_observation_batch(request: BatchObservationRequest, db: Session = Depends(get_db)):
    """Submit many observations; each item reports its own outcome"""
    by_tenant: Dict[str, List[int]] = {}
    for index, item in enumerate(request.observations):
        by_tenant.setdefault(item.tenant_id, []).append(index)

    results: List[Optional[Dict[str, Any]]] = [None] * len(request.observations)
    for tenant_id, indexes in by_tenant.items():
        batch = _aggregator(db, tenant_id).submit_batch(
            [request.observations[i].to_input() for i in indexes]
        )
        for position, outcome in enumerate(batch["results"]):
            outcome["index"] = indexes[position]
            results[indexes[position]] = outcome

    accepted = sum(1 for r in results if r["accepted"])
    return BatchObservationResponse(
        total=len(results),
        accepted=accepted,
        rejected=len(results) - accepted,
        results=results,
    )
