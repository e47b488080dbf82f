"""
Escalation API Router

SLA-tracked escalations for high-priority issues. Every status change
carries the version the caller last read; a concurrent change returns 409.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from careintel.database import get_db
from careintel.models.escalation_models import Escalation
from careintel.services.intelligence.config_service import IntelligenceConfigService
from careintel.services.intelligence.escalation_tracker import EscalationTracker
from careintel.services.intelligence.identifiers import utcnow

router = APIRouter(prefix="/api/v1/escalations", tags=["Escalations"])


class EscalationResponse(BaseModel):
    id: str
    issue_id: str
    tenant_id: str
    subject_id: str
    priority_tier: str
    sla_hours: float
    escalated_at: datetime
    required_response_by: datetime
    status: str
    assigned_to: Optional[str] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    version: int
    is_breached: bool


class AuditEntryResponse(BaseModel):
    action: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    actor: str
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TransitionRequest(BaseModel):
    actor: str
    expected_version: int = Field(..., ge=1)


class ResolveRequest(TransitionRequest):
    notes: Optional[str] = None


class AssignRequest(BaseModel):
    assignee: str
    actor: str


class SLAMetricsResponse(BaseModel):
    total: int
    open: int
    pending: int
    resolved: int
    breached: int
    acknowledged_late: int
    critical_pending: int
    avg_response_hours: Optional[float] = None


def _tracker(db: Session, tenant_id: str) -> EscalationTracker:
    return EscalationTracker(db, IntelligenceConfigService().get_config(db, tenant_id))


def _to_response(escalation: Escalation, now: datetime) -> EscalationResponse:
    # is_breached is derived at read time, not a column
    columns = {column.name: getattr(escalation, column.name) for column in Escalation.__table__.columns}
    return EscalationResponse(**columns, is_breached=escalation.is_breached(now))


@router.get("/{tenant_id}", response_model=List[EscalationResponse])
def list_escalations(
    tenant_id: str,
    status: Optional[str] = None,
    include_resolved: bool = False,
    db: Session = Depends(get_db)
):
    """Escalations for the dashboard, most severe tier and earliest deadline first"""
    now = utcnow()
    escalations = _tracker(db, tenant_id).list_escalations(
        tenant_id, status=status, include_resolved=include_resolved
    )
    return [_to_response(e, now) for e in escalations]


@router.get("/{tenant_id}/sla-metrics", response_model=SLAMetricsResponse)
def get_sla_metrics(tenant_id: str, db: Session = Depends(get_db)):
    return _tracker(db, tenant_id).get_sla_metrics(tenant_id)


@router.get("/{tenant_id}/{escalation_id}", response_model=EscalationResponse)
def get_escalation(tenant_id: str, escalation_id: str, db: Session = Depends(get_db)):
    escalation = _tracker(db, tenant_id).get_escalation(escalation_id, tenant_id=tenant_id)
    return _to_response(escalation, utcnow())


@router.get("/{tenant_id}/{escalation_id}/audit", response_model=List[AuditEntryResponse])
def get_escalation_audit(tenant_id: str, escalation_id: str, db: Session = Depends(get_db)):
    tracker = _tracker(db, tenant_id)
    tracker.get_escalation(escalation_id, tenant_id=tenant_id)
    return tracker.get_audit_log(escalation_id)


@router.post("/{tenant_id}/{escalation_id}/acknowledge", response_model=EscalationResponse)
def acknowledge_escalation(
    tenant_id: str,
    escalation_id: str,
    request: TransitionRequest,
    db: Session = Depends(get_db)
):
    """PENDING -> ACKNOWLEDGED; records who responded and when"""
    tracker = _tracker(db, tenant_id)
    tracker.get_escalation(escalation_id, tenant_id=tenant_id)
    escalation = tracker.acknowledge(escalation_id, request.actor, request.expected_version)
    return _to_response(escalation, utcnow())


@router.post("/{tenant_id}/{escalation_id}/start", response_model=EscalationResponse)
def start_escalation(
    tenant_id: str,
    escalation_id: str,
    request: TransitionRequest,
    db: Session = Depends(get_db)
):
    """ACKNOWLEDGED -> IN_PROGRESS"""
    tracker = _tracker(db, tenant_id)
    tracker.get_escalation(escalation_id, tenant_id=tenant_id)
    escalation = tracker.start_progress(escalation_id, request.actor, request.expected_version)
    return _to_response(escalation, utcnow())


@router.post("/{tenant_id}/{escalation_id}/resolve", response_model=EscalationResponse)
def resolve_escalation(
    tenant_id: str,
    escalation_id: str,
    request: ResolveRequest,
    db: Session = Depends(get_db)
):
    """IN_PROGRESS -> RESOLVED"""
    tracker = _tracker(db, tenant_id)
    tracker.get_escalation(escalation_id, tenant_id=tenant_id)
    escalation = tracker.resolve(escalation_id, request.actor, request.expected_version, notes=request.notes)
    return _to_response(escalation, utcnow())


@router.post("/{tenant_id}/{escalation_id}/assign", response_model=EscalationResponse)
def assign_escalation(
    tenant_id: str,
    escalation_id: str,
    request: AssignRequest,
    db: Session = Depends(get_db)
):
    tracker = _tracker(db, tenant_id)
    tracker.get_escalation(escalation_id, tenant_id=tenant_id)
    escalation = tracker.assign(escalation_id, request.assignee, request.actor)
    return _to_response(escalation, utcnow())
