"""
Care Intelligence API Router

Intelligence passes, the prioritized issue worklist, explanations, risk
scores and per-tenant configuration.
"""

import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from careintel.database import get_db, get_session_factory
from careintel.services.intelligence.baseline_modeler import BaselineModeler
from careintel.services.intelligence.config_service import IntelligenceConfigService
from careintel.services.intelligence.explainability_narrator import ExplainabilityNarrator
from careintel.services.intelligence.pipeline import IntelligencePassRunner
from careintel.services.intelligence.prioritization_engine import PrioritizationEngine
from careintel.services.intelligence.risk_scorer import latest_scores
from careintel.core.exceptions import NotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/intelligence", tags=["Care Intelligence"])


class PassRequest(BaseModel):
    as_of: Optional[datetime] = Field(None, description="Evaluation time; defaults to now")


class PassResponse(BaseModel):
    pass_id: str
    tenant_id: str
    as_of: datetime
    status: str
    observations_aggregated: int
    baselines_updated: int
    anomalies_detected: int
    scores_updated: int
    issues_prioritized: int
    escalations_created: int
    failed_subjects: List[str]
    cancelled: bool


class IssueResponse(BaseModel):
    id: str
    tenant_id: str
    subject_id: str
    subject_type: str
    risk_category: str
    risk_type: str
    episode: int
    title: str
    description: Optional[str] = None
    risk_level: str
    urgency: float
    severity: float
    confidence: float
    priority: float
    suggested_actions: List[str]
    risk_score_id: str
    created_at: datetime
    last_evaluated_at: datetime

    class Config:
        from_attributes = True


class RankedIssueResponse(BaseModel):
    rank: int
    status: str
    issue: IssueResponse


class IssueStatusRequest(BaseModel):
    status: str = Field(..., description="ACKNOWLEDGED, IN_PROGRESS, RESOLVED or DISMISSED")
    actor: str
    note: Optional[str] = None


class ExplanationResponse(BaseModel):
    issue_id: str
    version: int
    summary: str
    reasoning_steps: List[Dict[str, Any]]
    evidence: List[Dict[str, Any]]
    cannot_determine: List[str]
    confidence: float
    confidence_explanation: str
    generated_at: datetime

    class Config:
        from_attributes = True


class RiskScoreResponse(BaseModel):
    id: str
    subject_id: str
    subject_type: str
    risk_category: str
    risk_type: str
    version: int
    score: float
    confidence: float
    risk_level: str
    trend_direction: str
    contributing_factors: List[Dict[str, Any]]
    suggested_interventions: List[str]
    completeness: float
    is_active: bool
    computed_at: datetime

    class Config:
        from_attributes = True


class BaselineResponse(BaseModel):
    id: str
    metric_type: str
    period: str
    window_start: datetime
    window_end: datetime
    version: int
    mean: Optional[float] = None
    std_dev: Optional[float] = None
    median: Optional[float] = None
    sample_count: int
    status: str
    trend_direction: str
    baseline_confidence: float
    data_quality_score: float

    class Config:
        from_attributes = True


class ConfigUpdateRequest(BaseModel):
    updates: Dict[str, Any]
    updated_by: Optional[str] = None


# Endpoints

@router.post("/{tenant_id}/passes", response_model=PassResponse)
def run_intelligence_pass(
    tenant_id: str,
    request: Optional[PassRequest] = None,
    session_factory=Depends(get_session_factory)
):
    """
    Run one intelligence pass for a tenant and wait for it to finish.

    Every stage runs per subject in its own session, so this endpoint takes
    a session factory instead of a request-scoped session.
    """
    as_of = request.as_of if request else None
    logger.info(f"On-demand intelligence pass requested for tenant {tenant_id}")
    result = IntelligencePassRunner(session_factory).run_pass(tenant_id, as_of=as_of)
    return PassResponse(**result.to_dict())


@router.get("/{tenant_id}/issues", response_model=List[RankedIssueResponse])
def list_issues(
    tenant_id: str,
    status: Optional[List[str]] = Query(None, description="Defaults to open statuses"),
    risk_category: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Ranked worklist of prioritized issues"""
    config = IntelligenceConfigService().get_config(db, tenant_id)
    return PrioritizationEngine(db, config).list_prioritized_issues(
        tenant_id, statuses=status, risk_category=risk_category, limit=limit
    )


@router.post("/{tenant_id}/issues/{issue_id}/status", response_model=RankedIssueResponse)
def update_issue_status(
    tenant_id: str,
    issue_id: str,
    request: IssueStatusRequest,
    db: Session = Depends(get_db)
):
    """Move an issue through its lifecycle; invalid moves return 409"""
    engine = PrioritizationEngine(db, IntelligenceConfigService().get_config(db, tenant_id))
    issue = engine.get_issue(issue_id)
    if issue.tenant_id != tenant_id:
        raise NotFound(f"Issue {issue_id} not found")
    engine.update_issue_status(issue_id, request.status, request.actor, request.note)
    return {"rank": 0, "status": engine.get_status(issue_id), "issue": issue}


@router.get("/{tenant_id}/issues/{issue_id}/explanation", response_model=ExplanationResponse)
def get_issue_explanation(tenant_id: str, issue_id: str, db: Session = Depends(get_db)):
    """Evidence-backed explanation of why an issue was raised"""
    config = IntelligenceConfigService().get_config(db, tenant_id)
    return ExplainabilityNarrator(db, config).get_explanation(issue_id, tenant_id=tenant_id)


@router.get("/{tenant_id}/risk-scores", response_model=List[RiskScoreResponse])
def list_risk_scores(
    tenant_id: str,
    subject_id: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db)
):
    """Current risk score per subject and risk type"""
    scores = latest_scores(db, tenant_id, subject_id)
    if not include_inactive:
        scores = [s for s in scores if s.is_active]
    return scores


@router.get(
    "/{tenant_id}/subjects/{subject_id}/baselines/{metric_type}",
    response_model=BaselineResponse
)
def get_baseline(
    tenant_id: str,
    subject_id: str,
    metric_type: str,
    as_of: Optional[datetime] = None,
    db: Session = Depends(get_db)
):
    """Current baseline for one metric, recomputed if it has gone stale"""
    config = IntelligenceConfigService().get_config(db, tenant_id)
    baseline = BaselineModeler(db, config).get_current_baseline(tenant_id, subject_id, metric_type, as_of)
    if baseline is None:
        raise NotFound(f"No baseline for {metric_type}")
    db.commit()
    return baseline


@router.get("/{tenant_id}/config")
def get_tenant_config(tenant_id: str, db: Session = Depends(get_db)):
    """Effective configuration and the tenant's stored overrides"""
    service = IntelligenceConfigService()
    return {
        "tenant_id": tenant_id,
        "overrides": service.get_tenant_overrides(db, tenant_id),
        "config": service.get_config(db, tenant_id).to_dict(),
    }


@router.put("/{tenant_id}/config")
def update_tenant_config(tenant_id: str, request: ConfigUpdateRequest, db: Session = Depends(get_db)):
    """Merge overrides into the tenant's configuration; invalid values return 422"""
    service = IntelligenceConfigService()
    config = service.update_tenant_config(db, tenant_id, request.updates, updated_by=request.updated_by)
    return {
        "tenant_id": tenant_id,
        "overrides": service.get_tenant_overrides(db, tenant_id),
        "config": config.to_dict(),
    }


@router.delete("/{tenant_id}/config")
def reset_tenant_config(tenant_id: str, updated_by: Optional[str] = None, db: Session = Depends(get_db)):
    service = IntelligenceConfigService()
    config = service.reset_tenant_config(db, tenant_id, updated_by=updated_by)
    return {"tenant_id": tenant_id, "overrides": {}, "config": config.to_dict()}
