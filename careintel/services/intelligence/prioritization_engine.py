"""
Prioritization Engine - turns current risk scores into a ranked worklist.

Priority = urgency x severity x confidence / 100, where severity is the risk
score and urgency starts from the risk level and moves with the score trend
and escalation SLA pressure. Ordering is global across categories.

Issue status is never stored on the issue; it is the latest entry in the
append-only IssueStatusEvent log.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from careintel.core.exceptions import InvalidTransition, NotFound
from careintel.core.logging import log_audit
from careintel.models.escalation_models import Escalation
from careintel.models.issue_models import PrioritizedIssue, IssueStatusEvent
from careintel.models.risk_models import RiskScore
from careintel.services.intelligence.config_service import IntelligenceConfig
from careintel.services.intelligence.enums import IssueStatus, TrendDirection, EscalationStatus
from careintel.services.intelligence.identifiers import deterministic_id, escalation_id_for, utcnow
from careintel.services.intelligence.risk_scorer import current_scores

logger = logging.getLogger(__name__)

OPEN_STATUSES = {IssueStatus.NEW.value, IssueStatus.ACKNOWLEDGED.value, IssueStatus.IN_PROGRESS.value}

ALLOWED_TRANSITIONS = {
    IssueStatus.NEW.value: {IssueStatus.ACKNOWLEDGED.value, IssueStatus.DISMISSED.value},
    IssueStatus.ACKNOWLEDGED.value: {IssueStatus.IN_PROGRESS.value, IssueStatus.DISMISSED.value},
    IssueStatus.IN_PROGRESS.value: {IssueStatus.RESOLVED.value, IssueStatus.DISMISSED.value},
    IssueStatus.RESOLVED.value: set(),
    IssueStatus.DISMISSED.value: set(),
}


def issue_statuses(db: Session, issue_ids: List[str]) -> Dict[str, str]:
    """Current status per issue: the latest status event"""
    if not issue_ids:
        return {}
    latest_event_ids = (
        db.query(func.max(IssueStatusEvent.id))
        .filter(IssueStatusEvent.issue_id.in_(issue_ids))
        .group_by(IssueStatusEvent.issue_id)
    )
    rows = db.query(IssueStatusEvent.issue_id, IssueStatusEvent.status).filter(
        IssueStatusEvent.id.in_(latest_event_ids)
    )
    return {issue_id: status for issue_id, status in rows}


def issue_sort_key(issue: PrioritizedIssue):
    return (-issue.priority, -issue.confidence, issue.created_at, issue.id)


class PrioritizationEngine:
    """Service for maintaining and ranking the issue worklist"""

    def __init__(self, db: Session, config: IntelligenceConfig):
        self.db = db
        self.config = config

    def calculate_urgency(self, score: RiskScore, escalation: Optional[Escalation], as_of: datetime) -> float:
        urgency = self.config.urgency_base[score.risk_level]
        if score.trend_direction == TrendDirection.INCREASING.value:
            urgency += self.config.urgency_trend_adjustment
        elif score.trend_direction == TrendDirection.DECREASING.value:
            urgency -= self.config.urgency_trend_adjustment

        if escalation is not None and escalation.status != EscalationStatus.RESOLVED.value:
            if escalation.is_breached(as_of):
                urgency = 100.0
            elif escalation.acknowledged_at is None:
                sla_seconds = escalation.sla_hours * 3600
                remaining = (escalation.required_response_by - as_of).total_seconds()
                if remaining <= sla_seconds / 4:
                    urgency += self.config.urgency_sla_pressure_boost
        return max(0.0, min(100.0, urgency))

    def prioritize_subject(self, tenant_id: str, subject_id: str, as_of: datetime) -> int:
        """
        Create, refresh or resolve the subject's issues from its current
        scores. Returns the number of open issues after the update.
        """
        scores = current_scores(self.db, tenant_id, subject_id)
        issues = (
            self.db.query(PrioritizedIssue)
            .filter(PrioritizedIssue.tenant_id == tenant_id, PrioritizedIssue.subject_id == subject_id)
            .order_by(PrioritizedIssue.risk_type, PrioritizedIssue.episode)
            .all()
        )
        latest_issue: Dict[str, PrioritizedIssue] = {}
        for issue in issues:
            latest_issue[issue.risk_type] = issue
        statuses = issue_statuses(self.db, [i.id for i in latest_issue.values()])

        open_count = 0
        for risk_type in sorted(set(scores) | set(latest_issue)):
            score = scores.get(risk_type)
            issue = latest_issue.get(risk_type)
            is_open = issue is not None and statuses.get(issue.id) in OPEN_STATUSES
            scoring = score is not None and score.is_active and score.score >= self.config.issue_score_floor

            if not scoring:
                if is_open:
                    self._append_status(issue, IssueStatus.RESOLVED.value, statuses[issue.id],
                                        "system", "Risk cleared: evidence left the scoring window", as_of)
                continue

            if is_open:
                self._refresh(issue, score, as_of)
                open_count += 1
            elif issue is None or issue.factor_fingerprint != score.input_fingerprint:
                episode = issue.episode + 1 if issue else 1
                self._open_issue(tenant_id, score, episode, as_of)
                open_count += 1

        self.db.flush()
        return open_count

    def _open_issue(self, tenant_id: str, score: RiskScore, episode: int, as_of: datetime) -> PrioritizedIssue:
        issue = PrioritizedIssue(
            id=deterministic_id(tenant_id, score.subject_id, score.risk_type, episode),
            tenant_id=tenant_id,
            subject_id=score.subject_id,
            subject_type=score.subject_type,
            risk_category=score.risk_category,
            risk_type=score.risk_type,
            episode=episode,
            created_at=as_of,
            linked_risk_score_ids=[],
        )
        self.db.add(issue)
        self._refresh(issue, score, as_of)
        self._append_status(issue, IssueStatus.NEW.value, None, "system", None, as_of)
        logger.info(f"Opened issue {issue.id} ({score.risk_type}, episode {episode}) for subject {score.subject_id}")
        return issue

    def _refresh(self, issue: PrioritizedIssue, score: RiskScore, as_of: datetime):
        escalation = self.db.get(Escalation, escalation_id_for(issue.id))
        urgency = self.calculate_urgency(score, escalation, as_of)
        risk_config = self.config.get_risk_type(score.risk_type)
        factor_count = len(score.contributing_factors or [])

        issue.title = risk_config.title
        issue.description = (
            f"{score.risk_level} {score.risk_category.replace('_', ' ').lower()} risk for "
            f"{score.subject_type.lower()} {score.subject_id}: score {score.score:g}/100 "
            f"from {factor_count} factor(s)"
        )
        issue.risk_level = score.risk_level
        issue.urgency = round(urgency, 2)
        issue.severity = score.score
        issue.confidence = score.confidence
        issue.priority = round(urgency * score.score * score.confidence / 100.0, 2)
        issue.suggested_actions = list(score.suggested_interventions or [])
        issue.risk_score_id = score.id
        if score.id not in (issue.linked_risk_score_ids or []):
            issue.linked_risk_score_ids = list(issue.linked_risk_score_ids or []) + [score.id]
        issue.factor_fingerprint = score.input_fingerprint
        issue.last_evaluated_at = as_of

    def _append_status(
        self,
        issue: PrioritizedIssue,
        status: str,
        previous_status: Optional[str],
        actor: str,
        note: Optional[str],
        at: datetime
    ) -> IssueStatusEvent:
        event = IssueStatusEvent(
            issue_id=issue.id,
            tenant_id=issue.tenant_id,
            previous_status=previous_status,
            status=status,
            actor=actor,
            note=note,
            created_at=at,
        )
        self.db.add(event)
        return event

    def get_issue(self, issue_id: str) -> PrioritizedIssue:
        issue = self.db.get(PrioritizedIssue, issue_id)
        if issue is None:
            raise NotFound(f"Issue {issue_id} not found")
        return issue

    def get_status(self, issue_id: str) -> str:
        return issue_statuses(self.db, [issue_id])[issue_id]

    def update_issue_status(
        self,
        issue_id: str,
        new_status: str,
        actor: str,
        note: Optional[str] = None,
        commit: bool = True
    ) -> PrioritizedIssue:
        """
        Move an issue forward: NEW -> ACKNOWLEDGED -> IN_PROGRESS -> RESOLVED,
        or to DISMISSED from any open state. Anything else raises InvalidTransition.
        """
        issue = self.get_issue(issue_id)
        current = self.get_status(issue_id)
        if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransition(current, new_status)

        self._append_status(issue, new_status, current, actor, note, utcnow())
        if commit:
            self.db.commit()
        log_audit("issue_status_changed", actor, {
            "issue_id": issue_id,
            "previous_status": current,
            "new_status": new_status,
        })
        return issue

    def list_prioritized_issues(
        self,
        tenant_id: str,
        statuses: Optional[List[str]] = None,
        risk_category: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Ranked worklist for a tenant: priority desc, confidence desc,
        created_at asc, id asc. Defaults to open issues.
        """
        wanted = set(statuses) if statuses else OPEN_STATUSES
        query = self.db.query(PrioritizedIssue).filter(PrioritizedIssue.tenant_id == tenant_id)
        if risk_category:
            query = query.filter(PrioritizedIssue.risk_category == risk_category)
        issues = query.all()
        current = issue_statuses(self.db, [i.id for i in issues])

        ranked = sorted((i for i in issues if current.get(i.id) in wanted), key=issue_sort_key)
        if limit is not None:
            ranked = ranked[:limit]
        return [{"issue": issue, "status": current[issue.id], "rank": index + 1}
                for index, issue in enumerate(ranked)]
