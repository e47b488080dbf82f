"""
Escalation Tracker - SLA-timed supervisor escalations.

Handles:
- Creating one escalation per high-priority issue (id derived from the issue)
- Strictly sequential PENDING -> ACKNOWLEDGED -> IN_PROGRESS -> RESOLVED
- Optimistic concurrency: callers pass the version they read
- Read-time SLA breach and tenant SLA metrics
- Audit trail for every action
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from careintel.core.exceptions import InvalidTransition, NotFound, StaleState
from careintel.core.logging import log_audit
from careintel.models.escalation_models import Escalation, EscalationAuditLog
from careintel.models.issue_models import PrioritizedIssue
from careintel.services.intelligence.config_service import IntelligenceConfig
from careintel.services.intelligence.enums import EscalationStatus, IssueStatus
from careintel.services.intelligence.identifiers import escalation_id_for, to_naive_utc, utcnow
from careintel.services.intelligence.prioritization_engine import (
    OPEN_STATUSES,
    PrioritizationEngine,
    issue_statuses,
)

logger = logging.getLogger(__name__)

NEXT_STATUS = {
    EscalationStatus.PENDING.value: EscalationStatus.ACKNOWLEDGED.value,
    EscalationStatus.ACKNOWLEDGED.value: EscalationStatus.IN_PROGRESS.value,
    EscalationStatus.IN_PROGRESS.value: EscalationStatus.RESOLVED.value,
}

TIER_RANK = {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3}

# Issue status each escalation transition mirrors onto, and the status it must come from
ISSUE_MIRROR = {
    EscalationStatus.ACKNOWLEDGED.value: (IssueStatus.NEW.value, IssueStatus.ACKNOWLEDGED.value),
    EscalationStatus.IN_PROGRESS.value: (IssueStatus.ACKNOWLEDGED.value, IssueStatus.IN_PROGRESS.value),
}


class EscalationTracker:
    """Service for the supervisor escalation workflow"""

    def __init__(self, db: Session, config: IntelligenceConfig):
        self.db = db
        self.config = config

    def escalate_subject(self, tenant_id: str, subject_id: str, as_of: datetime) -> int:
        """Create escalations for the subject's open issues at or above the priority threshold"""
        issues = (
            self.db.query(PrioritizedIssue)
            .filter(
                PrioritizedIssue.tenant_id == tenant_id,
                PrioritizedIssue.subject_id == subject_id,
                PrioritizedIssue.priority >= self.config.escalation_priority_threshold,
            )
            .order_by(PrioritizedIssue.id)
            .all()
        )
        statuses = issue_statuses(self.db, [i.id for i in issues])
        created = 0
        for issue in issues:
            if statuses.get(issue.id) not in OPEN_STATUSES:
                continue
            if self.create_for_issue(issue, as_of) is not None:
                created += 1
        return created

    def create_for_issue(self, issue: PrioritizedIssue, as_of: datetime) -> Optional[Escalation]:
        """Create the issue's escalation; None when it already exists"""
        escalation_id = escalation_id_for(issue.id)
        if self.db.get(Escalation, escalation_id) is not None:
            return None

        tier = issue.risk_level
        sla = self.config.get_sla(tier)
        escalation = Escalation(
            id=escalation_id,
            issue_id=issue.id,
            tenant_id=issue.tenant_id,
            subject_id=issue.subject_id,
            priority_tier=tier,
            sla_hours=self.config.sla_hours[tier],
            escalated_at=as_of,
            required_response_by=as_of + sla,
            status=EscalationStatus.PENDING.value,
        )
        self.db.add(escalation)
        self._audit(escalation, "created", None, escalation.status, "system", {
            "priority": issue.priority,
            "tier": tier,
            "sla_hours": escalation.sla_hours,
        }, as_of)
        self.db.flush()
        logger.info(
            f"Escalation {escalation_id} created for issue {issue.id}: tier {tier}, "
            f"respond by {escalation.required_response_by.isoformat()}"
        )
        return escalation

    def get_escalation(self, escalation_id: str, tenant_id: Optional[str] = None) -> Escalation:
        escalation = self.db.get(Escalation, escalation_id)
        if escalation is None or (tenant_id is not None and escalation.tenant_id != tenant_id):
            raise NotFound(f"Escalation {escalation_id} not found")
        return escalation

    def acknowledge(self, escalation_id: str, actor: str, expected_version: int,
                    now: Optional[datetime] = None) -> Escalation:
        return self._transition(escalation_id, EscalationStatus.ACKNOWLEDGED.value, actor, expected_version, now)

    def start_progress(self, escalation_id: str, actor: str, expected_version: int,
                       now: Optional[datetime] = None) -> Escalation:
        return self._transition(escalation_id, EscalationStatus.IN_PROGRESS.value, actor, expected_version, now)

    def resolve(self, escalation_id: str, actor: str, expected_version: int,
                notes: Optional[str] = None, now: Optional[datetime] = None) -> Escalation:
        return self._transition(escalation_id, EscalationStatus.RESOLVED.value, actor, expected_version, now,
                                notes=notes)

    def assign(self, escalation_id: str, assignee: str, actor: str,
               now: Optional[datetime] = None) -> Escalation:
        """Set the assignee without changing status; rejected once resolved"""
        now = to_naive_utc(now) if now else utcnow()
        escalation = self.get_escalation(escalation_id)
        if escalation.status == EscalationStatus.RESOLVED.value:
            raise InvalidTransition(escalation.status, "ASSIGNED")

        previous_assignee = escalation.assigned_to
        escalation.assigned_to = assignee
        self._audit(escalation, "assigned", escalation.status, escalation.status, actor, {
            "previous_assignee": previous_assignee,
            "assignee": assignee,
        }, now)
        self._commit(escalation_id, escalation.version)
        return escalation

    def _transition(
        self,
        escalation_id: str,
        new_status: str,
        actor: str,
        expected_version: int,
        now: Optional[datetime],
        notes: Optional[str] = None
    ) -> Escalation:
        now = to_naive_utc(now) if now else utcnow()
        escalation = self.get_escalation(escalation_id)
        if escalation.version != expected_version:
            raise StaleState(escalation_id, expected_version, escalation.version)

        previous_status = escalation.status
        if NEXT_STATUS.get(previous_status) != new_status:
            raise InvalidTransition(previous_status, new_status)

        escalation.status = new_status
        if new_status == EscalationStatus.ACKNOWLEDGED.value:
            escalation.acknowledged_by = actor
            escalation.acknowledged_at = now
        elif new_status == EscalationStatus.IN_PROGRESS.value:
            escalation.started_at = now
        elif new_status == EscalationStatus.RESOLVED.value:
            escalation.resolved_by = actor
            escalation.resolved_at = now
            escalation.resolution_notes = notes

        self._audit(escalation, new_status.lower(), previous_status, new_status, actor, None, now)
        self._mirror_issue_status(escalation, new_status, actor)
        self._commit(escalation_id, expected_version)

        log_audit("escalation_transition", actor, {
            "escalation_id": escalation_id,
            "previous_status": previous_status,
            "new_status": new_status,
            "version": escalation.version,
        })
        return escalation

    def _mirror_issue_status(self, escalation: Escalation, new_status: str, actor: str):
        if new_status not in ISSUE_MIRROR:
            return
        required, target = ISSUE_MIRROR[new_status]
        engine = PrioritizationEngine(self.db, self.config)
        if engine.get_status(escalation.issue_id) == required:
            engine.update_issue_status(
                escalation.issue_id, target, actor,
                note=f"Mirrored from escalation {escalation.id}", commit=False
            )

    def _commit(self, escalation_id: str, expected_version: int):
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            current = self.db.get(Escalation, escalation_id)
            raise StaleState(escalation_id, expected_version, current.version if current else None)

    def _audit(self, escalation: Escalation, action: str, previous_status: Optional[str],
               new_status: Optional[str], actor: str, details: Optional[Dict[str, Any]], at: datetime):
        self.db.add(EscalationAuditLog(
            escalation_id=escalation.id,
            tenant_id=escalation.tenant_id,
            action=action,
            previous_status=previous_status,
            new_status=new_status,
            actor=actor,
            details=details,
            created_at=at,
        ))

    def get_audit_log(self, escalation_id: str) -> List[EscalationAuditLog]:
        return (
            self.db.query(EscalationAuditLog)
            .filter(EscalationAuditLog.escalation_id == escalation_id)
            .order_by(EscalationAuditLog.id)
            .all()
        )

    def list_escalations(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        include_resolved: bool = False
    ) -> List[Escalation]:
        """Dashboard order: most severe tier first, then earliest response deadline"""
        query = self.db.query(Escalation).filter(Escalation.tenant_id == tenant_id)
        if status:
            query = query.filter(Escalation.status == status)
        elif not include_resolved:
            query = query.filter(Escalation.status != EscalationStatus.RESOLVED.value)
        return sorted(
            query.all(),
            key=lambda e: (TIER_RANK.get(e.priority_tier, len(TIER_RANK)), e.required_response_by, e.id)
        )

    def get_sla_metrics(self, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts and response times across the tenant's escalations"""
        now = to_naive_utc(now) if now else utcnow()
        escalations = self.db.query(Escalation).filter(Escalation.tenant_id == tenant_id).all()

        response_hours = [
            (e.acknowledged_at - e.escalated_at) / timedelta(hours=1)
            for e in escalations if e.acknowledged_at is not None
        ]
        return {
            "total": len(escalations),
            "open": sum(1 for e in escalations if e.status != EscalationStatus.RESOLVED.value),
            "pending": sum(1 for e in escalations if e.status == EscalationStatus.PENDING.value),
            "resolved": sum(1 for e in escalations if e.status == EscalationStatus.RESOLVED.value),
            "breached": sum(1 for e in escalations if e.is_breached(now)),
            "acknowledged_late": sum(1 for e in escalations if e.acknowledged_late()),
            "critical_pending": sum(
                1 for e in escalations
                if e.priority_tier == "CRITICAL" and e.status == EscalationStatus.PENDING.value
            ),
            "avg_response_hours": round(sum(response_hours) / len(response_hours), 4) if response_hours else None,
        }
