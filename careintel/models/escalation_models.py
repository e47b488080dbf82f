"""
Escalation Models

Supervisor escalations with SLA deadlines and their audit trail. The
escalation row carries an ORM version counter so concurrent transitions
cannot silently overwrite each other.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Text, Index
from careintel.database import Base


class Escalation(Base):
    """Time-bounded supervisor escalation for a high-priority issue"""
    __tablename__ = "escalations"

    id = Column(String(36), primary_key=True)  # uuid5(issue_id)
    issue_id = Column(String(36), nullable=False, unique=True)
    tenant_id = Column(String, nullable=False)
    subject_id = Column(String, nullable=False)

    priority_tier = Column(String, nullable=False)  # "LOW", "MEDIUM", "HIGH", "CRITICAL"
    sla_hours = Column(Float, nullable=False)
    escalated_at = Column(DateTime, nullable=False)
    required_response_by = Column(DateTime, nullable=False)

    status = Column(String, nullable=False, default="PENDING")  # "PENDING", "ACKNOWLEDGED", "IN_PROGRESS", "RESOLVED"
    assigned_to = Column(String, nullable=True)
    acknowledged_by = Column(String, nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_escalations_tenant_status', 'tenant_id', 'status'),
    )

    def is_breached(self, now) -> bool:
        """Derived at read time: still open past the response deadline"""
        return self.status != "RESOLVED" and now > self.required_response_by

    def acknowledged_late(self) -> bool:
        return self.acknowledged_at is not None and self.acknowledged_at > self.required_response_by


class EscalationAuditLog(Base):
    """Every creation, transition and assignment of an escalation"""
    __tablename__ = "escalation_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    escalation_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String, nullable=False)
    action = Column(String, nullable=False)  # "created", "acknowledged", "in_progress", "resolved", "assigned"
    previous_status = Column(String, nullable=True)
    new_status = Column(String, nullable=True)
    actor = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)
