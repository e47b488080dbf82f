"""
Worklist Models

Prioritized issues, their append-only status log and the versioned
explanations the narrator generates for them.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Text, Index
from careintel.database import Base


class PrioritizedIssue(Base):
    """One worklist item per (subject, risk type, episode)"""
    __tablename__ = "prioritized_issues"

    id = Column(String(36), primary_key=True)  # uuid5(tenant, subject, risk_type, episode)
    tenant_id = Column(String, nullable=False)
    subject_id = Column(String, nullable=False)
    subject_type = Column(String, nullable=False)
    risk_category = Column(String, nullable=False)
    risk_type = Column(String, nullable=False)
    episode = Column(Integer, nullable=False, default=1)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    risk_level = Column(String, nullable=False)
    urgency = Column(Float, nullable=False)
    severity = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    priority = Column(Float, nullable=False)
    suggested_actions = Column(JSON, nullable=False, default=list)

    risk_score_id = Column(String(36), nullable=False)
    linked_risk_score_ids = Column(JSON, nullable=False, default=list)
    factor_fingerprint = Column(String(64), nullable=False)

    created_at = Column(DateTime, nullable=False)
    last_evaluated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_prioritized_issues_subject_type', 'tenant_id', 'subject_id', 'risk_type', 'episode'),
    )


class IssueStatusEvent(Base):
    """Append-only status history; an issue's status is its latest event"""
    __tablename__ = "issue_status_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    issue_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String, nullable=False)
    previous_status = Column(String, nullable=True)
    status = Column(String, nullable=False)  # "NEW", "ACKNOWLEDGED", "IN_PROGRESS", "RESOLVED", "DISMISSED"
    actor = Column(String, nullable=False)  # staff id or "system"
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)


class Explanation(Base):
    """Narrative and reasoning chain for one issue at one factor fingerprint"""
    __tablename__ = "explanations"

    id = Column(String(36), primary_key=True)  # uuid5(issue_id, version)
    issue_id = Column(String(36), nullable=False)
    tenant_id = Column(String, nullable=False)
    version = Column(Integer, nullable=False)
    factor_fingerprint = Column(String(64), nullable=False)

    summary = Column(Text, nullable=False)
    reasoning_steps = Column(JSON, nullable=False, default=list)
    evidence = Column(JSON, nullable=False, default=list)
    cannot_determine = Column(JSON, nullable=False, default=list)
    confidence = Column(Float, nullable=False)
    confidence_explanation = Column(Text, nullable=False)

    generated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_explanations_issue_version', 'issue_id', 'version'),
    )
