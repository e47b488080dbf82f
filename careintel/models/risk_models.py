"""
Risk Models

Anomalies, rule triggers and versioned risk scores. Anomalies and triggers
are written once; a risk score change appends a new version.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Boolean, Index
from careintel.database import Base


class Anomaly(Base):
    """Deviation of one observation from the baseline anchored at its bucket"""
    __tablename__ = "anomalies"

    id = Column(String(36), primary_key=True)  # uuid5(observation_id)
    tenant_id = Column(String, nullable=False)
    subject_id = Column(String, nullable=False)
    observation_id = Column(String(36), nullable=False, unique=True)
    baseline_id = Column(String(36), nullable=False)
    metric_type = Column(String, nullable=False)

    observed_value = Column(Float, nullable=False)
    baseline_mean = Column(Float, nullable=False)
    baseline_std_dev = Column(Float, nullable=False)
    deviation = Column(Float, nullable=False)  # signed z or z-equivalent
    detection_method = Column(String, nullable=False)  # "ZSCORE", "ABSOLUTE_FALLBACK"
    direction = Column(String, nullable=False)  # "ABOVE", "BELOW"
    is_adverse = Column(Boolean, nullable=False)
    severity = Column(String, nullable=False)  # "MEDIUM", "HIGH", "CRITICAL"
    confidence = Column(Float, nullable=False)

    observed_at = Column(DateTime, nullable=False)
    detected_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_anomalies_subject_observed', 'tenant_id', 'subject_id', 'observed_at'),
    )


class RuleTrigger(Base):
    """Deterministic threshold rule firing over a scoring window"""
    __tablename__ = "rule_triggers"

    id = Column(String(36), primary_key=True)  # uuid5(tenant, subject, rule, window_end)
    tenant_id = Column(String, nullable=False)
    subject_id = Column(String, nullable=False)
    rule_key = Column(String, nullable=False)
    risk_category = Column(String, nullable=False)
    risk_type = Column(String, nullable=False)
    severity = Column(String, nullable=False)

    observed_value = Column(Float, nullable=False)
    threshold = Column(Float, nullable=False)
    description = Column(String, nullable=False)
    evidence_observation_ids = Column(JSON, nullable=False, default=list)
    confidence = Column(Float, nullable=False)

    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    triggered_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_rule_triggers_subject_window', 'tenant_id', 'subject_id', 'window_end'),
    )


class RiskScore(Base):
    """
    Versioned risk score per (subject, risk type). The current score is the
    highest version; earlier versions are kept for audit.
    """
    __tablename__ = "risk_scores"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String, nullable=False)
    subject_id = Column(String, nullable=False)
    subject_type = Column(String, nullable=False)
    risk_category = Column(String, nullable=False)  # "RESIDENT_HEALTH", "MEDICATION", "CARE_QUALITY", "CAREGIVER_WELLBEING", "OPERATIONAL"
    risk_type = Column(String, nullable=False)
    version = Column(Integer, nullable=False)

    score = Column(Float, nullable=False)  # 0-100
    confidence = Column(Float, nullable=False)  # 0-1
    risk_level = Column(String, nullable=False)  # "LOW", "MEDIUM", "HIGH", "CRITICAL"
    contributing_factors = Column(JSON, nullable=False, default=list)
    suggested_interventions = Column(JSON, nullable=False, default=list)
    trend_direction = Column(String, nullable=False)
    linked_anomaly_ids = Column(JSON, nullable=False, default=list)
    linked_rule_trigger_ids = Column(JSON, nullable=False, default=list)
    completeness = Column(Float, nullable=False)

    input_fingerprint = Column(String(64), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    computed_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_risk_scores_subject_type_version', 'tenant_id', 'subject_id', 'risk_type', 'version'),
    )
