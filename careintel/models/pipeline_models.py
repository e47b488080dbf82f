"""
Pipeline Models

Per-tenant configuration overrides and the record of each intelligence pass.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean
from careintel.database import Base


class TenantConfigOverride(Base):
    """Partial IntelligenceConfig dict merged over the defaults for one tenant"""
    __tablename__ = "tenant_config_overrides"

    tenant_id = Column(String, primary_key=True)
    overrides = Column(JSON, nullable=False, default=dict)
    updated_by = Column(String, nullable=True)
    updated_at = Column(DateTime, nullable=False)


class IntelligencePassRun(Base):
    """Outcome of one batch pass for one tenant"""
    __tablename__ = "intelligence_pass_runs"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    as_of = Column(DateTime, nullable=False)
    status = Column(String, nullable=False)  # "COMPLETED", "PARTIAL", "CANCELLED"

    observations_aggregated = Column(Integer, nullable=False, default=0)
    baselines_updated = Column(Integer, nullable=False, default=0)
    anomalies_detected = Column(Integer, nullable=False, default=0)
    scores_updated = Column(Integer, nullable=False, default=0)
    issues_prioritized = Column(Integer, nullable=False, default=0)
    escalations_created = Column(Integer, nullable=False, default=0)
    failed_subjects = Column(JSON, nullable=False, default=list)
    cancelled = Column(Boolean, nullable=False, default=False)

    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
