"""
Observation Models

Subjects (residents and caregivers), raw observation events and the hourly
buckets the aggregator folds them into. Observation events are append-only;
buckets are the only rows the aggregator rewrites.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Boolean, Index, UniqueConstraint
from sqlalchemy.sql import func
from careintel.database import Base


class Subject(Base):
    """A resident or caregiver known to a tenant. Labels carry no PHI."""
    __tablename__ = "subjects"

    id = Column(String(36), primary_key=True)  # uuid5(tenant, subject_id)
    tenant_id = Column(String, nullable=False, index=True)
    subject_id = Column(String, nullable=False)
    subject_type = Column(String, nullable=False)  # "RESIDENT", "CAREGIVER"
    display_label = Column(String, nullable=True)  # e.g. "Room 12", never a name
    context_flags = Column(JSON, nullable=False, default=list)  # ["cardiac_condition", "fall_history"]
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'subject_id', name='uq_subjects_tenant_subject'),
    )


class ObservationEvent(Base):
    """Immutable record of one caregiving reading."""
    __tablename__ = "observation_events"

    id = Column(String(36), primary_key=True)  # uuid5(tenant, subject, metric, recorded_at, source)
    tenant_id = Column(String, nullable=False)
    subject_id = Column(String, nullable=False)
    subject_type = Column(String, nullable=False)
    metric_type = Column(String, nullable=False)
    value = Column(Float, nullable=False)
    unit = Column(String, nullable=False)
    recorded_at = Column(DateTime, nullable=False)
    source = Column(String, nullable=False, default="api")
    source_confidence = Column(String, nullable=False)  # "HIGH", "MEDIUM", "LOW"
    bucket_start = Column(DateTime, nullable=False)
    ingested_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_observation_events_subject_metric', 'tenant_id', 'subject_id', 'metric_type', 'recorded_at'),
        Index('ix_observation_events_tenant_ingested', 'tenant_id', 'ingested_at'),
    )


class ObservationBucket(Base):
    """
    Aggregated view of one (subject, metric, bucket). The representative
    value is the latest write (greatest ingestion time, then greatest id).
    """
    __tablename__ = "observation_buckets"

    id = Column(String(36), primary_key=True)  # uuid5(tenant, subject, metric, bucket_start)
    tenant_id = Column(String, nullable=False)
    subject_id = Column(String, nullable=False)
    metric_type = Column(String, nullable=False)
    bucket_start = Column(DateTime, nullable=False)

    representative_value = Column(Float, nullable=False)
    representative_observation_id = Column(String(36), nullable=False)
    representative_confidence = Column(String, nullable=False)
    observation_count = Column(Integer, nullable=False)
    min_value = Column(Float, nullable=False)
    max_value = Column(Float, nullable=False)

    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'subject_id', 'metric_type', 'bucket_start', name='uq_observation_buckets_key'),
        Index('ix_observation_buckets_subject_metric', 'tenant_id', 'subject_id', 'metric_type', 'bucket_start'),
    )
