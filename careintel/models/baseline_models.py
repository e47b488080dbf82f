"""
Baseline Models

Per-subject, per-metric rolling statistics. Rows are never updated: a
recomputation writes a new version and the current baseline is the row with
the latest window end and highest version.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Index
from careintel.database import Base


class Baseline(Base):
    """
    Rolling baseline over the window [window_start, window_end).
    Used for change detection against the subject's own normal, NOT diagnosis.
    """
    __tablename__ = "baselines"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String, nullable=False)
    subject_id = Column(String, nullable=False)
    metric_type = Column(String, nullable=False)

    period = Column(String, nullable=False)  # "rolling_7d"
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)  # exclusive; the bucket this baseline judges
    version = Column(Integer, nullable=False, default=1)

    mean = Column(Float, nullable=True)
    std_dev = Column(Float, nullable=True)
    median = Column(Float, nullable=True)
    min_value = Column(Float, nullable=True)
    max_value = Column(Float, nullable=True)
    sample_count = Column(Integer, nullable=False)

    status = Column(String, nullable=False)  # "VALID", "INSUFFICIENT_DATA"
    trend_direction = Column(String, nullable=False)  # "STABLE", "INCREASING", "DECREASING", "INSUFFICIENT_DATA"
    prior_window_mean = Column(Float, nullable=True)
    baseline_confidence = Column(Float, nullable=False)
    data_quality_score = Column(Float, nullable=False)

    input_fingerprint = Column(String(64), nullable=False)
    computed_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_baselines_subject_metric_window', 'tenant_id', 'subject_id', 'metric_type', 'window_end', 'version'),
    )
