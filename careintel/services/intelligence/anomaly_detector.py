"""
Anomaly Detector

Compares each observation with the baseline anchored at its own bucket using
z-scores. Flags statistical changes for staff review (NOT diagnosis).
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from careintel.models.baseline_models import Baseline
from careintel.models.observation_models import ObservationEvent
from careintel.models.risk_models import Anomaly
from careintel.services.intelligence.baseline_modeler import BaselineModeler
from careintel.services.intelligence.config_service import IntelligenceConfig, MetricConfig
from careintel.services.intelligence.enums import (
    BaselineStatus,
    DetectionMethod,
    Direction,
    Polarity,
)
from careintel.services.intelligence.identifiers import deterministic_id, floor_to_bucket, utcnow

logger = logging.getLogger(__name__)


def is_adverse(direction: Direction, polarity: str) -> bool:
    if polarity == Polarity.BOTH_WORSE.value:
        return True
    if direction == Direction.ABOVE:
        return polarity == Polarity.HIGHER_IS_WORSE.value
    return polarity == Polarity.LOWER_IS_WORSE.value


class AnomalyDetector:
    """Service for detecting deviations from subject baselines"""

    def __init__(self, db: Session, config: IntelligenceConfig):
        self.db = db
        self.config = config

    def calculate_deviation(
        self,
        value: float,
        baseline: Baseline,
        metric: MetricConfig
    ) -> Tuple[float, DetectionMethod]:
        """
        Signed z-score of value against the baseline.

        When the baseline has (near) zero variance the metric's absolute
        threshold stands in for the spread, scaled so that a deviation equal to
        the threshold lands on the lowest severity boundary.
        """
        std_dev = baseline.std_dev or 0.0
        if std_dev < self.config.zero_variance_epsilon:
            scale = metric.absolute_threshold / self.config.z_medium_threshold
            return (value - baseline.mean) / scale, DetectionMethod.ABSOLUTE_FALLBACK
        return (value - baseline.mean) / std_dev, DetectionMethod.ZSCORE

    def evaluate_observation(self, observation: ObservationEvent, baseline: Optional[Baseline]) -> Optional[Anomaly]:
        """Build the anomaly for one observation, or None when it is within tolerance"""
        if baseline is None or baseline.status != BaselineStatus.VALID.value:
            return None
        metric = self.config.get_metric(observation.metric_type)
        if metric is None:
            return None

        deviation, method = self.calculate_deviation(observation.value, baseline, metric)
        severity = self.config.get_z_severity(deviation)
        if severity is None:
            return None

        direction = Direction.ABOVE if deviation > 0 else Direction.BELOW
        source_weight = self.config.source_confidence_weights.get(observation.source_confidence, 0.0)
        return Anomaly(
            id=deterministic_id("anomaly", observation.id),
            tenant_id=observation.tenant_id,
            subject_id=observation.subject_id,
            observation_id=observation.id,
            baseline_id=baseline.id,
            metric_type=observation.metric_type,
            observed_value=observation.value,
            baseline_mean=baseline.mean,
            baseline_std_dev=baseline.std_dev or 0.0,
            deviation=round(deviation, 4),
            detection_method=method.value,
            direction=direction.value,
            is_adverse=is_adverse(direction, metric.polarity),
            severity=severity,
            confidence=round(source_weight * baseline.baseline_confidence, 4),
            observed_at=observation.recorded_at,
            detected_at=utcnow(),
        )

    def detect_subject(self, tenant_id: str, subject_id: str, horizon_end: datetime) -> int:
        """
        Evaluate observations in the scoring window ending at horizon_end.

        At most one anomaly per observation; observations that already have
        one are skipped. Returns the number of anomalies created.

        An observation that is not flagged is judged again on every pass
        against its bucket's current baseline, so it can be flagged later once
        backfilled readings make that baseline VALID.
        """
        horizon_start = horizon_end - timedelta(days=self.config.scoring_window_days)
        observations = (
            self.db.query(ObservationEvent)
            .filter(
                ObservationEvent.tenant_id == tenant_id,
                ObservationEvent.subject_id == subject_id,
                ObservationEvent.recorded_at > horizon_start,
                ObservationEvent.recorded_at <= horizon_end,
            )
            .order_by(ObservationEvent.recorded_at, ObservationEvent.id)
            .all()
        )
        if not observations:
            return 0

        already_detected = {
            row[0] for row in self.db.query(Anomaly.observation_id).filter(
                Anomaly.tenant_id == tenant_id,
                Anomaly.subject_id == subject_id,
                Anomaly.observed_at > horizon_start,
            )
        }
        baselines = BaselineModeler(self.db, self.config).baselines_by_anchor(
            tenant_id, subject_id, floor_to_bucket(horizon_start, self.config.bucket_minutes)
        )

        created = 0
        for observation in observations:
            if observation.id in already_detected:
                continue
            anomaly = self.evaluate_observation(
                observation,
                baselines.get((observation.metric_type, observation.bucket_start))
            )
            if anomaly is None:
                continue
            self.db.add(anomaly)
            created += 1
            logger.info(
                f"Anomaly on {observation.metric_type} for subject {subject_id}: "
                f"deviation={anomaly.deviation} severity={anomaly.severity}"
            )

        self.db.flush()
        return created
