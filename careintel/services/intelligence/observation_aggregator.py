"""
Observation Aggregator - validated ingestion and hourly bucketing.

Handles:
- Subject registration (residents and caregivers, context flags)
- Observation validation against the metric catalog (never clamps)
- Idempotent storage keyed on (tenant, subject, metric, recorded_at, source)
- Folding observations into buckets, latest write wins per bucket
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from careintel.core.exceptions import InvalidObservation
from careintel.core.logging import log_audit
from careintel.models.observation_models import Subject, ObservationEvent, ObservationBucket
from careintel.services.intelligence.config_service import IntelligenceConfig
from careintel.services.intelligence.enums import SubjectType, SourceConfidence
from careintel.services.intelligence.identifiers import (
    deterministic_id,
    floor_to_bucket,
    to_naive_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class ObservationInput:
    """Incoming observation data structure"""
    tenant_id: str
    subject_id: str
    subject_type: str
    metric_type: str
    value: float
    unit: str
    recorded_at: datetime
    source_confidence: str
    source: str = "api"


def subject_key(tenant_id: str, subject_id: str) -> str:
    return deterministic_id("subject", tenant_id, subject_id)


class ObservationAggregator:
    """Service for ingesting caregiving observations and bucketing them"""

    def __init__(self, db: Session, config: IntelligenceConfig):
        self.db = db
        self.config = config

    def register_subject(
        self,
        tenant_id: str,
        subject_id: str,
        subject_type: str,
        display_label: Optional[str] = None,
        context_flags: Optional[List[str]] = None,
        is_active: bool = True
    ) -> Subject:
        """Create or update a subject; the subject type of an existing subject cannot change"""
        if subject_type not in SubjectType.__members__:
            raise InvalidObservation(f"Unknown subject type: {subject_type}")

        subject = self.get_subject(tenant_id, subject_id)
        if subject is None:
            subject = Subject(
                id=subject_key(tenant_id, subject_id),
                tenant_id=tenant_id,
                subject_id=subject_id,
                subject_type=subject_type,
            )
            self.db.add(subject)
        elif subject.subject_type != subject_type:
            raise InvalidObservation(
                f"Subject {subject_id} is registered as {subject.subject_type}, not {subject_type}"
            )

        subject.display_label = display_label
        subject.context_flags = sorted(set(context_flags or []))
        subject.is_active = is_active
        self.db.commit()
        logger.info(f"Registered {subject_type} subject {subject_id} for tenant {tenant_id}")
        return subject

    def get_subject(self, tenant_id: str, subject_id: str) -> Optional[Subject]:
        return self.db.get(Subject, subject_key(tenant_id, subject_id))

    def validate(self, obs: ObservationInput, now: datetime) -> List[str]:
        """Every reason the observation is unacceptable; empty when valid"""
        reasons = []

        subject = self.get_subject(obs.tenant_id, obs.subject_id)
        if subject is None:
            reasons.append(f"unknown subject {obs.subject_id}")
        elif subject.subject_type != obs.subject_type:
            reasons.append(
                f"subject type mismatch: {obs.subject_id} is {subject.subject_type}, got {obs.subject_type}"
            )

        metric = self.config.get_metric(obs.metric_type)
        if metric is None:
            reasons.append(f"unknown metric {obs.metric_type}")
        else:
            if obs.subject_type not in metric.subject_types:
                reasons.append(f"metric {obs.metric_type} does not apply to {obs.subject_type}")
            if obs.unit != metric.unit:
                reasons.append(f"unit {obs.unit} does not match {metric.unit} for {obs.metric_type}")

        if not isinstance(obs.value, (int, float)) or isinstance(obs.value, bool) or not math.isfinite(obs.value):
            reasons.append("value must be a finite number")
        elif metric is not None and not (metric.min_value <= obs.value <= metric.max_value):
            reasons.append(
                f"value {obs.value} outside plausible range "
                f"{metric.min_value}-{metric.max_value} for {obs.metric_type}"
            )

        if obs.source_confidence not in SourceConfidence.__members__:
            reasons.append(f"unknown source confidence {obs.source_confidence}")

        if obs.recorded_at is None:
            reasons.append("recorded_at is required")
        elif to_naive_utc(obs.recorded_at) > now + timedelta(minutes=self.config.max_clock_skew_minutes):
            reasons.append("recorded_at is in the future")

        return reasons

    def submit_observation(self, obs: ObservationInput, now: Optional[datetime] = None) -> str:
        """
        Validate and store one observation.

        Returns the observation id; a repeated delivery of the same
        (subject, metric, recorded_at, source) returns the existing id without
        writing anything. Raises InvalidObservation with every failed check.
        """
        now = to_naive_utc(now) if now else utcnow()
        reasons = self.validate(obs, now)
        if reasons:
            logger.warning(
                f"Rejected observation for subject {obs.subject_id} metric {obs.metric_type}: {reasons}"
            )
            log_audit("observation_rejected", None, {
                "tenant_id": obs.tenant_id,
                "subject_id": obs.subject_id,
                "metric_type": obs.metric_type,
                "reasons": reasons,
            })
            raise InvalidObservation("Observation rejected: " + "; ".join(reasons), reasons)

        recorded_at = to_naive_utc(obs.recorded_at)
        observation_id = deterministic_id(
            obs.tenant_id, obs.subject_id, obs.metric_type, recorded_at, obs.source
        )
        if self.db.get(ObservationEvent, observation_id) is not None:
            logger.info(f"Duplicate observation {observation_id} ignored")
            return observation_id

        self.db.add(ObservationEvent(
            id=observation_id,
            tenant_id=obs.tenant_id,
            subject_id=obs.subject_id,
            subject_type=obs.subject_type,
            metric_type=obs.metric_type,
            value=float(obs.value),
            unit=obs.unit,
            recorded_at=recorded_at,
            source=obs.source,
            source_confidence=obs.source_confidence,
            bucket_start=floor_to_bucket(recorded_at, self.config.bucket_minutes),
            ingested_at=now,
        ))
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same observation
            self.db.rollback()
            if self.db.get(ObservationEvent, observation_id) is None:
                raise
            logger.info(f"Duplicate observation {observation_id} ignored")
        return observation_id

    def submit_batch(self, observations: List[ObservationInput], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Ingest multiple observations and report the outcome of each"""
        results = []
        accepted = 0
        rejected = 0

        for index, obs in enumerate(observations):
            try:
                observation_id = self.submit_observation(obs, now=now)
                results.append({"index": index, "observation_id": observation_id, "accepted": True, "errors": []})
                accepted += 1
            except InvalidObservation as e:
                results.append({"index": index, "observation_id": None, "accepted": False, "errors": e.reasons})
                rejected += 1

        logger.info(f"Batch ingest: {accepted} accepted, {rejected} rejected")
        return {
            "total": len(observations),
            "accepted": accepted,
            "rejected": rejected,
            "results": results
        }

    def aggregate_subject(self, tenant_id: str, subject_id: str) -> int:
        """
        Fold a subject's observations into buckets.

        Returns the number of observations newly folded into a changed
        bucket, so rerunning with no new observations returns 0.
        """
        events = (
            self.db.query(ObservationEvent)
            .filter(
                ObservationEvent.tenant_id == tenant_id,
                ObservationEvent.subject_id == subject_id,
            )
            .order_by(
                ObservationEvent.metric_type,
                ObservationEvent.bucket_start,
                ObservationEvent.ingested_at,
                ObservationEvent.id,
            )
            .all()
        )

        grouped: Dict[tuple, List[ObservationEvent]] = {}
        for event in events:
            grouped.setdefault((event.metric_type, event.bucket_start), []).append(event)

        existing = {
            (bucket.metric_type, bucket.bucket_start): bucket
            for bucket in self.db.query(ObservationBucket).filter(
                ObservationBucket.tenant_id == tenant_id,
                ObservationBucket.subject_id == subject_id,
            )
        }

        folded = 0
        now = utcnow()
        for (metric_type, bucket_start), bucket_events in grouped.items():
            latest = bucket_events[-1]
            values = [e.value for e in bucket_events]
            bucket = existing.get((metric_type, bucket_start))
            previous_count = bucket.observation_count if bucket else 0

            if bucket is not None \
                    and bucket.observation_count == len(bucket_events) \
                    and bucket.representative_observation_id == latest.id:
                continue

            if bucket is None:
                bucket = ObservationBucket(
                    id=deterministic_id(tenant_id, subject_id, metric_type, bucket_start),
                    tenant_id=tenant_id,
                    subject_id=subject_id,
                    metric_type=metric_type,
                    bucket_start=bucket_start,
                )
                self.db.add(bucket)

            bucket.representative_value = latest.value
            bucket.representative_observation_id = latest.id
            bucket.representative_confidence = latest.source_confidence
            bucket.observation_count = len(bucket_events)
            bucket.min_value = min(values)
            bucket.max_value = max(values)
            bucket.updated_at = now
            folded += max(len(bucket_events) - previous_count, 0)

        if folded:
            logger.info(f"Aggregated {folded} observations for subject {subject_id}")
        return folded

    def latest_observation_at(self, tenant_id: str, subject_id: str) -> Optional[datetime]:
        latest = (
            self.db.query(ObservationEvent.recorded_at)
            .filter(
                ObservationEvent.tenant_id == tenant_id,
                ObservationEvent.subject_id == subject_id,
            )
            .order_by(ObservationEvent.recorded_at.desc())
            .first()
        )
        return latest[0] if latest else None
