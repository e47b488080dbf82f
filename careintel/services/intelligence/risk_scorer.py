"""
Risk Scorer

Combines adverse anomalies and rule triggers into one versioned 0-100 score
per (subject, risk type).

Scoring:
- contribution = severity weight x factor weight x context multiplier
- score = sum of contributions, clipped to 0-100
- confidence = weakest evidence confidence x data completeness

The scoring window is anchored at the subject's latest observation, so the
same inputs always produce the same score regardless of when the pass runs.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from careintel.models.observation_models import Subject, ObservationEvent, ObservationBucket
from careintel.models.risk_models import Anomaly, RuleTrigger, RiskScore
from careintel.services.intelligence.config_service import IntelligenceConfig
from careintel.services.intelligence.enums import RiskLevel, TrendDirection
from careintel.services.intelligence.evidence import AnomalyRef, RuleTriggerRef, evidence_to_dict
from careintel.services.intelligence.identifiers import deterministic_id, fingerprint, utcnow
from careintel.services.intelligence.rule_engine import RuleEngine

logger = logging.getLogger(__name__)


def latest_scores(db: Session, tenant_id: str, subject_id: Optional[str] = None) -> List[RiskScore]:
    """Current score (highest version) per (subject, risk type) within a tenant"""
    filters = [RiskScore.tenant_id == tenant_id]
    if subject_id is not None:
        filters.append(RiskScore.subject_id == subject_id)
    latest_versions = (
        db.query(
            RiskScore.subject_id,
            RiskScore.risk_type,
            func.max(RiskScore.version).label("version"),
        )
        .filter(*filters)
        .group_by(RiskScore.subject_id, RiskScore.risk_type)
        .subquery()
    )
    return (
        db.query(RiskScore)
        .join(
            latest_versions,
            (RiskScore.subject_id == latest_versions.c.subject_id)
            & (RiskScore.risk_type == latest_versions.c.risk_type)
            & (RiskScore.version == latest_versions.c.version),
        )
        .filter(*filters)
        .order_by(RiskScore.subject_id, RiskScore.risk_type)
        .all()
    )


def current_scores(db: Session, tenant_id: str, subject_id: str) -> Dict[str, RiskScore]:
    """Highest version per risk type for one subject"""
    return {row.risk_type: row for row in latest_scores(db, tenant_id, subject_id)}


class RiskScorer:
    """Service for computing subject risk scores"""

    def __init__(self, db: Session, config: IntelligenceConfig):
        self.db = db
        self.config = config

    def score_subject(self, tenant_id: str, subject: Subject, window_end: Optional[datetime], as_of: datetime) -> int:
        """
        Rescore every risk type for a subject. Returns the number of new score
        versions written; unchanged inputs write nothing.
        """
        existing = current_scores(self.db, tenant_id, subject.subject_id)
        if window_end is None:
            return self._clear_missing(existing, set())

        window_start = window_end - timedelta(days=self.config.scoring_window_days)
        factors_by_type: Dict[str, List[Dict[str, Any]]] = {}

        anomalies = (
            self.db.query(Anomaly)
            .filter(
                Anomaly.tenant_id == tenant_id,
                Anomaly.subject_id == subject.subject_id,
                Anomaly.is_adverse.is_(True),
                Anomaly.observed_at > window_start,
                Anomaly.observed_at <= window_end,
            )
            .order_by(Anomaly.observed_at, Anomaly.id)
            .all()
        )
        for anomaly in anomalies:
            metric = self.config.get_metric(anomaly.metric_type)
            if metric is None:
                continue
            factors_by_type.setdefault(metric.risk_type, []).append(
                self._anomaly_factor(anomaly, metric.label, metric.unit, subject.context_flags, metric.risk_type)
            )

        triggers = RuleEngine(self.db, self.config).evaluate_subject(
            tenant_id, subject.subject_id, subject.subject_type, window_end, as_of
        )
        for trigger in triggers:
            factors_by_type.setdefault(trigger.risk_type, []).append(
                self._rule_factor(trigger, subject.context_flags)
            )

        updated = 0
        for risk_type in sorted(factors_by_type):
            factors = sorted(
                factors_by_type[risk_type],
                key=lambda f: (-f["contribution"], f["kind"], f["ref_id"])
            )
            if self._write_score(tenant_id, subject, risk_type, factors, existing.get(risk_type),
                                 window_start, window_end):
                updated += 1

        updated += self._clear_missing(existing, set(factors_by_type))
        if updated:
            logger.info(f"Updated {updated} risk scores for subject {subject.subject_id}")
        return updated

    def _anomaly_factor(self, anomaly: Anomaly, label: str, unit: str, context_flags, risk_type: str) -> Dict[str, Any]:
        base_weight = self.config.severity_weights[anomaly.severity] * self.config.anomaly_factor_weight
        multiplier = self.config.context_multiplier(context_flags, risk_type)
        ref = AnomalyRef(
            anomaly_id=anomaly.id,
            observation_id=anomaly.observation_id,
            metric_type=anomaly.metric_type,
            observed_value=anomaly.observed_value,
            baseline_mean=anomaly.baseline_mean,
            deviation=anomaly.deviation,
            direction=anomaly.direction,
            severity=anomaly.severity,
            detection_method=anomaly.detection_method,
            confidence=anomaly.confidence,
        )
        return {
            "factor": f"{anomaly.metric_type}_deviation",
            "kind": "anomaly",
            "severity": anomaly.severity,
            "weight": round(base_weight, 4),
            "multiplier": round(multiplier, 4),
            "contribution": round(base_weight * multiplier, 4),
            "confidence": anomaly.confidence,
            "description": (
                f"{label.capitalize()} {anomaly.observed_value:g} {unit} is {abs(anomaly.deviation):.1f} "
                f"standard deviations {anomaly.direction.lower()} baseline {anomaly.baseline_mean:g}"
            ),
            "metric_type": anomaly.metric_type,
            "ref_id": anomaly.id,
            "ref": evidence_to_dict(ref),
        }

    def _rule_factor(self, trigger: RuleTrigger, context_flags) -> Dict[str, Any]:
        base_weight = self.config.severity_weights[trigger.severity] * self.config.rule_factor_weight
        multiplier = self.config.context_multiplier(context_flags, trigger.risk_type)
        ref = RuleTriggerRef(
            rule_trigger_id=trigger.id,
            rule_key=trigger.rule_key,
            observed_value=trigger.observed_value,
            threshold=trigger.threshold,
            severity=trigger.severity,
            confidence=trigger.confidence,
        )
        return {
            "factor": trigger.rule_key,
            "kind": "rule",
            "severity": trigger.severity,
            "weight": round(base_weight, 4),
            "multiplier": round(multiplier, 4),
            "contribution": round(base_weight * multiplier, 4),
            "confidence": trigger.confidence,
            "description": trigger.description,
            "metric_type": None,
            "metric_types": sorted({
                self._metric_of(observation_id) for observation_id in trigger.evidence_observation_ids
            } - {None}),
            "ref_id": trigger.id,
            "ref": evidence_to_dict(ref),
        }

    def _metric_of(self, observation_id: str) -> Optional[str]:
        observation = self.db.get(ObservationEvent, observation_id)
        return observation.metric_type if observation else None

    def completeness(self, tenant_id: str, subject_id: str, metric_types: List[str],
                     window_start: datetime, window_end: datetime) -> float:
        """Share of expected buckets present for the metrics involved, capped at 1"""
        if not metric_types:
            return 1.0
        actual_total = 0.0
        expected_total = 0.0
        for metric_type in sorted(set(metric_types)):
            metric = self.config.get_metric(metric_type)
            if metric is None:
                continue
            expected = self.config.scoring_window_days * metric.expected_samples_per_day
            actual = (
                self.db.query(func.count(ObservationBucket.id))
                .filter(
                    ObservationBucket.tenant_id == tenant_id,
                    ObservationBucket.subject_id == subject_id,
                    ObservationBucket.metric_type == metric_type,
                    ObservationBucket.bucket_start > window_start,
                    ObservationBucket.bucket_start <= window_end,
                )
                .scalar()
            )
            actual_total += min(actual, expected)
            expected_total += expected
        if expected_total == 0:
            return 1.0
        return min(1.0, actual_total / expected_total)

    def _write_score(
        self,
        tenant_id: str,
        subject: Subject,
        risk_type: str,
        factors: List[Dict[str, Any]],
        previous: Optional[RiskScore],
        window_start: datetime,
        window_end: datetime
    ) -> bool:
        metric_types = []
        for factor in factors:
            if factor["metric_type"]:
                metric_types.append(factor["metric_type"])
            metric_types.extend(factor.get("metric_types", []))
        completeness = round(self.completeness(
            tenant_id, subject.subject_id, metric_types, window_start, window_end
        ), 4)

        score = round(min(100.0, max(0.0, sum(f["contribution"] for f in factors))), 2)
        confidence = round(min(f["confidence"] for f in factors) * completeness, 4)
        level = self.config.get_risk_level(score)

        input_fingerprint = fingerprint({
            "risk_type": risk_type,
            "factors": [(f["ref_id"], f["contribution"], f["confidence"]) for f in factors],
            "completeness": completeness,
            "level": level,
        })
        if previous is not None and previous.is_active and previous.input_fingerprint == input_fingerprint:
            return False

        version = previous.version + 1 if previous else 1
        risk_config = self.config.get_risk_type(risk_type)
        self.db.add(RiskScore(
            id=deterministic_id(tenant_id, subject.subject_id, risk_type, input_fingerprint, version),
            tenant_id=tenant_id,
            subject_id=subject.subject_id,
            subject_type=subject.subject_type,
            risk_category=risk_config.category,
            risk_type=risk_type,
            version=version,
            score=score,
            confidence=confidence,
            risk_level=level,
            contributing_factors=factors,
            suggested_interventions=list(risk_config.interventions),
            trend_direction=self._trend(score, previous).value,
            linked_anomaly_ids=[f["ref_id"] for f in factors if f["kind"] == "anomaly"],
            linked_rule_trigger_ids=[f["ref_id"] for f in factors if f["kind"] == "rule"],
            completeness=completeness,
            input_fingerprint=input_fingerprint,
            is_active=True,
            window_start=window_start,
            window_end=window_end,
            computed_at=utcnow(),
        ))
        self.db.flush()
        return True

    def _trend(self, score: float, previous: Optional[RiskScore]) -> TrendDirection:
        if previous is None or not previous.is_active:
            return TrendDirection.INSUFFICIENT_DATA
        change = score - previous.score
        if change > self.config.risk_trend_deadband_points:
            return TrendDirection.INCREASING
        elif change < -self.config.risk_trend_deadband_points:
            return TrendDirection.DECREASING
        return TrendDirection.STABLE

    def _clear_missing(self, existing: Dict[str, RiskScore], still_present: set) -> int:
        """Record a cleared version for active risk types whose evidence left the window"""
        cleared = 0
        for risk_type, previous in sorted(existing.items()):
            if risk_type in still_present or not previous.is_active:
                continue
            version = previous.version + 1
            input_fingerprint = fingerprint({"risk_type": risk_type, "cleared_after": previous.id})
            self.db.add(RiskScore(
                id=deterministic_id(previous.tenant_id, previous.subject_id, risk_type, input_fingerprint, version),
                tenant_id=previous.tenant_id,
                subject_id=previous.subject_id,
                subject_type=previous.subject_type,
                risk_category=previous.risk_category,
                risk_type=risk_type,
                version=version,
                score=0.0,
                confidence=previous.confidence,
                risk_level=RiskLevel.LOW.value,
                contributing_factors=[],
                suggested_interventions=[],
                trend_direction=TrendDirection.DECREASING.value,
                linked_anomaly_ids=list(previous.linked_anomaly_ids or []),
                linked_rule_trigger_ids=list(previous.linked_rule_trigger_ids or []),
                completeness=previous.completeness,
                input_fingerprint=input_fingerprint,
                is_active=False,
                window_start=previous.window_start,
                window_end=previous.window_end,
                computed_at=utcnow(),
            ))
            cleared += 1
            logger.info(f"Risk {risk_type} cleared for subject {previous.subject_id}")
        self.db.flush()
        return cleared
