"""
Rule Engine - deterministic threshold rules evaluated over the scoring window.

Rules:
- missed_doses_7d: missed doses summed over the scoring window
- low_medication_adherence: mean adherence percentage over the scoring window
- missed_care_24h: scheduled care or medication tasks reported overdue
- rushed_care_24h: task completions faster than the rushed-care limit
- task_completion_slowdown_24h: most recent tasks slower than the caregiver's baseline
- caregiver_task_overload_24h: tasks logged in the last day
- unacknowledged_escalation: pending escalation past its response deadline

A trigger is keyed by (tenant, subject, rule, window end) plus a fingerprint
of what fired, so re-evaluating unchanged inputs returns the stored trigger
while late readings or a changed escalation backlog produce a new one.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Dict

from sqlalchemy.orm import Session

from careintel.models.baseline_models import Baseline
from careintel.models.escalation_models import Escalation
from careintel.models.issue_models import PrioritizedIssue
from careintel.models.observation_models import ObservationEvent
from careintel.models.risk_models import RuleTrigger
from careintel.services.intelligence.config_service import IntelligenceConfig
from careintel.services.intelligence.enums import (
    SEVERITY_ORDER,
    BaselineStatus,
    EscalationStatus,
    Severity,
    SubjectType,
)
from careintel.services.intelligence.identifiers import deterministic_id, fingerprint, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RuleFiring:
    """A rule condition met in the current window, before persistence"""
    rule_key: str
    risk_type: str
    severity: str
    observed_value: float
    threshold: float
    description: str
    evidence: List[ObservationEvent]
    confidence: Optional[float] = None


class RuleEngine:
    """Service for evaluating threshold rules for one subject"""

    def __init__(self, db: Session, config: IntelligenceConfig):
        self.db = db
        self.config = config

    def evaluate_subject(
        self,
        tenant_id: str,
        subject_id: str,
        subject_type: str,
        window_end: datetime,
        as_of: datetime
    ) -> List[RuleTrigger]:
        """Return the triggers firing for the window ending at window_end, persisting new ones"""
        window_start = window_end - timedelta(days=self.config.scoring_window_days)
        observations = (
            self.db.query(ObservationEvent)
            .filter(
                ObservationEvent.tenant_id == tenant_id,
                ObservationEvent.subject_id == subject_id,
                ObservationEvent.recorded_at > window_start,
                ObservationEvent.recorded_at <= window_end,
            )
            .order_by(ObservationEvent.recorded_at, ObservationEvent.id)
            .all()
        )
        by_metric: Dict[str, List[ObservationEvent]] = {}
        for observation in observations:
            by_metric.setdefault(observation.metric_type, []).append(observation)

        short_start = window_end - timedelta(hours=self.config.short_rule_window_hours)
        recent = {
            metric: [o for o in items if o.recorded_at > short_start]
            for metric, items in by_metric.items()
        }

        firings: List[RuleFiring] = []
        if subject_type == SubjectType.RESIDENT.value:
            firings.extend(self._missed_doses(by_metric.get("missed_dose", [])))
            firings.extend(self._low_adherence(by_metric.get("medication_adherence", [])))
            firings.extend(self._missed_care(
                recent.get("care_task_overdue_hours", []),
                recent.get("medication_overdue_hours", [])
            ))
        elif subject_type == SubjectType.CAREGIVER.value:
            firings.extend(self._rushed_care(recent.get("task_completion_time", [])))
            firings.extend(self._slow_tasks(
                tenant_id, subject_id, recent.get("task_completion_time", []), short_start
            ))
            firings.extend(self._task_overload(recent.get("task_count", [])))
        firings.extend(self._unacknowledged_escalations(tenant_id, subject_id, as_of))

        triggers = []
        for firing in firings:
            confidence = round(self._confidence(firing), 4)
            firing_key = fingerprint({
                "severity": firing.severity,
                "observed_value": round(firing.observed_value, 4),
                "threshold": firing.threshold,
                "evidence": sorted(o.id for o in firing.evidence),
                "confidence": confidence,
            })
            trigger_id = deterministic_id(tenant_id, subject_id, firing.rule_key, window_end, firing_key)
            trigger = self.db.get(RuleTrigger, trigger_id)
            if trigger is None:
                trigger = self._build_trigger(
                    trigger_id, tenant_id, subject_id, firing, confidence, window_start, window_end
                )
                self.db.add(trigger)
                logger.info(
                    f"Rule {firing.rule_key} fired for subject {subject_id}: "
                    f"{firing.observed_value} vs {firing.threshold}"
                )
            triggers.append(trigger)

        self.db.flush()
        return triggers

    def _confidence(self, firing: RuleFiring) -> float:
        if firing.confidence is not None:
            return firing.confidence
        weights = self.config.source_confidence_weights
        return min(weights.get(o.source_confidence, 0.0) for o in firing.evidence)

    def _build_trigger(
        self,
        trigger_id: str,
        tenant_id: str,
        subject_id: str,
        firing: RuleFiring,
        confidence: float,
        window_start: datetime,
        window_end: datetime
    ) -> RuleTrigger:
        risk_type = self.config.get_risk_type(firing.risk_type)
        return RuleTrigger(
            id=trigger_id,
            tenant_id=tenant_id,
            subject_id=subject_id,
            rule_key=firing.rule_key,
            risk_category=risk_type.category,
            risk_type=firing.risk_type,
            severity=firing.severity,
            observed_value=round(firing.observed_value, 4),
            threshold=firing.threshold,
            description=firing.description,
            evidence_observation_ids=[o.id for o in firing.evidence],
            confidence=round(confidence, 4),
            window_start=window_start,
            window_end=window_end,
            triggered_at=utcnow(),
        )

    def _missed_doses(self, observations: List[ObservationEvent]) -> List[RuleFiring]:
        total = sum(o.value for o in observations)
        threshold = self.config.missed_doses_threshold
        if not observations or total < threshold:
            return []
        return [RuleFiring(
            rule_key="missed_doses_7d",
            risk_type="medication_nonadherence",
            severity=Severity.HIGH.value,
            observed_value=total,
            threshold=threshold,
            description=f"{total:g} missed doses recorded in {self.config.scoring_window_days} days",
            evidence=[o for o in observations if o.value > 0],
        )]

    def _low_adherence(self, observations: List[ObservationEvent]) -> List[RuleFiring]:
        if not observations:
            return []
        mean = sum(o.value for o in observations) / len(observations)
        if mean < self.config.adherence_high_threshold:
            severity, threshold = Severity.HIGH.value, self.config.adherence_high_threshold
        elif mean < self.config.adherence_medium_threshold:
            severity, threshold = Severity.MEDIUM.value, self.config.adherence_medium_threshold
        else:
            return []
        return [RuleFiring(
            rule_key="low_medication_adherence",
            risk_type="medication_nonadherence",
            severity=severity,
            observed_value=mean,
            threshold=threshold,
            description=f"Mean medication adherence {mean:.1f}% is below {threshold:g}%",
            evidence=observations,
        )]

    def _overdue_tier(self, observation: ObservationEvent):
        """(severity, threshold crossed) for one overdue report"""
        hours = observation.value
        if observation.metric_type == "medication_overdue_hours" \
                and hours > self.config.missed_medication_critical_hours:
            return Severity.CRITICAL.value, self.config.missed_medication_critical_hours
        if hours > self.config.missed_care_high_hours:
            return Severity.HIGH.value, self.config.missed_care_high_hours
        if hours > self.config.missed_care_medium_hours:
            return Severity.MEDIUM.value, self.config.missed_care_medium_hours
        return Severity.LOW.value, 0.0

    def _missed_care(
        self,
        care_tasks: List[ObservationEvent],
        medication_rounds: List[ObservationEvent]
    ) -> List[RuleFiring]:
        overdue = sorted(
            (o for o in care_tasks + medication_rounds if o.value > 0),
            key=lambda o: (o.recorded_at, o.id)
        )
        if not overdue:
            return []

        worst = max(overdue, key=lambda o: (SEVERITY_ORDER[self._overdue_tier(o)[0]], o.value))
        severity, threshold = self._overdue_tier(worst)
        label = self.config.get_metric(worst.metric_type).label
        return [RuleFiring(
            rule_key="missed_care_24h",
            risk_type="missed_care",
            severity=severity,
            observed_value=worst.value,
            threshold=threshold,
            description=(
                f"{len(overdue)} overdue task report(s) in {self.config.short_rule_window_hours} hours; "
                f"{label} {worst.value:g} hours late"
            ),
            evidence=overdue,
        )]

    def _rushed_care(self, observations: List[ObservationEvent]) -> List[RuleFiring]:
        rushed = [o for o in observations if o.value < self.config.rushed_care_seconds]
        if len(rushed) <= self.config.rushed_care_max_count:
            return []
        return [RuleFiring(
            rule_key="rushed_care_24h",
            risk_type="rushed_care",
            severity=Severity.MEDIUM.value,
            observed_value=len(rushed),
            threshold=self.config.rushed_care_max_count,
            description=(
                f"{len(rushed)} tasks completed in under {self.config.rushed_care_seconds:g} seconds "
                f"in {self.config.short_rule_window_hours} hours"
            ),
            evidence=rushed,
        )]

    def _slow_tasks(
        self,
        tenant_id: str,
        subject_id: str,
        observations: List[ObservationEvent],
        short_start: datetime
    ) -> List[RuleFiring]:
        """Most recent tasks slower than one standard deviation above the caregiver's usual time"""
        if not observations:
            return []
        # Baseline from before the tasks being judged
        baseline = (
            self.db.query(Baseline)
            .filter(
                Baseline.tenant_id == tenant_id,
                Baseline.subject_id == subject_id,
                Baseline.metric_type == "task_completion_time",
                Baseline.window_end <= short_start,
            )
            .order_by(Baseline.window_end.desc(), Baseline.version.desc())
            .first()
        )
        if baseline is None or baseline.status != BaselineStatus.VALID.value \
                or baseline.baseline_confidence < self.config.slow_task_min_baseline_confidence:
            return []

        limit = baseline.mean + (baseline.std_dev or 0.0)
        slow = [o for o in observations if o.value > limit]
        if len(slow) < self.config.slow_task_min_count \
                or len(slow) / len(observations) <= self.config.slow_task_min_fraction:
            return []

        slow_mean = sum(o.value for o in slow) / len(slow)
        return [RuleFiring(
            rule_key="task_completion_slowdown_24h",
            risk_type="care_task_slowdown",
            severity=Severity.MEDIUM.value,
            observed_value=slow_mean,
            threshold=round(limit, 4),
            description=(
                f"{len(slow)} of {len(observations)} tasks took longer than {limit:.0f} seconds "
                f"(usual {baseline.mean:.0f} seconds) in {self.config.short_rule_window_hours} hours"
            ),
            evidence=slow,
        )]

    def _task_overload(self, observations: List[ObservationEvent]) -> List[RuleFiring]:
        total = sum(o.value for o in observations)
        if total > self.config.task_overload_high:
            severity, threshold = Severity.HIGH.value, self.config.task_overload_high
        elif total > self.config.task_overload_medium:
            severity, threshold = Severity.MEDIUM.value, self.config.task_overload_medium
        else:
            return []
        return [RuleFiring(
            rule_key="caregiver_task_overload_24h",
            risk_type="caregiver_overload",
            severity=severity,
            observed_value=total,
            threshold=threshold,
            description=f"{total:g} tasks logged in {self.config.short_rule_window_hours} hours",
            evidence=observations,
        )]

    def _unacknowledged_escalations(self, tenant_id: str, subject_id: str, as_of: datetime) -> List[RuleFiring]:
        pending = (
            self.db.query(Escalation)
            .filter(
                Escalation.tenant_id == tenant_id,
                Escalation.subject_id == subject_id,
                Escalation.status == EscalationStatus.PENDING.value,
            )
            .all()
        )
        breached = [e for e in pending if e.is_breached(as_of)]
        if not breached:
            return []

        issues = self.db.query(PrioritizedIssue).filter(
            PrioritizedIssue.id.in_([e.issue_id for e in breached])
        ).all()
        confidence = min((i.confidence for i in issues), default=1.0)
        return [RuleFiring(
            rule_key="unacknowledged_escalation",
            risk_type="escalation_response_delay",
            severity=Severity.HIGH.value,
            observed_value=len(breached),
            threshold=1,
            description=f"{len(breached)} escalation(s) not acknowledged by the response deadline",
            evidence=[],
            confidence=confidence,
        )]
