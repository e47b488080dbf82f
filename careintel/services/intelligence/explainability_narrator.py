"""
Explainability Narrator

Builds the staff-facing explanation of an issue: a short summary, one
reasoning step per contributing factor, evidence links, and what the
system cannot determine. Explanations are versioned and regenerated only
when the issue's factor fingerprint changes.

Narratives refer to subjects by id only. They describe change signals for
review, never diagnoses.
"""

import logging
from typing import List, Dict, Any, Optional

from sqlalchemy.orm import Session

from careintel.core.exceptions import NotFound
from careintel.models.baseline_models import Baseline
from careintel.models.issue_models import PrioritizedIssue, Explanation
from careintel.models.observation_models import ObservationEvent
from careintel.models.risk_models import Anomaly, RiskScore, RuleTrigger
from careintel.services.intelligence.config_service import IntelligenceConfig
from careintel.services.intelligence.enums import DetectionMethod, TrendDirection
from careintel.services.intelligence.evidence import (
    AnomalyRef,
    EvidenceRef,
    ObservationRef,
    RuleTriggerRef,
    evidence_from_dict,
    evidence_to_dict,
)
from careintel.services.intelligence.identifiers import deterministic_id, utcnow

logger = logging.getLogger(__name__)

CLINICAL_CAUSE_STATEMENT = (
    "The clinical cause of these changes. This is a change signal for staff review, not a diagnosis."
)


class ExplainabilityNarrator:
    """Service for generating and retrieving issue explanations"""

    def __init__(self, db: Session, config: IntelligenceConfig):
        self.db = db
        self.config = config

    def get_explanation(self, issue_id: str, tenant_id: Optional[str] = None) -> Explanation:
        """Latest explanation for an issue, generating a new version when its factors changed"""
        issue = self.db.get(PrioritizedIssue, issue_id)
        if issue is None or (tenant_id is not None and issue.tenant_id != tenant_id):
            raise NotFound(f"Issue {issue_id} not found")

        latest = (
            self.db.query(Explanation)
            .filter(Explanation.issue_id == issue_id)
            .order_by(Explanation.version.desc())
            .first()
        )
        if latest is not None and latest.factor_fingerprint == issue.factor_fingerprint:
            return latest

        explanation = self.generate(issue, version=(latest.version + 1) if latest else 1)
        self.db.add(explanation)
        self.db.commit()
        logger.info(f"Generated explanation v{explanation.version} for issue {issue_id}")
        return explanation

    def describe_evidence(self, ref: EvidenceRef) -> str:
        """One sentence per evidence variant"""
        if isinstance(ref, AnomalyRef):
            label = self._label(ref.metric_type)
            if ref.detection_method == DetectionMethod.ABSOLUTE_FALLBACK.value:
                return (
                    f"{label} reading of {ref.observed_value:g} was {ref.direction.lower()} the usual "
                    f"level of {ref.baseline_mean:g}; the baseline showed no variation, so the metric's "
                    f"fixed threshold was used ({ref.severity})"
                )
            return (
                f"{label} reading of {ref.observed_value:g} was {abs(ref.deviation):.2f} standard "
                f"deviations {ref.direction.lower()} the baseline mean of {ref.baseline_mean:g} ({ref.severity})"
            )
        elif isinstance(ref, RuleTriggerRef):
            return (
                f"Rule {ref.rule_key} fired: observed {ref.observed_value:g} against a threshold of "
                f"{ref.threshold:g} ({ref.severity})"
            )
        elif isinstance(ref, ObservationRef):
            return (
                f"{self._label(ref.metric_type)} of {ref.value:g} {ref.unit} recorded at "
                f"{ref.recorded_at.isoformat()} with {ref.source_confidence} source confidence"
            )
        raise TypeError(f"Unsupported evidence type: {type(ref).__name__}")

    def evidence_confidence(self, ref: EvidenceRef) -> float:
        if isinstance(ref, (AnomalyRef, RuleTriggerRef)):
            return ref.confidence
        elif isinstance(ref, ObservationRef):
            return self.config.source_confidence_weights.get(ref.source_confidence, 0.0)
        raise TypeError(f"Unsupported evidence type: {type(ref).__name__}")

    def generate(self, issue: PrioritizedIssue, version: int) -> Explanation:
        score = self.db.get(RiskScore, issue.risk_score_id)
        if score is None:
            raise NotFound(f"Risk score {issue.risk_score_id} not found")

        steps: List[Dict[str, Any]] = []
        evidence: List[Dict[str, Any]] = []
        cannot_determine: List[str] = []

        for factor in score.contributing_factors or []:
            ref = evidence_from_dict(factor["ref"])
            steps.append({
                "step": len(steps) + 1,
                "factor": factor["factor"],
                "description": self.describe_evidence(ref),
                "contribution": factor["contribution"],
                "confidence": self.evidence_confidence(ref),
            })
            evidence.append(evidence_to_dict(ref))
            for supporting in self._supporting_observations(ref):
                evidence.append(evidence_to_dict(supporting))
            cannot_determine.extend(self._limits_of(ref))

        steps.append({
            "step": len(steps) + 1,
            "factor": "data_completeness",
            "description": (
                f"{score.completeness:.0%} of expected readings were present in the "
                f"{self.config.scoring_window_days}-day scoring window"
            ),
            "contribution": 0.0,
            "confidence": score.completeness,
        })

        if score.completeness < 1.0:
            cannot_determine.append(
                f"Whether the {1 - score.completeness:.0%} of expected readings that are missing "
                f"would change this assessment."
            )
        if score.version == 1 or score.trend_direction == TrendDirection.INSUFFICIENT_DATA.value:
            cannot_determine.append(
                "Whether this risk is rising or falling: there is no earlier score to compare against."
            )
        cannot_determine.append(CLINICAL_CAUSE_STATEMENT)

        weakest = min((f["confidence"] for f in score.contributing_factors or []), default=1.0)
        strongest = steps[0]["description"] if len(steps) > 1 else "no contributing factors"
        summary = (
            f"{issue.title}. {score.risk_level} risk (score {score.score:g}/100, confidence "
            f"{score.confidence:.0%}) for {issue.subject_type.lower()} {issue.subject_id} based on "
            f"{len(score.contributing_factors or [])} factor(s). Strongest: {strongest}."
        )

        return Explanation(
            id=deterministic_id("explanation", issue.id, version),
            issue_id=issue.id,
            tenant_id=issue.tenant_id,
            version=version,
            factor_fingerprint=issue.factor_fingerprint,
            summary=summary,
            reasoning_steps=steps,
            evidence=evidence,
            cannot_determine=list(dict.fromkeys(cannot_determine)),
            confidence=issue.confidence,
            confidence_explanation=(
                f"Confidence {issue.confidence:.4f} is the weakest evidence confidence ({weakest:.4f}) "
                f"multiplied by data completeness ({score.completeness:.4f})."
            ),
            generated_at=utcnow(),
        )

    def _supporting_observations(self, ref: EvidenceRef) -> List[ObservationRef]:
        if isinstance(ref, AnomalyRef):
            observation_ids = [ref.observation_id]
        elif isinstance(ref, RuleTriggerRef):
            trigger = self.db.get(RuleTrigger, ref.rule_trigger_id)
            observation_ids = list(trigger.evidence_observation_ids) if trigger else []
        elif isinstance(ref, ObservationRef):
            return []
        else:
            raise TypeError(f"Unsupported evidence type: {type(ref).__name__}")

        refs = []
        for observation_id in observation_ids:
            observation = self.db.get(ObservationEvent, observation_id)
            if observation is None:
                continue
            refs.append(ObservationRef(
                observation_id=observation.id,
                metric_type=observation.metric_type,
                value=observation.value,
                unit=observation.unit,
                recorded_at=observation.recorded_at,
                source_confidence=observation.source_confidence,
            ))
        return refs

    def _limits_of(self, ref: EvidenceRef) -> List[str]:
        """Cannot-determine statements specific to one piece of evidence"""
        if isinstance(ref, AnomalyRef):
            limits = []
            label = self._label(ref.metric_type).lower()
            if ref.detection_method == DetectionMethod.ABSOLUTE_FALLBACK.value:
                limits.append(
                    f"How unusual the {label} reading is relative to normal variation: the baseline "
                    f"had no variation, so a fixed threshold was used instead of a z-score."
                )
            anomaly = self.db.get(Anomaly, ref.anomaly_id)
            baseline = self.db.get(Baseline, anomaly.baseline_id) if anomaly else None
            if baseline is not None and baseline.trend_direction == TrendDirection.INSUFFICIENT_DATA.value:
                limits.append(
                    f"The longer-term trend of {label}: the prior {self.config.baseline_window_days}-day "
                    f"window has fewer than {self.config.min_baseline_samples} readings."
                )
            return limits
        elif isinstance(ref, (RuleTriggerRef, ObservationRef)):
            return []
        raise TypeError(f"Unsupported evidence type: {type(ref).__name__}")

    def _label(self, metric_type: str) -> str:
        metric = self.config.get_metric(metric_type)
        return (metric.label if metric else metric_type.replace("_", " ")).capitalize()
