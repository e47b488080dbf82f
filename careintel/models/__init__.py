from careintel.models.observation_models import Subject, ObservationEvent, ObservationBucket
from careintel.models.baseline_models import Baseline
from careintel.models.risk_models import Anomaly, RuleTrigger, RiskScore
from careintel.models.issue_models import PrioritizedIssue, IssueStatusEvent, Explanation
from careintel.models.escalation_models import Escalation, EscalationAuditLog
from careintel.models.pipeline_models import TenantConfigOverride, IntelligencePassRun

__all__ = [
    "Subject",
    "ObservationEvent",
    "ObservationBucket",
    "Baseline",
    "Anomaly",
    "RuleTrigger",
    "RiskScore",
    "PrioritizedIssue",
    "IssueStatusEvent",
    "Explanation",
    "Escalation",
    "EscalationAuditLog",
    "TenantConfigOverride",
    "IntelligencePassRun",
]
