"""
Care-risk intelligence pipeline services.

Stages, leaves first: observation aggregation, baseline modeling, anomaly
detection, rule evaluation and risk scoring, prioritization, explanation,
escalation.
"""

from .config_service import IntelligenceConfig, IntelligenceConfigService, MetricConfig, RiskTypeConfig
from .observation_aggregator import ObservationAggregator, ObservationInput
from .baseline_modeler import BaselineModeler, RunningStats
from .anomaly_detector import AnomalyDetector
from .rule_engine import RuleEngine
from .risk_scorer import RiskScorer
from .prioritization_engine import PrioritizationEngine
from .explainability_narrator import ExplainabilityNarrator
from .escalation_tracker import EscalationTracker
from .pipeline import IntelligencePassRunner, PassResult
from .background_worker import IntelligenceCronJob, start_worker_in_thread

__all__ = [
    'IntelligenceConfig',
    'IntelligenceConfigService',
    'MetricConfig',
    'RiskTypeConfig',
    'ObservationAggregator',
    'ObservationInput',
    'BaselineModeler',
    'RunningStats',
    'AnomalyDetector',
    'RuleEngine',
    'RiskScorer',
    'PrioritizationEngine',
    'ExplainabilityNarrator',
    'EscalationTracker',
    'IntelligencePassRunner',
    'PassResult',
    'IntelligenceCronJob',
    'start_worker_in_thread',
]
