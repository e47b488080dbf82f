"""
Intelligence Configuration Service - Admin-configurable thresholds and policies.

Provides centralized configuration for:
- Observation bucketing and clock skew tolerance
- Baseline window length and minimum sample count
- Z-score tier boundaries
- Risk factor weights, context multipliers and level thresholds
- Rule thresholds
- Escalation priority threshold and SLA hours per tier
- Metric catalog (unit, plausible range, polarity, absolute threshold)

Defaults live in IntelligenceConfig; each tenant may persist a partial
override dict that is deep-merged over the defaults.
"""

import copy
import logging
import math
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, asdict
from datetime import timedelta

from sqlalchemy.orm import Session

from careintel.core.exceptions import InvalidConfiguration
from careintel.core.logging import log_audit
from careintel.models.pipeline_models import TenantConfigOverride
from careintel.services.intelligence.enums import Polarity, RiskCategory, SubjectType
from careintel.services.intelligence.identifiers import utcnow

logger = logging.getLogger(__name__)


@dataclass
class MetricConfig:
    """Catalog entry for one observation metric"""
    unit: str
    subject_types: List[str]
    min_value: float
    max_value: float
    polarity: str
    absolute_threshold: float  # deviation treated as MEDIUM when the baseline has no variance
    expected_samples_per_day: float
    risk_type: str
    label: str


@dataclass
class RiskTypeConfig:
    """How a risk type is presented on the worklist"""
    category: str
    title: str
    interventions: List[str]


def _default_metrics() -> Dict[str, MetricConfig]:
    resident = [SubjectType.RESIDENT.value]
    caregiver = [SubjectType.CAREGIVER.value]
    return {
        "heart_rate": MetricConfig(
            unit="bpm", subject_types=resident, min_value=20, max_value=250,
            polarity=Polarity.BOTH_WORSE.value, absolute_threshold=15,
            expected_samples_per_day=1, risk_type="cardiovascular_instability", label="heart rate"
        ),
        "systolic_bp": MetricConfig(
            unit="mmHg", subject_types=resident, min_value=50, max_value=260,
            polarity=Polarity.BOTH_WORSE.value, absolute_threshold=20,
            expected_samples_per_day=1, risk_type="cardiovascular_instability", label="systolic blood pressure"
        ),
        "respiratory_rate": MetricConfig(
            unit="breaths/min", subject_types=resident, min_value=4, max_value=60,
            polarity=Polarity.BOTH_WORSE.value, absolute_threshold=4,
            expected_samples_per_day=1, risk_type="respiratory_decline", label="respiratory rate"
        ),
        "oxygen_saturation": MetricConfig(
            unit="%", subject_types=resident, min_value=50, max_value=100,
            polarity=Polarity.LOWER_IS_WORSE.value, absolute_threshold=3,
            expected_samples_per_day=1, risk_type="respiratory_decline", label="oxygen saturation"
        ),
        "body_temperature": MetricConfig(
            unit="celsius", subject_types=resident, min_value=30, max_value=45,
            polarity=Polarity.BOTH_WORSE.value, absolute_threshold=1.0,
            expected_samples_per_day=1, risk_type="infection_risk", label="body temperature"
        ),
        "blood_glucose": MetricConfig(
            unit="mg/dL", subject_types=resident, min_value=20, max_value=600,
            polarity=Polarity.BOTH_WORSE.value, absolute_threshold=40,
            expected_samples_per_day=1, risk_type="glycemic_instability", label="blood glucose"
        ),
        "fluid_intake": MetricConfig(
            unit="ml", subject_types=resident, min_value=0, max_value=5000,
            polarity=Polarity.LOWER_IS_WORSE.value, absolute_threshold=400,
            expected_samples_per_day=1, risk_type="dehydration", label="fluid intake"
        ),
        "pain_score": MetricConfig(
            unit="score", subject_types=resident, min_value=0, max_value=10,
            polarity=Polarity.HIGHER_IS_WORSE.value, absolute_threshold=2,
            expected_samples_per_day=1, risk_type="pain_escalation", label="pain score"
        ),
        "mobility_score": MetricConfig(
            unit="score", subject_types=resident, min_value=0, max_value=100,
            polarity=Polarity.LOWER_IS_WORSE.value, absolute_threshold=15,
            expected_samples_per_day=1, risk_type="fall_risk", label="mobility score"
        ),
        "medication_adherence": MetricConfig(
            unit="percent", subject_types=resident, min_value=0, max_value=100,
            polarity=Polarity.LOWER_IS_WORSE.value, absolute_threshold=15,
            expected_samples_per_day=1, risk_type="medication_nonadherence", label="medication adherence"
        ),
        "missed_dose": MetricConfig(
            unit="count", subject_types=resident, min_value=0, max_value=20,
            polarity=Polarity.HIGHER_IS_WORSE.value, absolute_threshold=1,
            expected_samples_per_day=1, risk_type="medication_nonadherence", label="missed doses"
        ),
        "care_task_overdue_hours": MetricConfig(
            unit="hours", subject_types=resident, min_value=0, max_value=168,
            polarity=Polarity.HIGHER_IS_WORSE.value, absolute_threshold=1,
            expected_samples_per_day=1, risk_type="missed_care", label="care task overdue"
        ),
        "medication_overdue_hours": MetricConfig(
            unit="hours", subject_types=resident, min_value=0, max_value=168,
            polarity=Polarity.HIGHER_IS_WORSE.value, absolute_threshold=1,
            expected_samples_per_day=1, risk_type="missed_care", label="medication round overdue"
        ),
        "task_completion_time": MetricConfig(
            unit="seconds", subject_types=caregiver, min_value=0, max_value=86400,
            polarity=Polarity.LOWER_IS_WORSE.value, absolute_threshold=120,
            expected_samples_per_day=8, risk_type="rushed_care", label="task completion time"
        ),
        "task_count": MetricConfig(
            unit="count", subject_types=caregiver, min_value=0, max_value=200,
            polarity=Polarity.HIGHER_IS_WORSE.value, absolute_threshold=10,
            expected_samples_per_day=1, risk_type="caregiver_overload", label="tasks per shift"
        ),
        "shift_hours": MetricConfig(
            unit="hours", subject_types=caregiver, min_value=0, max_value=24,
            polarity=Polarity.HIGHER_IS_WORSE.value, absolute_threshold=3,
            expected_samples_per_day=1, risk_type="caregiver_overload", label="shift length"
        ),
        "late_arrival_minutes": MetricConfig(
            unit="minutes", subject_types=caregiver, min_value=0, max_value=600,
            polarity=Polarity.HIGHER_IS_WORSE.value, absolute_threshold=15,
            expected_samples_per_day=1, risk_type="attendance_reliability", label="late arrival"
        ),
    }


def _default_risk_types() -> Dict[str, RiskTypeConfig]:
    health = RiskCategory.RESIDENT_HEALTH.value
    return {
        "cardiovascular_instability": RiskTypeConfig(
            category=health, title="Cardiovascular readings outside usual range",
            interventions=["Repeat vital signs", "Notify nurse on duty", "Review against care plan"]
        ),
        "respiratory_decline": RiskTypeConfig(
            category=health, title="Breathing readings outside usual range",
            interventions=["Repeat respiratory observations", "Notify nurse on duty"]
        ),
        "infection_risk": RiskTypeConfig(
            category=health, title="Temperature outside usual range",
            interventions=["Repeat temperature check", "Monitor fluid intake", "Notify nurse on duty"]
        ),
        "glycemic_instability": RiskTypeConfig(
            category=health, title="Blood glucose outside usual range",
            interventions=["Repeat glucose check", "Review meals and medication timing"]
        ),
        "dehydration": RiskTypeConfig(
            category=health, title="Fluid intake below usual level",
            interventions=["Offer fluids at each visit", "Start fluid balance chart"]
        ),
        "pain_escalation": RiskTypeConfig(
            category=health, title="Pain reports above usual level",
            interventions=["Reassess pain", "Review pain relief plan with nurse"]
        ),
        "fall_risk": RiskTypeConfig(
            category=health, title="Mobility below usual level",
            interventions=["Review mobility aids", "Increase supervision during transfers"]
        ),
        "medication_nonadherence": RiskTypeConfig(
            category=RiskCategory.MEDICATION.value, title="Medication doses missed or refused",
            interventions=["Review medication administration record", "Discuss refusals with pharmacist"]
        ),
        "rushed_care": RiskTypeConfig(
            category=RiskCategory.CARE_QUALITY.value, title="Care tasks completed unusually fast",
            interventions=["Spot-check recent visits", "Review rota for time pressure"]
        ),
        "missed_care": RiskTypeConfig(
            category=RiskCategory.CARE_QUALITY.value, title="Scheduled care tasks overdue",
            interventions=["Complete or reassign overdue tasks", "Notify supervisor on duty"]
        ),
        "care_task_slowdown": RiskTypeConfig(
            category=RiskCategory.CAREGIVER_WELLBEING.value, title="Care tasks taking longer than usual",
            interventions=["Schedule supervisor check-in", "Review visit allocation and travel time"]
        ),
        "caregiver_overload": RiskTypeConfig(
            category=RiskCategory.CAREGIVER_WELLBEING.value, title="Caregiver workload above usual level",
            interventions=["Rebalance task allocation", "Schedule supervisor check-in"]
        ),
        "attendance_reliability": RiskTypeConfig(
            category=RiskCategory.OPERATIONAL.value, title="Caregiver arriving later than usual",
            interventions=["Review travel time between visits", "Schedule supervisor check-in"]
        ),
        "escalation_response_delay": RiskTypeConfig(
            category=RiskCategory.OPERATIONAL.value, title="Escalation not acknowledged in time",
            interventions=["Contact on-call supervisor", "Review escalation rota"]
        ),
    }


def _default_context_multipliers() -> Dict[str, Dict[str, float]]:
    return {
        "cardiac_condition": {"cardiovascular_instability": 1.25},
        "respiratory_condition": {"respiratory_decline": 1.25},
        "diabetes": {"glycemic_instability": 1.2},
        "fall_history": {"fall_risk": 1.3},
        "cognitive_impairment": {"medication_nonadherence": 1.15, "dehydration": 1.15},
    }


@dataclass
class IntelligenceConfig:
    """Complete pipeline configuration"""

    # Ingestion
    bucket_minutes: int = 60
    max_clock_skew_minutes: int = 5

    # Baseline computation settings
    baseline_window_days: int = 7
    min_baseline_samples: int = 5
    trend_deadband: float = 0.05
    zero_variance_epsilon: float = 1e-6

    # Z-score tier boundaries
    z_medium_threshold: float = 2.0
    z_high_threshold: float = 3.0
    z_critical_threshold: float = 4.0

    source_confidence_weights: Dict[str, float] = field(
        default_factory=lambda: {"HIGH": 0.95, "MEDIUM": 0.75, "LOW": 0.5}
    )

    # Risk scoring
    scoring_window_days: int = 7
    severity_weights: Dict[str, float] = field(
        default_factory=lambda: {"LOW": 0.25, "MEDIUM": 0.5, "HIGH": 0.75, "CRITICAL": 1.0}
    )
    anomaly_factor_weight: float = 80.0
    rule_factor_weight: float = 60.0
    risk_medium_threshold: float = 30.0
    risk_high_threshold: float = 55.0
    risk_critical_threshold: float = 75.0
    risk_trend_deadband_points: float = 5.0

    # Rule thresholds
    missed_doses_threshold: float = 3
    adherence_medium_threshold: float = 80.0
    adherence_high_threshold: float = 60.0
    rushed_care_seconds: float = 10.0
    rushed_care_max_count: int = 3
    task_overload_medium: float = 50.0
    task_overload_high: float = 70.0
    # Hours overdue before a scheduled task counts as missed care; medication has its own limit
    missed_care_medium_hours: float = 2.0
    missed_care_high_hours: float = 4.0
    missed_medication_critical_hours: float = 1.0
    # Completion-time slowdown against the caregiver's own baseline
    slow_task_min_count: int = 3
    slow_task_min_fraction: float = 0.5
    slow_task_min_baseline_confidence: float = 0.5
    short_rule_window_hours: int = 24

    # Prioritization
    issue_score_floor: float = 1.0
    urgency_base: Dict[str, float] = field(
        default_factory=lambda: {"LOW": 25.0, "MEDIUM": 50.0, "HIGH": 75.0, "CRITICAL": 90.0}
    )
    urgency_trend_adjustment: float = 10.0
    urgency_sla_pressure_boost: float = 10.0

    # Escalation settings
    escalation_priority_threshold: float = 40.0
    sla_hours: Dict[str, float] = field(
        default_factory=lambda: {"CRITICAL": 0.25, "HIGH": 2.0, "MEDIUM": 8.0, "LOW": 24.0}
    )

    pass_interval_minutes: int = 60

    context_multipliers: Dict[str, Dict[str, float]] = field(default_factory=_default_context_multipliers)
    metrics: Dict[str, MetricConfig] = field(default_factory=_default_metrics)
    risk_types: Dict[str, RiskTypeConfig] = field(default_factory=_default_risk_types)

    def validate(self):
        """Reject configurations that would make scoring ill-defined"""
        errors = []
        if self.bucket_minutes <= 0 or (24 * 60) % self.bucket_minutes != 0:
            errors.append("bucket_minutes must divide a day")
        if self.baseline_window_days <= 0 or self.scoring_window_days <= 0:
            errors.append("window lengths must be positive")
        if self.min_baseline_samples < 2:
            errors.append("min_baseline_samples must be at least 2")
        if not (0 < self.missed_care_medium_hours < self.missed_care_high_hours) \
                or self.missed_medication_critical_hours <= 0:
            errors.append("missed care hours must be positive and ascending")
        if self.slow_task_min_count < 1 or not 0 <= self.slow_task_min_fraction < 1:
            errors.append("slow task count must be at least 1 and fraction within 0-1")
        if self.pass_interval_minutes <= 0:
            errors.append("pass_interval_minutes must be positive")
        if not (0 < self.z_medium_threshold < self.z_high_threshold < self.z_critical_threshold):
            errors.append("z thresholds must be ascending and positive")
        if not (0 < self.risk_medium_threshold < self.risk_high_threshold < self.risk_critical_threshold <= 100):
            errors.append("risk level thresholds must be ascending within 0-100")
        for name, weight in self.source_confidence_weights.items():
            if not 0 <= weight <= 1:
                errors.append(f"source confidence weight {name} must be within 0-1")
        for tier in ("LOW", "MEDIUM", "HIGH", "CRITICAL"):
            if self.sla_hours.get(tier, 0) <= 0:
                errors.append(f"sla_hours.{tier} must be positive")
            if tier not in self.severity_weights or tier not in self.urgency_base:
                errors.append(f"severity_weights and urgency_base need a {tier} entry")
        for name, metric in self.metrics.items():
            if not (math.isfinite(metric.min_value) and math.isfinite(metric.max_value)) \
                    or metric.min_value >= metric.max_value:
                errors.append(f"metric {name} has an invalid plausible range")
            if metric.absolute_threshold <= 0 or metric.expected_samples_per_day <= 0:
                errors.append(f"metric {name} needs a positive absolute threshold and sampling rate")
            if metric.risk_type not in self.risk_types:
                errors.append(f"metric {name} maps to unknown risk type {metric.risk_type}")
        if errors:
            raise InvalidConfiguration("; ".join(errors))

    def get_metric(self, metric_type: str) -> Optional[MetricConfig]:
        return self.metrics.get(metric_type)

    def get_risk_type(self, risk_type: str) -> RiskTypeConfig:
        return self.risk_types[risk_type]

    def get_z_severity(self, z_score: float) -> Optional[str]:
        """Get severity tier from |z|; None below the lowest tier"""
        abs_z = abs(z_score)
        if abs_z >= self.z_critical_threshold:
            return "CRITICAL"
        elif abs_z >= self.z_high_threshold:
            return "HIGH"
        elif abs_z >= self.z_medium_threshold:
            return "MEDIUM"
        return None

    def get_risk_level(self, score: float) -> str:
        if score >= self.risk_critical_threshold:
            return "CRITICAL"
        elif score >= self.risk_high_threshold:
            return "HIGH"
        elif score >= self.risk_medium_threshold:
            return "MEDIUM"
        return "LOW"

    def get_sla(self, tier: str) -> timedelta:
        return timedelta(hours=self.sla_hours[tier])

    def context_multiplier(self, context_flags: List[str], risk_type: str) -> float:
        multiplier = 1.0
        for flag in sorted(set(context_flags or [])):
            multiplier *= self.context_multipliers.get(flag, {}).get(risk_type, 1.0)
        return multiplier

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for storage/API"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IntelligenceConfig':
        """Create config from dictionary"""
        data = copy.deepcopy(data)
        metrics = data.pop("metrics", None)
        risk_types = data.pop("risk_types", None)
        try:
            config = cls(**data)
            if metrics is not None:
                config.metrics = {name: MetricConfig(**cfg) for name, cfg in metrics.items()}
            if risk_types is not None:
                config.risk_types = {name: RiskTypeConfig(**cfg) for name, cfg in risk_types.items()}
        except TypeError as e:
            raise InvalidConfiguration(f"Unknown or missing configuration field: {e}") from e
        return config


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class IntelligenceConfigService:
    """Service for managing pipeline configuration and per-tenant overrides"""

    _instance: Optional['IntelligenceConfigService'] = None
    _config: IntelligenceConfig = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._config = IntelligenceConfig()
        return cls._instance

    @property
    def config(self) -> IntelligenceConfig:
        """Get current default configuration"""
        return self._config

    def update_config(self, updates: Dict[str, Any]) -> IntelligenceConfig:
        """Update the default configuration with new values"""
        candidate = IntelligenceConfig.from_dict(_deep_merge(self._config.to_dict(), updates))
        candidate.validate()
        self._config = candidate
        logger.info(f"Intelligence config updated: {list(updates.keys())}")
        return self._config

    def reset_to_defaults(self) -> IntelligenceConfig:
        """Reset to default configuration"""
        self._config = IntelligenceConfig()
        logger.info("Intelligence config reset to defaults")
        return self._config

    def get_tenant_overrides(self, db: Session, tenant_id: str) -> Dict[str, Any]:
        row = db.get(TenantConfigOverride, tenant_id)
        return dict(row.overrides) if row else {}

    def get_config(self, db: Session, tenant_id: str) -> IntelligenceConfig:
        """Effective configuration for a tenant: defaults deep-merged with its overrides"""
        overrides = self.get_tenant_overrides(db, tenant_id)
        if not overrides:
            return self._config
        return IntelligenceConfig.from_dict(_deep_merge(self._config.to_dict(), overrides))

    def update_tenant_config(
        self,
        db: Session,
        tenant_id: str,
        updates: Dict[str, Any],
        updated_by: Optional[str] = None
    ) -> IntelligenceConfig:
        """
        Merge updates into the tenant's stored overrides.

        The merged result is validated before anything is written; an invalid
        update raises InvalidConfiguration and leaves the stored overrides as
        they were.
        """
        overrides = _deep_merge(self.get_tenant_overrides(db, tenant_id), updates)
        candidate = IntelligenceConfig.from_dict(_deep_merge(self._config.to_dict(), overrides))
        candidate.validate()

        row = db.get(TenantConfigOverride, tenant_id)
        if row is None:
            row = TenantConfigOverride(tenant_id=tenant_id)
            db.add(row)
        row.overrides = overrides
        row.updated_by = updated_by
        row.updated_at = utcnow()
        db.commit()

        log_audit("intelligence_config_updated", updated_by, {
            "tenant_id": tenant_id,
            "fields": sorted(updates.keys()),
        })
        logger.info(f"Tenant {tenant_id} config updated: {list(updates.keys())}")
        return candidate

    def reset_tenant_config(self, db: Session, tenant_id: str, updated_by: Optional[str] = None) -> IntelligenceConfig:
        row = db.get(TenantConfigOverride, tenant_id)
        if row is not None:
            db.delete(row)
            db.commit()
            log_audit("intelligence_config_reset", updated_by, {"tenant_id": tenant_id})
        return self._config
