"""Enumerations shared by the intelligence pipeline stages."""

from enum import Enum


class SubjectType(str, Enum):
    RESIDENT = "RESIDENT"
    CAREGIVER = "CAREGIVER"


class SourceConfidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class BaselineStatus(str, Enum):
    VALID = "VALID"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


class TrendDirection(str, Enum):
    STABLE = "STABLE"
    INCREASING = "INCREASING"
    DECREASING = "DECREASING"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


class DetectionMethod(str, Enum):
    ZSCORE = "ZSCORE"
    ABSOLUTE_FALLBACK = "ABSOLUTE_FALLBACK"


class Direction(str, Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"


class Polarity(str, Enum):
    HIGHER_IS_WORSE = "HIGHER_IS_WORSE"
    LOWER_IS_WORSE = "LOWER_IS_WORSE"
    BOTH_WORSE = "BOTH_WORSE"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RiskCategory(str, Enum):
    RESIDENT_HEALTH = "RESIDENT_HEALTH"
    MEDICATION = "MEDICATION"
    CARE_QUALITY = "CARE_QUALITY"
    CAREGIVER_WELLBEING = "CAREGIVER_WELLBEING"
    OPERATIONAL = "OPERATIONAL"


class IssueStatus(str, Enum):
    NEW = "NEW"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


class EscalationStatus(str, Enum):
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"


class PassStatus(str, Enum):
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    CANCELLED = "CANCELLED"


SEVERITY_ORDER = {
    Severity.LOW.value: 1,
    Severity.MEDIUM.value: 2,
    Severity.HIGH.value: 3,
    Severity.CRITICAL.value: 4,
}
