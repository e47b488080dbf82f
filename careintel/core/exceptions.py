"""
Domain exceptions raised by the intelligence pipeline.

Insufficient baseline data is deliberately absent: it is a baseline status
(see BaselineStatus.INSUFFICIENT_DATA), not an error.
"""

from typing import Optional, List


class CareIntelligenceError(Exception):
    """Base error for the pipeline"""

    error_type = "care_intelligence_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidObservation(CareIntelligenceError):
    """Malformed or out-of-range observation rejected at ingestion"""

    error_type = "invalid_observation"

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        super().__init__(message)
        self.reasons = reasons or [message]


class InvalidTransition(CareIntelligenceError):
    """Illegal escalation or issue state change; state left unchanged"""

    error_type = "invalid_transition"

    def __init__(self, current_status: str, requested_status: str):
        super().__init__(f"Cannot transition from {current_status} to {requested_status}")
        self.current_status = current_status
        self.requested_status = requested_status


class StaleState(CareIntelligenceError):
    """Optimistic-concurrency conflict; caller should re-read and retry"""

    error_type = "stale_state"

    def __init__(self, record_id: str, expected_version: Optional[int], actual_version: Optional[int]):
        super().__init__(
            f"Record {record_id} changed since it was read "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class NotFound(CareIntelligenceError):
    error_type = "not_found"


class InvalidConfiguration(CareIntelligenceError):
    error_type = "invalid_configuration"
