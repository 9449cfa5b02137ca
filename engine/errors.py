"""Ошибки движка оценки и прогнозирования"""
from typing import Any, Dict


class MonitorError(Exception):
    """Base class for failures reported as a tagged result"""

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_result(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, **self.details}


class ValidationError(MonitorError):
    """Out-of-range or missing required field"""


class NotFoundError(MonitorError):
    """Reference to an unknown record id"""


class InsufficientDataError(MonitorError):
    """Training set below the minimum size"""

    def __init__(self, required: int, available: int):
        super().__init__(
            "Insufficient high-quality training data available",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class ComputationError(MonitorError):
    """Ensemble produced no usable prediction"""


class StoreError(MonitorError):
    """Underlying persistence failure"""


class UpstreamUnavailableError(MonitorError):
    """Third-party API failed or returned nothing usable"""
