"""
Error taxonomy for the distribution engine.

Calculation and validation errors are raised synchronously to the caller.
Only SettlementFailure is retryable. Nothing here is ever auto-corrected.
"""
from typing import Dict, Optional


class DistributionError(Exception):
    """Base exception for distribution engine errors."""
    retryable = False

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DistributionError):
    """Malformed request fields, out-of-range percentages, over-withdrawal of capital."""


class NotFoundError(DistributionError):
    """Unknown deal or distribution request."""


class ConcurrentRequestError(DistributionError):
    """A PENDING or APPROVED request already exists for the deal."""


class InvalidTransitionError(DistributionError):
    """Requested status change is not allowed by the request state machine."""


class ConservationViolationError(DistributionError):
    """Computed plan does not sum to the money coming in. Never executed."""


class InconsistentLedgerError(DistributionError):
    """Investment rows disagree with the deal's total capital. Blocks the deal."""


class SettlementFailure(DistributionError):
    """The settlement transaction failed and was rolled back; safe to retry."""
    retryable = True
