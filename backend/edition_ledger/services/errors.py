# Overview: Ledger error taxonomy shared by services and routes.

from __future__ import annotations


class LedgerError(Exception):
    """Base class for edition ledger errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(LedgerError):
    """Raised when a caller supplies unusable input."""
    pass


class NotFoundError(LedgerError):
    """Referenced order, line item or product does not exist locally."""
    pass


class UpstreamNotFound(LedgerError):
    """The commerce platform has no matching order (definitive; never retried)."""
    pass


class TransientNetworkError(LedgerError):
    """A platform call failed on timeout/connection after exhausting retries."""
    pass


class ConcurrencyConflict(LedgerError):
    """A per-product lock could not be acquired within the allowed wait."""
    pass


class InvariantViolation(LedgerError):
    """Duplicate or gapped edition numbers detected for a product."""
    pass


# Structured outcome categories returned by every mutating/batch operation
OUTCOME_APPLIED = "applied"
OUTCOME_REPORTED = "reported"
OUTCOME_FAILED = "failed"
