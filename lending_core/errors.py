"""
Error Taxonomy Module

Typed failures surfaced by the engine. Every error aborts its unit of work;
the caller decides user-facing messaging from the error class and its code.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base exception for all engine errors"""

    code = "LENDING_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(LendingError, ValueError):
    """Malformed or out-of-range input; no state was changed"""

    code = "VALIDATION_ERROR"


class NotFoundError(LendingError, LookupError):
    """A referenced product, insurer, loan or reference row does not exist or is inactive"""

    code = "NOT_FOUND"


class ConflictError(LendingError):
    """The target is not in a state that accepts the operation"""

    code = "CONFLICT"


class NoApplicableRangeError(LendingError, ValueError):
    """No insurer rate range contains the metric"""

    code = "NO_APPLICABLE_RANGE"


class InsufficientBalanceError(LendingError, ValueError):
    """The loan has no open balance to apply a payment against"""

    code = "INSUFFICIENT_BALANCE"


class InvariantViolationError(LendingError):
    """
    A configuration or logic defect. Never retried; the unit of work is
    rolled back and the event must be escalated.
    """

    code = "INVARIANT_VIOLATION"


class LedgerImbalanceError(InvariantViolationError):
    """Debits and credits of one accounting document differ"""

    code = "LEDGER_IMBALANCE"


class RoundingResidueError(InvariantViolationError):
    """An amount could not be fully applied and a residue above epsilon remains"""

    code = "ROUNDING_RESIDUE"


class TransactionTimeoutError(LendingError):
    """The storage layer gave up waiting on a lock or statement"""

    code = "TRANSACTION_TIMEOUT"
    retryable = True
