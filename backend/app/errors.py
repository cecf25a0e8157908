"""
Error taxonomy for equivalence adjustments.

Validation and conflict errors are raised before any write and are not
retryable. Solver and persistence errors are raised after the saga has
cleaned up after itself, and the caller may simply try again.
"""

from __future__ import annotations

from typing import Optional


class EquivalenceError(Exception):
    """Base class for all ledger errors."""

    status_code: int = 500
    code: str = "equivalence_error"
    retryable: bool = False

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        body = {
            "detail": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.detail:
            body["diagnostics"] = self.detail
        return body


class ValidationError(EquivalenceError):
    """Request is missing something or has nothing to compensate."""

    status_code = 422
    code = "validation_error"


class NotFoundError(EquivalenceError):
    status_code = 404
    code = "not_found"


class ConflictError(EquivalenceError):
    """An adjustment is already active for the target meal slot and date."""

    status_code = 409
    code = "conflict"


class BusyError(EquivalenceError):
    """An adjustment for the slot is still being applied."""

    status_code = 423
    code = "busy"
    retryable = True


class SolverError(EquivalenceError):
    """The quantity solver failed, timed out, or answered with garbage."""

    status_code = 502
    code = "solver_error"
    retryable = True

    def __init__(self, message: str, reason: str = "solver", detail: Optional[str] = None):
        super().__init__(message, detail)
        self.reason = reason

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["reason"] = self.reason
        return body


class PersistenceError(EquivalenceError):
    """A store read or write failed. Raised after the saga has compensated."""

    status_code = 503
    code = "persistence_error"
    retryable = True

    def __init__(self, message: str, step: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.step = step

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.step:
            body["step"] = self.step
        return body
