# backend/errors.py
"""
Domain errors raised by the trade services.

Each error carries a stable machine-readable ``code`` so clients can tell a
retryable business-rule failure apart from a permission or state conflict.
The HTTP layer renders them through a single exception handler in main.py.
"""
from typing import Any, Optional


class TradeError(Exception):
    """Base class for every failure surfaced to API callers."""
    code = "TRADE_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, "details": self.details}


# ============== Authorization / lookup ==============

class NotFound(TradeError):
    code = "NOT_FOUND"
    status_code = 404


class Forbidden(TradeError):
    code = "FORBIDDEN"
    status_code = 403


class SelfTarget(TradeError):
    code = "SELF_TARGET"
    status_code = 400


class NotFriends(TradeError):
    code = "NOT_FRIENDS"
    status_code = 400


# ============== State conflicts ==============

class InvalidState(TradeError):
    code = "INVALID_STATE"
    status_code = 409


class AlreadyAccepted(TradeError):
    code = "ALREADY_ACCEPTED"
    status_code = 409


class DuplicatePending(TradeError):
    code = "DUPLICATE_PENDING"
    status_code = 409


# ============== Settlement guards ==============

class OwnershipViolation(TradeError):
    code = "OWNERSHIP_VIOLATION"
    status_code = 422


class ValueDifferenceTooHigh(TradeError):
    code = "VALUE_DIFFERENCE_TOO_HIGH"
    status_code = 422


class RequestedItemMismatch(TradeError):
    code = "REQUESTED_ITEM_MISMATCH"
    status_code = 422


# ============== Infrastructure ==============

class SettlementFailed(TradeError):
    """The inventory transfer could not be committed; nothing was changed."""
    code = "SETTLEMENT_FAILED"
    status_code = 500


class SettlementConflict(Exception):
    """An ownership record no longer matches the snapshot a transfer was planned from."""


# Postgres SQLSTATE for a unique index violation, as reported by PostgREST
UNIQUE_VIOLATION = "23505"


def is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "code", None) == UNIQUE_VIOLATION
