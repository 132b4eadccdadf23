"""
Error taxonomy for the subscription core.

  PolicyViolation  → business rule caught on the client, before any request
  PolicyConflict   → business rule rejected by the backend (400/409/422)
  NotFoundError    → backend 404 (e.g. no active subscription)
  TransportError   → network failure, timeout or 5xx; safe to retry

None of these are fatal: each is scoped to the user action that raised it.
"""

from enum import Enum


class ViolationCode(str, Enum):
    INVALID_AMOUNT = "INVALID_AMOUNT"
    EXCEEDS_DEBT = "EXCEEDS_DEBT"
    ALREADY_PAID = "ALREADY_PAID"
    PARTIAL_PAYMENT_LIMIT = "PARTIAL_PAYMENT_LIMIT"
    FULL_AMOUNT_MISMATCH = "FULL_AMOUNT_MISMATCH"
    NOT_RENEWABLE = "NOT_RENEWABLE"
    NOT_CANCELABLE = "NOT_CANCELABLE"
    MISSING_CONTEXT = "MISSING_CONTEXT"
    INVALID_DATES = "INVALID_DATES"


class DeskError(Exception):
    """Base class for every failure raised by gymdesk."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PolicyViolation(DeskError):
    """A client-detectable business rule was broken. No request was sent."""

    def __init__(self, code: ViolationCode, message: str):
        super().__init__(message)
        self.code = code

    def __repr__(self) -> str:
        return f"PolicyViolation({self.code.value}, {self.message!r})"


class BackendError(DeskError):
    """The backend answered, but with an error status."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class PolicyConflict(BackendError):
    """Server-side business rule rejection (duplicate partial payment, already canceled...)."""


class NotFoundError(BackendError):
    pass


class TransportError(DeskError):
    """Network-level failure or 5xx. Optimistic state is rolled back; the action may be re-issued."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
