"""
Error taxonomy for ledger and off-chain components.

Every failure surfaced to callers carries an ErrorKind. Off-chain agents use
the `transient` flag to decide between retrying on the next cycle and recording
a permanent failure.
"""
import asyncio
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of failures."""

    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    PLAN_INACTIVE = "plan_inactive"
    PLAN_FULL = "plan_full"
    NOT_DUE = "not_due"
    DUPLICATE_SUBSCRIPTION = "duplicate_subscription"
    UNSUPPORTED_TOKEN = "unsupported_token"
    UNAUTHORIZED = "unauthorized"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    NETWORK_ERROR = "network_error"
    NETWORK_TIMEOUT = "network_timeout"
    UNKNOWN = "unknown"

    @property
    def transient(self) -> bool:
        return self in (ErrorKind.NETWORK_ERROR, ErrorKind.NETWORK_TIMEOUT)


class LedgerError(Exception):
    """Base exception for classified ledger failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, **context: object):
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def transient(self) -> bool:
        return self.kind.transient


class ValidationError(LedgerError):
    """Raised when call arguments fail validation."""

    kind = ErrorKind.VALIDATION


class PlanNotFound(ValidationError):
    """Raised when a plan id does not exist."""

    kind = ErrorKind.NOT_FOUND


class InsufficientFunds(LedgerError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class InsufficientAllowance(LedgerError):
    kind = ErrorKind.INSUFFICIENT_ALLOWANCE


class PlanInactive(LedgerError):
    kind = ErrorKind.PLAN_INACTIVE


class PlanFull(LedgerError):
    kind = ErrorKind.PLAN_FULL


class NotDue(LedgerError):
    """Raised when a recurring charge is attempted before its due time."""

    kind = ErrorKind.NOT_DUE


class DuplicateSubscription(LedgerError):
    kind = ErrorKind.DUPLICATE_SUBSCRIPTION


class UnsupportedToken(LedgerError):
    kind = ErrorKind.UNSUPPORTED_TOKEN


class Unauthorized(LedgerError):
    kind = ErrorKind.UNAUTHORIZED


class NoActiveSubscription(LedgerError):
    kind = ErrorKind.NO_ACTIVE_SUBSCRIPTION


class NetworkError(LedgerError):
    """Transient transport failure talking to the ledger."""

    kind = ErrorKind.NETWORK_ERROR


class NetworkTimeout(NetworkError):
    """
    Ledger call did not confirm in time.

    The outcome is unknown: the ledger may have committed the mutation before
    the caller gave up. Re-query authoritative state before retrying.
    """

    kind = ErrorKind.NETWORK_TIMEOUT


def classify_error(error: BaseException) -> ErrorKind:
    """
    Classify an exception for retry logic and user-facing reporting.

    Args:
        error: Exception raised by a ledger call

    Returns:
        ErrorKind: Error classification
    """
    if isinstance(error, LedgerError):
        return error.kind
    if isinstance(error, asyncio.TimeoutError):
        return ErrorKind.NETWORK_TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.UNKNOWN


def error_message(error: BaseException, kind: Optional[ErrorKind] = None) -> str:
    """Render a caller-safe message for a classified error."""
    if isinstance(error, LedgerError):
        return error.message
    kind = kind or classify_error(error)
    if kind is ErrorKind.NETWORK_TIMEOUT:
        return "Ledger call timed out; re-query state before retrying"
    if kind is ErrorKind.NETWORK_ERROR:
        return "Ledger unreachable"
    return "Unexpected ledger failure"
