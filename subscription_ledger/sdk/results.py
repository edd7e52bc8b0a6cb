"""
Caller-facing result types.

Mutations return OperationResult, reads return the model or a LookupResult
miss. Raw exceptions never cross the client boundary.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from subscription_ledger.domain.errors import ErrorKind, classify_error, error_message


class OperationError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, error: BaseException) -> "OperationError":
        kind = classify_error(error)
        return cls(kind=kind, message=error_message(error, kind))


class OperationResult(BaseModel):
    """Outcome of a mutating client call."""

    model_config = ConfigDict(frozen=True)

    success: bool
    reference_id: Optional[str] = None
    errors: List[OperationError] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    gasless: bool = False

    @classmethod
    def ok(
        cls,
        reference_id: Optional[str],
        data: Optional[Dict[str, Any]] = None,
        gasless: bool = False,
    ) -> "OperationResult":
        return cls(success=True, reference_id=reference_id, data=data or {}, gasless=gasless)

    @classmethod
    def fail(cls, *errors: OperationError, gasless: bool = False) -> "OperationResult":
        return cls(success=False, errors=list(errors), gasless=gasless)

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.errors[0].kind if self.errors else None


class LookupMiss(str, Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    UNAVAILABLE = "unavailable"  # the read itself failed


class LookupResult(BaseModel):
    """Typed miss returned by client reads instead of raising."""

    model_config = ConfigDict(frozen=True)

    reason: LookupMiss
    key: Optional[str] = None
    error: Optional[OperationError] = None
    record: Optional[Any] = None  # the inactive record, when there is one

    @property
    def found(self) -> bool:
        return False


class GaslessCapability(BaseModel):
    model_config = ConfigDict(frozen=True)

    can_pay_gasless: bool
    relayer_available: bool
    has_allowance: bool
    has_balance: bool
    allowance: int = 0
    balance: int = 0
    required: int = 0
