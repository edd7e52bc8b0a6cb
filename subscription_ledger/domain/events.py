"""
Ledger Events - Immutable Facts About Ledger Mutations

Events are the only channel through which off-chain components observe the
ledger. Each one carries the full argument set of the mutation that produced
it, so replaying the log from genesis rebuilds the ledger's state.

The ledger creates events with `sequence=0`; the event log stamps the final
sequence position and transaction reference at append time.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Ledger event types."""

    PLAN_CREATED = "PlanCreated"
    PLAN_DEACTIVATED = "PlanDeactivated"
    SUBSCRIBED = "Subscribed"
    CHARGED = "Charged"
    CANCELLED = "Cancelled"


class CancelReason(str, Enum):
    """Why a subscription stopped."""

    SUBSCRIBER = "subscriber"
    PLAN_INACTIVE = "plan_inactive"
    DELINQUENT = "delinquent"


class LedgerEvent(BaseModel):
    """
    Base class for all ledger events.

    Events are IMMUTABLE and describe PAST FACTS.
    """

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(default=0, ge=0, description="Position in the event log")
    tx_ref: str = Field(default="", description="Opaque transaction reference")
    occurred_at: int = Field(..., description="Ledger time of the mutation (unix seconds)")

    def sequenced(self, sequence: int, tx_ref: str) -> "LedgerEvent":
        """Return a copy stamped with its log position."""
        return self.model_copy(update={"sequence": sequence, "tx_ref": tx_ref})

    @property
    def subscriber_address(self) -> Optional[str]:
        return getattr(self, "subscriber", None)

    @property
    def merchant_address(self) -> Optional[str]:
        return getattr(self, "merchant", None)

    def involves(
        self, subscriber: Optional[str] = None, merchant: Optional[str] = None
    ) -> bool:
        """Check whether the event concerns the given parties (case-insensitive)."""
        if subscriber is not None:
            own = self.subscriber_address
            if own is None or own.lower() != subscriber.lower():
                return False
        if merchant is not None:
            own = self.merchant_address
            if own is None or own.lower() != merchant.lower():
                return False
        return True


class PlanCreated(LedgerEvent):
    event_type: Literal[EventType.PLAN_CREATED] = EventType.PLAN_CREATED

    plan_id: str
    merchant: str
    name: str
    price_amount: int
    interval: int
    supports_membership_token: bool
    max_subscribers: int


class PlanDeactivated(LedgerEvent):
    event_type: Literal[EventType.PLAN_DEACTIVATED] = EventType.PLAN_DEACTIVATED

    plan_id: str
    merchant: str


class Subscribed(LedgerEvent):
    """Subscriber enrolled; the first period was charged up front."""

    event_type: Literal[EventType.SUBSCRIBED] = EventType.SUBSCRIBED

    subscriber: str
    plan_id: str
    merchant: str
    token: str
    amount: int
    next_charge_time: int
    membership_token_id: int = 0


class Charged(LedgerEvent):
    """Recurring charge settled."""

    event_type: Literal[EventType.CHARGED] = EventType.CHARGED

    subscriber: str
    plan_id: str
    merchant: str
    token: str
    amount: int
    next_charge_time: int
    total_paid: int


class Cancelled(LedgerEvent):
    event_type: Literal[EventType.CANCELLED] = EventType.CANCELLED

    subscriber: str
    plan_id: str
    merchant: str
    membership_token_id: int = 0
    reason: CancelReason


AnyLedgerEvent = Annotated[
    Union[PlanCreated, PlanDeactivated, Subscribed, Charged, Cancelled],
    Field(discriminator="event_type"),
]


class EventEnvelope(BaseModel):
    """Wire wrapper used to decode events of any type."""

    event: AnyLedgerEvent


def decode_event(payload: dict) -> LedgerEvent:
    """Rebuild a typed event from its JSON-compatible dict form."""
    return EventEnvelope.model_validate({"event": payload}).event
