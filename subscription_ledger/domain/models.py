"""
Read models and records owned by the settlement ledger.

Amounts are integers in the settlement token's base units. Times are unix
seconds taken from the ledger clock.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from subscription_ledger.domain.errors import ErrorKind


class Plan(BaseModel):
    """
    Merchant-defined recurring-charge offer.

    Only `active` and `current_subscribers` change after creation; a new price
    or interval means a new plan.
    """

    plan_id: str
    merchant: str
    name: str
    price_amount: int = Field(..., gt=0)
    interval: int = Field(..., gt=0, description="Seconds between charges")
    active: bool = True
    supports_membership_token: bool = False
    max_subscribers: int = Field(..., gt=0)
    current_subscribers: int = Field(default=0, ge=0)
    created_at: int = 0

    @property
    def is_full(self) -> bool:
        return self.current_subscribers >= self.max_subscribers


class Subscription(BaseModel):
    """A subscriber's enrollment in one plan."""

    subscriber: str
    plan_id: str
    merchant: str
    token: str
    active: bool = True
    next_charge_time: int
    last_charge_time: int
    total_paid: int = 0
    membership_token_id: int = 0
    started_at: int = 0

    @property
    def key(self) -> str:
        return subscription_key(self.subscriber, self.plan_id)

    def is_due(self, now: int) -> bool:
        return self.active and now >= self.next_charge_time


def subscription_key(subscriber: str, plan_id: str) -> str:
    return f"{subscriber}:{plan_id}"


class GlobalStats(BaseModel):
    """Platform-wide counters; never decrease."""

    total_revenue: int = 0
    total_subscriptions: int = 0
    total_plans: int = 0


class MerchantStats(BaseModel):
    """Read-only projection scoped to one merchant, computed at query time."""

    merchant: str
    revenue: int = 0
    active_plans: int = 0
    total_subscribers: int = 0


class ChargeResult(BaseModel):
    """Outcome of a settled charge (subscription or recurring)."""

    model_config = ConfigDict(frozen=True)

    subscriber: str
    plan_id: str
    merchant: str
    token: str
    amount: int
    charged_at: int
    next_charge_time: int
    total_paid: int
    sequence: int
    tx_ref: str


class BatchEntryResult(BaseModel):
    """Per-entry outcome of a relayer batch settlement."""

    model_config = ConfigDict(frozen=True)

    index: int
    subscriber: str
    amount: int
    success: bool
    charge: Optional[ChargeResult] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None


class BatchSettlementResult(BaseModel):
    """Per-entry results of a batch; never collapsed into one boolean."""

    model_config = ConfigDict(frozen=True)

    entries: List[BatchEntryResult] = Field(default_factory=list)

    @property
    def settled(self) -> int:
        return sum(1 for entry in self.entries if entry.success)

    @property
    def failed(self) -> int:
        return sum(1 for entry in self.entries if not entry.success)


class PaymentKind(str, Enum):
    INITIAL = "initial"
    RENEWAL = "renewal"


class PaymentHistoryEntry(BaseModel):
    """One settled payment as seen through the event log."""

    model_config = ConfigDict(frozen=True)

    subscriber: str
    plan_id: str
    merchant: str
    token: str
    amount: int
    kind: PaymentKind
    timestamp: int
    sequence: int
    tx_ref: str


class LedgerSnapshot(BaseModel):
    """
    Complete accounting state at one event-log position.

    Produced by the ledger and by the reconciler projection; the two must be
    identical at the same sequence. Keys are kept sorted so JSON dumps compare
    byte for byte.
    """

    sequence: int = 0
    plans: Dict[str, Plan] = Field(default_factory=dict)
    subscriptions: Dict[str, Subscription] = Field(default_factory=dict)
    global_stats: GlobalStats = Field(default_factory=GlobalStats)
    merchant_revenue: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def build(
        cls,
        sequence: int,
        plans: Dict[str, Plan],
        subscriptions: Dict[str, Subscription],
        global_stats: GlobalStats,
        merchant_revenue: Dict[str, int],
    ) -> "LedgerSnapshot":
        return cls(
            sequence=sequence,
            plans={k: plans[k].model_copy() for k in sorted(plans)},
            subscriptions={k: subscriptions[k].model_copy() for k in sorted(subscriptions)},
            global_stats=global_stats.model_copy(),
            merchant_revenue={k: merchant_revenue[k] for k in sorted(merchant_revenue)},
        )
