"""
Named ledger and channel policies.

Each policy is fixed for the lifetime of the component that owns it.
"""
from enum import Enum


class SubscriptionPolicy(str, Enum):
    """How many active subscriptions a subscriber may hold."""

    SINGLE_ACTIVE = "single_active"  # one active subscription across all plans
    PER_PLAN = "per_plan"  # one active subscription per plan

    @classmethod
    def from_flag(cls, single_active: bool) -> "SubscriptionPolicy":
        return cls.SINGLE_ACTIVE if single_active else cls.PER_PLAN


class DelinquencyPolicy(str, Enum):
    """What a failed recurring charge does to the subscription."""

    RETAIN = "retain"  # leave it active, no mutation
    CANCEL = "cancel"  # cancel it and emit Cancelled


class ChannelOverflowPolicy(str, Enum):
    """What a full listener channel does with a new event."""

    DROP_OLDEST = "drop_oldest"
    BLOCK = "block"  # wait up to the block timeout, then drop the new event
