"""
Subscription Projection - Ledger State Rebuilt From Events

The projection is the off-chain source of truth. It never reads the ledger:
every field is derived from the event log, so replaying the full history from
genesis must produce exactly the ledger's current snapshot.

Apply rules:
1. Events are applied in sequence order
2. An event at or below the last applied sequence is a redelivery and ignored
3. An event past the next expected sequence is refused; the caller fills the
   gap from the log first
4. Mutation is deterministic: same events, same state
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import structlog

from subscription_ledger.domain.events import (
    Cancelled,
    Charged,
    LedgerEvent,
    PlanCreated,
    PlanDeactivated,
    Subscribed,
)
from subscription_ledger.domain.models import (
    GlobalStats,
    LedgerSnapshot,
    PaymentHistoryEntry,
    PaymentKind,
    Plan,
    Subscription,
    subscription_key,
)

logger = structlog.get_logger(__name__)


class SubscriptionProjection:
    """Materialized view of plans, subscriptions and accounting."""

    def __init__(self) -> None:
        self.last_sequence = 0
        self.plans: Dict[str, Plan] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.global_stats = GlobalStats()
        self.merchant_revenue: Dict[str, int] = {}
        self.payments: List[PaymentHistoryEntry] = []

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    def apply(self, event: LedgerEvent) -> bool:
        """
        Apply one event.

        Returns:
            bool: False when the event was already applied or arrived early
        """
        if event.sequence <= self.last_sequence:
            return False
        if event.sequence != self.next_sequence:
            logger.warning(
                "projection_sequence_gap",
                expected=self.next_sequence,
                received=event.sequence,
            )
            return False

        self._mutate(event)
        self.last_sequence = event.sequence
        return True

    def _mutate(self, event: LedgerEvent) -> None:
        if isinstance(event, PlanCreated):
            self.plans[event.plan_id] = Plan(
                plan_id=event.plan_id,
                merchant=event.merchant,
                name=event.name,
                price_amount=event.price_amount,
                interval=event.interval,
                supports_membership_token=event.supports_membership_token,
                max_subscribers=event.max_subscribers,
                created_at=event.occurred_at,
            )
            self.global_stats.total_plans += 1

        elif isinstance(event, PlanDeactivated):
            self.plans[event.plan_id].active = False

        elif isinstance(event, Subscribed):
            self.subscriptions[subscription_key(event.subscriber, event.plan_id)] = Subscription(
                subscriber=event.subscriber,
                plan_id=event.plan_id,
                merchant=event.merchant,
                token=event.token,
                next_charge_time=event.next_charge_time,
                last_charge_time=event.occurred_at,
                total_paid=event.amount,
                membership_token_id=event.membership_token_id,
                started_at=event.occurred_at,
            )
            self.plans[event.plan_id].current_subscribers += 1
            self.global_stats.total_subscriptions += 1
            self._record_payment(event, PaymentKind.INITIAL)

        elif isinstance(event, Charged):
            subscription = self.subscriptions[subscription_key(event.subscriber, event.plan_id)]
            subscription.last_charge_time = event.occurred_at
            subscription.next_charge_time = event.next_charge_time
            subscription.total_paid = event.total_paid
            self.merchant_revenue[event.merchant] = (
                self.merchant_revenue.get(event.merchant, 0) + event.amount
            )
            self.global_stats.total_revenue += event.amount
            self._record_payment(event, PaymentKind.RENEWAL)

        elif isinstance(event, Cancelled):
            subscription = self.subscriptions[subscription_key(event.subscriber, event.plan_id)]
            subscription.active = False
            self.plans[event.plan_id].current_subscribers -= 1

    def _record_payment(self, event: Subscribed | Charged, kind: PaymentKind) -> None:
        self.payments.append(
            PaymentHistoryEntry(
                subscriber=event.subscriber,
                plan_id=event.plan_id,
                merchant=event.merchant,
                token=event.token,
                amount=event.amount,
                kind=kind,
                timestamp=event.occurred_at,
                sequence=event.sequence,
                tx_ref=event.tx_ref,
            )
        )

    @classmethod
    def replay(cls, events: Iterable[LedgerEvent]) -> SubscriptionProjection:
        """Rebuild a projection from the full event history."""
        projection = cls()
        for event in events:
            projection.apply(event)
        return projection

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        plan = self.plans.get(plan_id)
        return plan.model_copy() if plan else None

    def get_subscriptions(self, subscriber: str) -> List[Subscription]:
        return [
            sub.model_copy()
            for sub in self.subscriptions.values()
            if sub.subscriber == subscriber
        ]

    def get_payment_history(self, subscriber: Optional[str] = None) -> List[PaymentHistoryEntry]:
        if subscriber is None:
            return list(self.payments)
        wanted = subscriber.lower()
        return [entry for entry in self.payments if entry.subscriber.lower() == wanted]

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot.build(
            sequence=self.last_sequence,
            plans=self.plans,
            subscriptions=self.subscriptions,
            global_stats=self.global_stats,
            merchant_revenue=self.merchant_revenue,
        )
