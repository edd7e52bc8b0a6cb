"""
Settlement ledger: plan registry, subscription ledger and accounting.

Every mutating operation:
1. Waits for the ledger lock (total order against all other mutations)
2. Validates every precondition before touching state
3. Pulls funds through the token vault (the only step that can fail late)
4. Applies the state change and appends the event to the log
5. Releases the lock, then waits out the confirmation delay

Steps 1-5 run shielded from caller cancellation: a caller that times out
does not roll back a mutation the ledger already committed.
"""
import asyncio
import functools
import hashlib
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import structlog

from subscription_ledger.config import ZERO_ADDRESS, Settings
from subscription_ledger.core.policies import DelinquencyPolicy, SubscriptionPolicy
from subscription_ledger.domain.errors import (
    DuplicateSubscription,
    InsufficientAllowance,
    InsufficientFunds,
    LedgerError,
    NoActiveSubscription,
    NotDue,
    PlanFull,
    PlanInactive,
    PlanNotFound,
    Unauthorized,
    UnsupportedToken,
    ValidationError,
    classify_error,
    error_message,
)
from subscription_ledger.domain.events import (
    CancelReason,
    Cancelled,
    Charged,
    LedgerEvent,
    PlanCreated,
    PlanDeactivated,
    Subscribed,
)
from subscription_ledger.domain.models import (
    BatchEntryResult,
    BatchSettlementResult,
    ChargeResult,
    GlobalStats,
    LedgerSnapshot,
    MerchantStats,
    Plan,
    Subscription,
)
from subscription_ledger.infrastructure.event_log import EventLog
from subscription_ledger.infrastructure.token_vault import TokenVault
from subscription_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Clock = Callable[[], int]

LEDGER_ADDRESS = "0xsubscription-ledger"


def system_clock() -> int:
    return int(time.time())


def derive_plan_id(merchant: str, name: str, nonce: int) -> str:
    """
    Derive a plan id from its creator, name and creation counter.

    The counter never repeats, so two plans with the same merchant and name
    still get distinct ids.
    """
    digest = hashlib.sha256(f"{merchant}:{name}:{nonce}".encode()).hexdigest()
    return f"0x{digest}"


class SettlementLedger:
    """
    Authoritative, serialized state machine for plans and subscriptions.

    Owned store object: every component receives the same instance and
    mutates it only through the public operations below.
    """

    def __init__(
        self,
        vault: TokenVault,
        event_log: EventLog,
        owner: str,
        supported_tokens: Iterable[str] = (),
        relayer_address: str = ZERO_ADDRESS,
        fee_m_enabled: bool = False,
        subscription_policy: SubscriptionPolicy = SubscriptionPolicy.SINGLE_ACTIVE,
        delinquency_policy: DelinquencyPolicy = DelinquencyPolicy.RETAIN,
        clock: Optional[Clock] = None,
        confirmation_delay: float = 0.0,
        address: str = LEDGER_ADDRESS,
    ):
        """
        Initialize the ledger.

        Args:
            vault: Value-transfer primitive the ledger pulls funds through
            event_log: Append-only log receiving every mutation's event
            owner: Governance address allowed to widen the token allowlist
            supported_tokens: Initial settlement-token allowlist
            relayer_address: Address allowed to call batch settlement
            fee_m_enabled: Whether the relayer path is enabled
            subscription_policy: Active-subscription cardinality rule
            delinquency_policy: Handling of failed recurring charges
            clock: Source of ledger time (unix seconds)
            confirmation_delay: Seconds a caller waits after commit
            address: Spender address subscribers grant allowances to
        """
        self._vault = vault
        self._event_log = event_log
        self._clock = clock or system_clock
        self._lock = asyncio.Lock()

        self.owner = owner
        self.address = address
        self.relayer_address = relayer_address
        self.fee_m_enabled = fee_m_enabled
        self.subscription_policy = subscription_policy
        self.delinquency_policy = delinquency_policy
        self.confirmation_delay = confirmation_delay

        self._supported_tokens: set[str] = set(supported_tokens)
        self._plans: Dict[str, Plan] = {}
        self._merchant_plans: Dict[str, List[str]] = {}
        self._subscriptions: Dict[str, Dict[str, Subscription]] = {}
        self._latest_plan: Dict[str, str] = {}
        self._merchant_revenue: Dict[str, int] = {}
        self._stats = GlobalStats()
        self._plan_nonce = 0
        self._membership_counter = 0
        self._sequence = 0

        logger.info(
            "settlement_ledger_initialized",
            owner=owner,
            supported_tokens=sorted(self._supported_tokens),
            fee_m_enabled=fee_m_enabled,
            subscription_policy=subscription_policy.value,
            delinquency_policy=delinquency_policy.value,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        vault: TokenVault,
        event_log: EventLog,
        clock: Optional[Clock] = None,
    ) -> "SettlementLedger":
        """Build a ledger from process configuration."""
        return cls(
            vault=vault,
            event_log=event_log,
            owner=settings.owner_address,
            supported_tokens=settings.get_settlement_tokens_list(),
            relayer_address=settings.relayer_address,
            fee_m_enabled=settings.fee_m_enabled,
            subscription_policy=SubscriptionPolicy.from_flag(settings.single_active_subscription),
            delinquency_policy=DelinquencyPolicy(settings.delinquency_policy),
            clock=clock,
            confirmation_delay=settings.confirmation_delay_seconds,
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    async def _serialized(
        self,
        operation: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        started = time.perf_counter()
        commit = asyncio.ensure_future(self._commit(func, *args))
        try:
            result = await asyncio.shield(commit)
        except asyncio.CancelledError:
            # the commit carries on without its caller; record it when it lands
            commit.add_done_callback(
                functools.partial(self._finished_after_cancel, operation, started)
            )
            raise
        except LedgerError as e:
            self._record_rejection(operation, e)
            raise

        metrics.record_ledger_operation(
            operation, "success", time.perf_counter() - started
        )
        if self.confirmation_delay > 0:
            await asyncio.sleep(self.confirmation_delay)
        return result

    def _record_rejection(self, operation: str, error: LedgerError) -> None:
        metrics.record_ledger_operation(operation, error.kind.value)
        logger.info(
            "ledger_operation_rejected",
            operation=operation,
            error_kind=error.kind.value,
            error=error.message,
        )

    def _finished_after_cancel(
        self, operation: str, started: float, commit: "asyncio.Future[Any]"
    ) -> None:
        if commit.cancelled():
            logger.warning("ledger_operation_abandoned", operation=operation)
            return
        error = commit.exception()
        if error is None:
            metrics.record_ledger_operation(
                operation, "success", time.perf_counter() - started
            )
            logger.info(
                "ledger_operation_finished_after_cancel", operation=operation, outcome="success"
            )
        elif isinstance(error, LedgerError):
            self._record_rejection(operation, error)
            logger.info(
                "ledger_operation_finished_after_cancel",
                operation=operation,
                outcome=error.kind.value,
            )
        else:
            logger.error(
                "ledger_operation_failed_after_cancel", operation=operation, error=str(error)
            )

    async def _commit(self, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        async with self._lock:
            return await func(*args)

    async def _emit(self, event: LedgerEvent) -> LedgerEvent:
        stamped = await self._event_log.append(event)
        self._sequence = stamped.sequence
        return stamped

    # ------------------------------------------------------------------
    # Plan registry
    # ------------------------------------------------------------------

    async def create_plan(
        self,
        merchant: str,
        name: str,
        price_amount: int,
        interval: int,
        supports_membership_token: bool = False,
        max_subscribers: int = 1000,
    ) -> str:
        """
        Publish a new plan.

        Returns:
            str: Deterministically derived plan id

        Raises:
            ValidationError: On non-positive price, interval or capacity
        """
        if not merchant:
            raise ValidationError("Merchant is required")
        if not name:
            raise ValidationError("Plan name is required")
        if price_amount <= 0:
            raise ValidationError("Price must be positive", price_amount=price_amount)
        if interval <= 0:
            raise ValidationError("Interval must be positive", interval=interval)
        if max_subscribers <= 0:
            raise ValidationError(
                "Max subscribers must be positive", max_subscribers=max_subscribers
            )

        return await self._serialized(
            "create_plan",
            self._create_plan_locked,
            merchant,
            name,
            price_amount,
            interval,
            supports_membership_token,
            max_subscribers,
        )

    async def _create_plan_locked(
        self,
        merchant: str,
        name: str,
        price_amount: int,
        interval: int,
        supports_membership_token: bool,
        max_subscribers: int,
    ) -> str:
        now = self._clock()
        self._plan_nonce += 1
        plan_id = derive_plan_id(merchant, name, self._plan_nonce)

        plan = Plan(
            plan_id=plan_id,
            merchant=merchant,
            name=name,
            price_amount=price_amount,
            interval=interval,
            supports_membership_token=supports_membership_token,
            max_subscribers=max_subscribers,
            created_at=now,
        )
        self._plans[plan_id] = plan
        self._merchant_plans.setdefault(merchant, []).append(plan_id)
        self._stats.total_plans += 1

        await self._emit(
            PlanCreated(
                occurred_at=now,
                plan_id=plan_id,
                merchant=merchant,
                name=name,
                price_amount=price_amount,
                interval=interval,
                supports_membership_token=supports_membership_token,
                max_subscribers=max_subscribers,
            )
        )

        logger.info(
            "plan_created",
            plan_id=plan_id,
            merchant=merchant,
            price_amount=price_amount,
            interval=interval,
        )
        return plan_id

    async def deactivate_plan(self, caller: str, plan_id: str) -> Plan:
        """
        Stop a plan from accepting new subscribers.

        Existing subscriptions lapse on their next charge attempt.

        Raises:
            PlanNotFound: Unknown plan id
            Unauthorized: Caller is not the plan's merchant
        """
        return await self._serialized(
            "deactivate_plan", self._deactivate_plan_locked, caller, plan_id
        )

    async def _deactivate_plan_locked(self, caller: str, plan_id: str) -> Plan:
        plan = self._require_plan(plan_id)
        if caller != plan.merchant:
            raise Unauthorized("Only the plan's merchant may deactivate it", plan_id=plan_id)

        if plan.active:
            plan.active = False
            await self._emit(
                PlanDeactivated(occurred_at=self._clock(), plan_id=plan_id, merchant=plan.merchant)
            )
            logger.info("plan_deactivated", plan_id=plan_id, merchant=plan.merchant)

        return plan.model_copy()

    async def add_supported_token(self, caller: str, token: str) -> None:
        """
        Widen the settlement-token allowlist.

        Raises:
            Unauthorized: Caller is not the governance owner
        """
        if not token:
            raise ValidationError("Token is required")
        await self._serialized(
            "add_supported_token", self._add_supported_token_locked, caller, token
        )

    async def _add_supported_token_locked(self, caller: str, token: str) -> None:
        if caller != self.owner:
            raise Unauthorized("Only governance may add settlement tokens")
        if token not in self._supported_tokens:
            self._supported_tokens.add(token)
            logger.info("supported_token_added", token=token)

    def _require_plan(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFound(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan

    def _require_token(self, token: str) -> None:
        if token not in self._supported_tokens:
            raise UnsupportedToken(f"Token {token} is not accepted", token=token)

    # ------------------------------------------------------------------
    # Subscription ledger
    # ------------------------------------------------------------------

    async def subscribe(self, subscriber: str, plan_id: str, token: str) -> Subscription:
        """
        Enroll a subscriber and charge the first period up front.

        Raises:
            UnsupportedToken, PlanNotFound, PlanInactive, PlanFull,
            DuplicateSubscription, InsufficientAllowance, InsufficientFunds.
            Any failure leaves all state untouched.
        """
        if not subscriber:
            raise ValidationError("Subscriber is required")
        return await self._serialized(
            "subscribe", self._subscribe_locked, subscriber, plan_id, token
        )

    async def _subscribe_locked(self, subscriber: str, plan_id: str, token: str) -> Subscription:
        self._require_token(token)
        plan = self._require_plan(plan_id)
        if not plan.active:
            raise PlanInactive(f"Plan {plan_id} is not active", plan_id=plan_id)
        if plan.is_full:
            raise PlanFull(
                f"Plan {plan_id} reached {plan.max_subscribers} subscribers",
                plan_id=plan_id,
            )
        self._check_duplicate(subscriber, plan_id)

        await self._vault.transfer_from(
            token, subscriber, self.address, plan.merchant, plan.price_amount
        )

        now = self._clock()
        membership_token_id = 0
        if plan.supports_membership_token:
            self._membership_counter += 1
            membership_token_id = self._membership_counter

        subscription = Subscription(
            subscriber=subscriber,
            plan_id=plan_id,
            merchant=plan.merchant,
            token=token,
            next_charge_time=now + plan.interval,
            last_charge_time=now,
            total_paid=plan.price_amount,
            membership_token_id=membership_token_id,
            started_at=now,
        )
        self._subscriptions.setdefault(subscriber, {})[plan_id] = subscription
        self._latest_plan[subscriber] = plan_id
        plan.current_subscribers += 1
        self._stats.total_subscriptions += 1

        await self._emit(
            Subscribed(
                occurred_at=now,
                subscriber=subscriber,
                plan_id=plan_id,
                merchant=plan.merchant,
                token=token,
                amount=plan.price_amount,
                next_charge_time=subscription.next_charge_time,
                membership_token_id=membership_token_id,
            )
        )
        metrics.record_charge(plan.price_amount)

        logger.info(
            "subscription_created",
            subscriber=subscriber,
            plan_id=plan_id,
            amount=plan.price_amount,
            next_charge_time=subscription.next_charge_time,
            membership_token_id=membership_token_id,
        )
        return subscription.model_copy()

    def _check_duplicate(self, subscriber: str, plan_id: str) -> None:
        records = self._subscriptions.get(subscriber, {})
        if self.subscription_policy is SubscriptionPolicy.SINGLE_ACTIVE:
            clash = any(sub.active for sub in records.values())
        else:
            existing = records.get(plan_id)
            clash = existing is not None and existing.active
        if clash:
            raise DuplicateSubscription(
                f"Subscriber {subscriber} already has an active subscription",
                subscriber=subscriber,
                policy=self.subscription_policy.value,
            )

    def _find_active(self, subscriber: str, plan_id: Optional[str]) -> Subscription:
        records = self._subscriptions.get(subscriber, {})
        if plan_id is not None:
            subscription = records.get(plan_id)
            if subscription is None or not subscription.active:
                raise NoActiveSubscription(
                    f"No active subscription for {subscriber} on plan {plan_id}",
                    subscriber=subscriber,
                )
            return subscription

        active = [sub for sub in records.values() if sub.active]
        if not active:
            raise NoActiveSubscription(
                f"No active subscription for {subscriber}", subscriber=subscriber
            )
        if len(active) > 1:
            raise ValidationError(
                "Subscriber holds several active subscriptions; plan_id is required",
                subscriber=subscriber,
            )
        return active[0]

    async def process_payment(
        self, subscriber: str, token: str, plan_id: Optional[str] = None
    ) -> ChargeResult:
        """
        Charge a due recurring payment. Callable by anyone.

        Raises:
            NoActiveSubscription: Nothing to charge
            UnsupportedToken: Token not on the allowlist
            PlanInactive: Plan was deactivated; the subscription lapses
            NotDue: Called before next_charge_time (no mutation)
            InsufficientAllowance, InsufficientFunds: Charge not covered
        """
        return await self._serialized(
            "process_payment", self._process_payment_locked, subscriber, token, plan_id
        )

    async def _process_payment_locked(
        self, subscriber: str, token: str, plan_id: Optional[str]
    ) -> ChargeResult:
        return await self._charge_locked(subscriber, token, plan_id, None)

    async def _charge_locked(
        self,
        subscriber: str,
        token: str,
        plan_id: Optional[str],
        expected_amount: Optional[int],
    ) -> ChargeResult:
        subscription = self._find_active(subscriber, plan_id)
        self._require_token(token)
        plan = self._plans[subscription.plan_id]
        now = self._clock()

        if now < subscription.next_charge_time:
            raise NotDue(
                f"Next charge for {subscriber} is due at {subscription.next_charge_time}",
                subscriber=subscriber,
                next_charge_time=subscription.next_charge_time,
            )

        if not plan.active:
            await self._end_subscription(subscription, plan, CancelReason.PLAN_INACTIVE, now)
            raise PlanInactive(
                f"Plan {plan.plan_id} is no longer active; subscription lapsed",
                plan_id=plan.plan_id,
                subscriber=subscriber,
            )

        if expected_amount is not None and expected_amount != plan.price_amount:
            raise ValidationError(
                f"Amount {expected_amount} does not match plan price {plan.price_amount}",
                subscriber=subscriber,
            )

        try:
            await self._vault.transfer_from(
                token, subscriber, self.address, plan.merchant, plan.price_amount
            )
        except (InsufficientAllowance, InsufficientFunds):
            if self.delinquency_policy is DelinquencyPolicy.CANCEL:
                await self._end_subscription(subscription, plan, CancelReason.DELINQUENT, now)
            raise

        subscription.last_charge_time = now
        subscription.next_charge_time += plan.interval
        subscription.total_paid += plan.price_amount
        self._merchant_revenue[plan.merchant] = (
            self._merchant_revenue.get(plan.merchant, 0) + plan.price_amount
        )
        self._stats.total_revenue += plan.price_amount

        event = await self._emit(
            Charged(
                occurred_at=now,
                subscriber=subscriber,
                plan_id=plan.plan_id,
                merchant=plan.merchant,
                token=token,
                amount=plan.price_amount,
                next_charge_time=subscription.next_charge_time,
                total_paid=subscription.total_paid,
            )
        )
        metrics.record_charge(plan.price_amount)

        logger.info(
            "payment_charged",
            subscriber=subscriber,
            plan_id=plan.plan_id,
            amount=plan.price_amount,
            next_charge_time=subscription.next_charge_time,
            tx_ref=event.tx_ref,
        )

        return ChargeResult(
            subscriber=subscriber,
            plan_id=plan.plan_id,
            merchant=plan.merchant,
            token=token,
            amount=plan.price_amount,
            charged_at=now,
            next_charge_time=subscription.next_charge_time,
            total_paid=subscription.total_paid,
            sequence=event.sequence,
            tx_ref=event.tx_ref,
        )

    async def cancel_subscription(
        self, subscriber: str, plan_id: Optional[str] = None
    ) -> Subscription:
        """
        Subscriber-initiated cancellation.

        Raises:
            NoActiveSubscription: Nothing to cancel
        """
        return await self._serialized(
            "cancel_subscription", self._cancel_locked, subscriber, plan_id
        )

    async def _cancel_locked(self, subscriber: str, plan_id: Optional[str]) -> Subscription:
        subscription = self._find_active(subscriber, plan_id)
        plan = self._plans[subscription.plan_id]
        await self._end_subscription(subscription, plan, CancelReason.SUBSCRIBER, self._clock())
        return subscription.model_copy()

    async def _end_subscription(
        self, subscription: Subscription, plan: Plan, reason: CancelReason, now: int
    ) -> None:
        subscription.active = False
        plan.current_subscribers -= 1

        await self._emit(
            Cancelled(
                occurred_at=now,
                subscriber=subscription.subscriber,
                plan_id=plan.plan_id,
                merchant=plan.merchant,
                membership_token_id=subscription.membership_token_id,
                reason=reason,
            )
        )
        logger.info(
            "subscription_cancelled",
            subscriber=subscription.subscriber,
            plan_id=plan.plan_id,
            reason=reason.value,
        )

    # ------------------------------------------------------------------
    # Fee abstraction (relayer batch settlement)
    # ------------------------------------------------------------------

    async def process_batch_payments(
        self,
        caller: str,
        subscribers: Sequence[str],
        token: str,
        amounts: Sequence[int],
        plan_ids: Optional[Sequence[Optional[str]]] = None,
    ) -> BatchSettlementResult:
        """
        Settle many recurring charges on the relayer's account.

        Entries are independent: a failing entry is reported and skipped,
        every other entry still settles. `plan_ids` names the subscription
        each entry charges; a None entry means the subscriber's only active one.

        Raises:
            Unauthorized: Relayer path disabled or caller is not the relayer
            ValidationError: Arrays differ in length or are empty
        """
        if not self.fee_m_enabled:
            metrics.record_ledger_operation("process_batch_payments", "unauthorized")
            raise Unauthorized("Fee abstraction is disabled")
        if caller != self.relayer_address or caller == ZERO_ADDRESS:
            metrics.record_ledger_operation("process_batch_payments", "unauthorized")
            raise Unauthorized("Only the designated relayer may settle batches")
        if len(subscribers) != len(amounts):
            raise ValidationError(
                "Subscribers and amounts must have equal length",
                subscribers=len(subscribers),
                amounts=len(amounts),
            )
        if not subscribers:
            raise ValidationError("Batch is empty")
        if plan_ids is None:
            plan_ids = [None] * len(subscribers)
        elif len(plan_ids) != len(subscribers):
            raise ValidationError(
                "Subscribers and plan ids must have equal length",
                subscribers=len(subscribers),
                plan_ids=len(plan_ids),
            )

        return await self._serialized(
            "process_batch_payments",
            self._batch_locked,
            list(subscribers),
            token,
            list(amounts),
            list(plan_ids),
        )

    async def _batch_locked(
        self,
        subscribers: List[str],
        token: str,
        amounts: List[int],
        plan_ids: List[Optional[str]],
    ) -> BatchSettlementResult:
        entries: List[BatchEntryResult] = []

        for index, (subscriber, amount, plan_id) in enumerate(
            zip(subscribers, amounts, plan_ids)
        ):
            try:
                charge = await self._charge_locked(subscriber, token, plan_id, amount)
            except Exception as e:
                kind = classify_error(e)
                entries.append(
                    BatchEntryResult(
                        index=index,
                        subscriber=subscriber,
                        amount=amount,
                        success=False,
                        error_kind=kind,
                        error_message=error_message(e, kind),
                    )
                )
                metrics.record_batch_entry("failed")
                logger.warning(
                    "batch_entry_failed",
                    index=index,
                    subscriber=subscriber,
                    error_kind=kind.value,
                )
                continue

            entries.append(
                BatchEntryResult(
                    index=index,
                    subscriber=subscriber,
                    amount=amount,
                    success=True,
                    charge=charge,
                )
            )
            metrics.record_batch_entry("settled")

        result = BatchSettlementResult(entries=entries)
        logger.info(
            "batch_settlement_completed",
            total=len(entries),
            settled=result.settled,
            failed=result.failed,
        )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def head_sequence(self) -> int:
        return self._sequence

    @property
    def supported_tokens(self) -> List[str]:
        return sorted(self._supported_tokens)

    def now(self) -> int:
        return self._clock()

    async def is_supported_token(self, token: str) -> bool:
        return token in self._supported_tokens

    async def get_plan(self, plan_id: str) -> Plan:
        """
        Raises:
            PlanNotFound: Unknown plan id
        """
        return self._require_plan(plan_id).model_copy()

    async def get_all_plans(self, active_only: bool = True) -> List[Plan]:
        return [
            plan.model_copy()
            for plan in self._plans.values()
            if plan.active or not active_only
        ]

    async def get_user_subscription(
        self, subscriber: str, plan_id: Optional[str] = None
    ) -> Optional[Subscription]:
        """
        Current subscription record for a subscriber.

        Without a plan id: the single active record if there is one, else the
        most recently created record. None if the subscriber never enrolled.
        """
        records = self._subscriptions.get(subscriber, {})
        if plan_id is not None:
            subscription = records.get(plan_id)
            return subscription.model_copy() if subscription else None

        active = [sub for sub in records.values() if sub.active]
        if len(active) == 1:
            return active[0].model_copy()
        if len(active) > 1:
            raise ValidationError(
                "Subscriber holds several active subscriptions; plan_id is required",
                subscriber=subscriber,
            )

        latest = self._latest_plan.get(subscriber)
        return records[latest].model_copy() if latest else None

    async def get_user_subscriptions(self, subscriber: str) -> List[Subscription]:
        return [sub.model_copy() for sub in self._subscriptions.get(subscriber, {}).values()]

    async def get_merchant_stats(self, merchant: str) -> MerchantStats:
        plans = [self._plans[plan_id] for plan_id in self._merchant_plans.get(merchant, [])]
        return MerchantStats(
            merchant=merchant,
            revenue=self._merchant_revenue.get(merchant, 0),
            active_plans=sum(1 for plan in plans if plan.active),
            total_subscribers=sum(plan.current_subscribers for plan in plans),
        )

    async def get_global_stats(self) -> GlobalStats:
        return self._stats.model_copy()

    async def snapshot(self) -> LedgerSnapshot:
        """Consistent copy of all accounting state at the current sequence."""
        async with self._lock:
            subscriptions = {
                sub.key: sub
                for records in self._subscriptions.values()
                for sub in records.values()
            }
            return LedgerSnapshot.build(
                sequence=self._sequence,
                plans=self._plans,
                subscriptions=subscriptions,
                global_stats=self._stats,
                merchant_revenue=self._merchant_revenue,
            )
