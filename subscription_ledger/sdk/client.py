"""
Subscription client.

Composes the ledger, reconciler and relayer service into one surface for
external callers. Every ledger call is bounded by the configured timeout; a
timeout is reported as network_timeout and the caller must re-query state
before retrying, since the ledger may have committed the call.
"""
import asyncio
from typing import Any, Awaitable, Callable, List, Optional, TypeVar, Union

import structlog

from subscription_ledger.config import Settings, get_settings
from subscription_ledger.core.ledger import SettlementLedger
from subscription_ledger.core.relayer import RelayerService
from subscription_ledger.domain.errors import ErrorKind, PlanNotFound, ValidationError
from subscription_ledger.domain.events import LedgerEvent
from subscription_ledger.domain.models import (
    GlobalStats,
    MerchantStats,
    PaymentHistoryEntry,
    Plan,
    Subscription,
)
from subscription_ledger.infrastructure.token_vault import TokenVault
from subscription_ledger.sdk.results import (
    GaslessCapability,
    LookupMiss,
    LookupResult,
    OperationError,
    OperationResult,
)
from subscription_ledger.workers.reconciler import EventLogReconciler

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SubscriptionClient:
    """
    Client facade for merchants and subscribers.

    Stateless apart from its connection: ledger, optional reconciler and
    relayer service, settings, and the caller identity used when an address
    argument is omitted.
    """

    def __init__(
        self,
        ledger: SettlementLedger,
        caller: Optional[str] = None,
        reconciler: Optional[EventLogReconciler] = None,
        relayer: Optional[RelayerService] = None,
        vault: Optional[TokenVault] = None,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.caller = caller
        self.reconciler = reconciler
        self.relayer = relayer
        self.vault = vault or (relayer.vault if relayer else None)
        self.settings = settings or get_settings()
        self.timeout = self.settings.ledger_call_timeout_seconds

    def _address(self, address: Optional[str]) -> str:
        resolved = address or self.caller
        if not resolved:
            raise ValidationError("No address given and no caller configured")
        return resolved

    def _token(self, token: Optional[str]) -> str:
        return token or self.settings.default_token

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    async def _mutate(
        self,
        operation: str,
        action: Callable[[], Awaitable[OperationResult]],
    ) -> OperationResult:
        try:
            return await action()
        except Exception as e:
            error = OperationError.from_exception(e)
            if error.kind is ErrorKind.UNKNOWN:
                logger.error(
                    "client_operation_error",
                    operation=operation,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                logger.info(
                    "client_operation_failed",
                    operation=operation,
                    error_kind=error.kind.value,
                )
            return OperationResult.fail(error)

    async def _read(self, operation: str, key: Optional[str], action: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await action()
        except PlanNotFound:
            return LookupResult(reason=LookupMiss.NOT_FOUND, key=key)
        except Exception as e:
            error = OperationError.from_exception(e)
            logger.warning(
                "client_read_failed", operation=operation, error_kind=error.kind.value
            )
            return LookupResult(reason=LookupMiss.UNAVAILABLE, key=key, error=error)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_plan(
        self,
        name: str,
        price_amount: int,
        interval: int,
        supports_membership_token: bool = False,
        max_subscribers: int = 1000,
        merchant: Optional[str] = None,
    ) -> OperationResult:
        async def action() -> OperationResult:
            plan_id = await self._call(
                self.ledger.create_plan(
                    self._address(merchant),
                    name,
                    price_amount,
                    interval,
                    supports_membership_token,
                    max_subscribers,
                )
            )
            return OperationResult.ok(plan_id, data={"plan_id": plan_id, "name": name})

        return await self._mutate("create_plan", action)

    async def subscribe(
        self,
        plan_id: str,
        token: Optional[str] = None,
        subscriber: Optional[str] = None,
    ) -> OperationResult:
        async def action() -> OperationResult:
            subscription = await self._call(
                self.ledger.subscribe(self._address(subscriber), plan_id, self._token(token))
            )
            return OperationResult.ok(
                subscription.key,
                data={
                    "plan_id": plan_id,
                    "next_charge_time": subscription.next_charge_time,
                    "membership_token_id": subscription.membership_token_id,
                },
            )

        return await self._mutate("subscribe", action)

    async def process_payment(
        self,
        subscriber: Optional[str] = None,
        token: Optional[str] = None,
        plan_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Charge a due payment, through the relayer when it is available.

        A gasless attempt settles through the relayer's batch path; the
        result carries `gasless=True` either way.
        """

        async def action() -> OperationResult:
            address = self._address(subscriber)
            settlement_token = self._token(token)

            if self.relayer is not None and self.relayer.is_available():
                entry = await self._call(
                    self.relayer.process_gasless_payment(
                        address, settlement_token, plan_id=plan_id
                    )
                )
                if not entry.success:
                    return OperationResult.fail(
                        OperationError(
                            kind=entry.error_kind or ErrorKind.UNKNOWN,
                            message=entry.error_message or "Gasless payment failed",
                        ),
                        gasless=True,
                    )
                charge = entry.charge
                return OperationResult.ok(
                    charge.tx_ref, data=charge.model_dump(), gasless=True
                )

            charge = await self._call(
                self.ledger.process_payment(address, settlement_token, plan_id)
            )
            return OperationResult.ok(charge.tx_ref, data=charge.model_dump())

        return await self._mutate("process_payment", action)

    async def deactivate_plan(self, plan_id: str, merchant: Optional[str] = None) -> OperationResult:
        async def action() -> OperationResult:
            plan = await self._call(self.ledger.deactivate_plan(self._address(merchant), plan_id))
            return OperationResult.ok(plan.plan_id, data={"active": plan.active})

        return await self._mutate("deactivate_plan", action)

    async def cancel_subscription(
        self, plan_id: Optional[str] = None, subscriber: Optional[str] = None
    ) -> OperationResult:
        async def action() -> OperationResult:
            subscription = await self._call(
                self.ledger.cancel_subscription(self._address(subscriber), plan_id)
            )
            return OperationResult.ok(
                subscription.key,
                data={"plan_id": subscription.plan_id, "total_paid": subscription.total_paid},
            )

        return await self._mutate("cancel_subscription", action)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_plan(self, plan_id: str) -> Union[Plan, LookupResult]:
        return await self._read(
            "get_plan", plan_id, lambda: self._call(self.ledger.get_plan(plan_id))
        )

    async def get_all_plans(self) -> Union[List[Plan], LookupResult]:
        """Active plans only."""
        return await self._read(
            "get_all_plans", None, lambda: self._call(self.ledger.get_all_plans(active_only=True))
        )

    async def get_user_subscription(
        self, subscriber: Optional[str] = None, plan_id: Optional[str] = None
    ) -> Union[Subscription, LookupResult]:
        async def action() -> Union[Subscription, LookupResult]:
            address = self._address(subscriber)
            subscription = await self._call(
                self.ledger.get_user_subscription(address, plan_id)
            )
            if subscription is None:
                return LookupResult(reason=LookupMiss.NOT_FOUND, key=address)
            if not subscription.active:
                return LookupResult(
                    reason=LookupMiss.INACTIVE, key=address, record=subscription
                )
            return subscription

        return await self._read("get_user_subscription", subscriber or self.caller, action)

    async def get_merchant_stats(
        self, merchant: Optional[str] = None
    ) -> Union[MerchantStats, LookupResult]:
        return await self._read(
            "get_merchant_stats",
            merchant or self.caller,
            lambda: self._call(self.ledger.get_merchant_stats(self._address(merchant))),
        )

    async def get_global_stats(self) -> Union[GlobalStats, LookupResult]:
        return await self._read(
            "get_global_stats", None, lambda: self._call(self.ledger.get_global_stats())
        )

    async def get_payment_history(
        self, subscriber: Optional[str] = None
    ) -> Union[List[PaymentHistoryEntry], LookupResult]:
        """Settled payments from the event log, newest first."""

        async def action() -> Union[List[PaymentHistoryEntry], LookupResult]:
            address = self._address(subscriber)
            if self.reconciler is None:
                return LookupResult(
                    reason=LookupMiss.UNAVAILABLE,
                    key=address,
                    error=OperationError(
                        kind=ErrorKind.NETWORK_ERROR, message="No event reconciler connected"
                    ),
                )
            await self._call(self.reconciler.catch_up())
            history = self.reconciler.get_payment_history(address)
            return sorted(history, key=lambda entry: entry.sequence, reverse=True)

        return await self._read("get_payment_history", subscriber or self.caller, action)

    async def can_pay_gasless(
        self,
        plan_id: str,
        subscriber: Optional[str] = None,
        token: Optional[str] = None,
    ) -> GaslessCapability:
        """Combine relayer availability with the subscriber's allowance and balance."""
        relayer_available = self.relayer is not None and self.relayer.is_available()
        try:
            address = self._address(subscriber)
            plan = await self._call(self.ledger.get_plan(plan_id))
            settlement_token = self._token(token)
            if self.vault is None:
                raise ValidationError("No token vault connected")
            allowance = await self._call(
                self.vault.allowance(settlement_token, address, self.ledger.address)
            )
            balance = await self._call(self.vault.balance_of(settlement_token, address))
        except Exception as e:
            logger.warning(
                "gasless_capability_check_failed",
                plan_id=plan_id,
                error_kind=OperationError.from_exception(e).kind.value,
            )
            return GaslessCapability(
                can_pay_gasless=False,
                relayer_available=relayer_available,
                has_allowance=False,
                has_balance=False,
            )

        required = plan.price_amount
        has_allowance = allowance >= required
        has_balance = balance >= required
        return GaslessCapability(
            can_pay_gasless=relayer_available and has_allowance and has_balance,
            relayer_available=relayer_available,
            has_allowance=has_allowance,
            has_balance=has_balance,
            allowance=allowance,
            balance=balance,
            required=required,
        )

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def watch_subscriber(
        self, callback: Callable[[LedgerEvent], Any], subscriber: Optional[str] = None
    ) -> Callable[[], bool]:
        """Subscribe to a subscriber's events; returns the cleanup callable."""
        if self.reconciler is None:
            raise ValidationError("No event reconciler connected")
        return self.reconciler.watch_subscriber(self._address(subscriber), callback)

    def watch_merchant(
        self, callback: Callable[[LedgerEvent], Any], merchant: Optional[str] = None
    ) -> Callable[[], bool]:
        """Subscribe to a merchant's events; returns the cleanup callable."""
        if self.reconciler is None:
            raise ValidationError("No event reconciler connected")
        return self.reconciler.watch_merchant(self._address(merchant), callback)
