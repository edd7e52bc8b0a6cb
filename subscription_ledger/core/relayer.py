"""
Relayer side of the fee-abstraction path.

The relayer submits recurring charges on behalf of subscribers and absorbs
the transaction cost out of band. Settlement itself happens in
SettlementLedger.process_batch_payments; this service only decides whether
the path is usable and shapes calls into it.
"""
from typing import List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, ConfigDict

from subscription_ledger.config import ZERO_ADDRESS
from subscription_ledger.core.ledger import SettlementLedger
from subscription_ledger.domain.errors import NoActiveSubscription, Unauthorized, ValidationError
from subscription_ledger.domain.models import BatchEntryResult, BatchSettlementResult
from subscription_ledger.infrastructure.token_vault import TokenVault

logger = structlog.get_logger(__name__)


class RelayerStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    relayer: Optional[str]
    available: bool


class AllowanceCheck(BaseModel):
    """Whether a subscriber's allowance and balance cover one period of a plan."""

    model_config = ConfigDict(frozen=True)

    has_allowance: bool
    allowance: int
    balance: int
    required: int
    can_pay: bool


class RelayerService:
    """
    Gasless payment submission through the designated relayer.

    Usage:
        relayer = RelayerService(ledger, vault, relayer_address="0xrelayer", enabled=True)
        if relayer.is_available():
            entry = await relayer.process_gasless_payment(subscriber, token)
    """

    def __init__(
        self,
        ledger: SettlementLedger,
        vault: TokenVault,
        relayer_address: str = ZERO_ADDRESS,
        enabled: bool = False,
    ):
        self.ledger = ledger
        self.vault = vault
        self.relayer_address = relayer_address
        self.enabled = enabled

    def is_available(self) -> bool:
        """Enabled locally and pointed at a real relayer address."""
        return bool(
            self.enabled
            and self.relayer_address
            and self.relayer_address != ZERO_ADDRESS
        )

    async def get_status(self) -> RelayerStatus:
        """Ledger-side relayer configuration plus local availability."""
        relayer = self.ledger.relayer_address
        return RelayerStatus(
            enabled=self.ledger.fee_m_enabled,
            relayer=None if relayer == ZERO_ADDRESS else relayer,
            available=self.is_available(),
        )

    def _require_available(self) -> None:
        if not self.is_available():
            raise Unauthorized("Fee abstraction is not available or not configured")

    async def _plan_price(self, subscriber: str, plan_id: Optional[str] = None) -> int:
        subscription = await self.ledger.get_user_subscription(subscriber, plan_id)
        if subscription is None or not subscription.active:
            raise NoActiveSubscription(
                f"No active subscription for {subscriber}", subscriber=subscriber, plan_id=plan_id
            )
        plan = await self.ledger.get_plan(subscription.plan_id)
        return plan.price_amount

    async def process_gasless_payment(
        self,
        subscriber: str,
        token: str,
        amount: Optional[int] = None,
        plan_id: Optional[str] = None,
    ) -> BatchEntryResult:
        """
        Settle one subscriber's due charge through the relayer.

        Args:
            subscriber: Subscriber to charge
            token: Settlement token
            amount: Expected charge; defaults to the subscribed plan's price
            plan_id: Subscription to charge; required when several are active

        Returns:
            BatchEntryResult: Outcome of the single batch entry
        """
        self._require_available()
        if amount is None:
            amount = await self._plan_price(subscriber, plan_id)

        result = await self.ledger.process_batch_payments(
            self.relayer_address, [subscriber], token, [amount], plan_ids=[plan_id]
        )
        entry = result.entries[0]

        logger.info(
            "gasless_payment_processed",
            subscriber=subscriber,
            plan_id=plan_id,
            amount=amount,
            success=entry.success,
            error_kind=entry.error_kind.value if entry.error_kind else None,
        )
        return entry

    async def process_batch_gasless_payments(
        self, payments: Sequence[Tuple[str, int]], token: str
    ) -> BatchSettlementResult:
        """
        Settle many charges in one relayer batch.

        Args:
            payments: (subscriber, amount) pairs, all in the same token
            token: Settlement token

        Returns:
            BatchSettlementResult: Per-entry outcomes
        """
        self._require_available()
        if not payments:
            raise ValidationError("Batch is empty")

        subscribers: List[str] = [subscriber for subscriber, _ in payments]
        amounts: List[int] = [amount for _, amount in payments]
        result = await self.ledger.process_batch_payments(
            self.relayer_address, subscribers, token, amounts
        )

        logger.info(
            "gasless_batch_processed",
            processed=len(result.entries),
            settled=result.settled,
            failed=result.failed,
        )
        return result

    async def check_allowance(self, subscriber: str, plan_id: str, token: str) -> AllowanceCheck:
        """Compare the subscriber's allowance and balance against the plan price."""
        plan = await self.ledger.get_plan(plan_id)
        allowance = await self.vault.allowance(token, subscriber, self.ledger.address)
        balance = await self.vault.balance_of(token, subscriber)
        required = plan.price_amount
        has_allowance = allowance >= required

        return AllowanceCheck(
            has_allowance=has_allowance,
            allowance=allowance,
            balance=balance,
            required=required,
            can_pay=has_allowance and balance >= required,
        )
