"""
Tests for the subscription client facade.
"""
from typing import Any

import pytest

from conftest import MERCHANT, OWNER, RELAYER, T0, TOKEN
from subscription_ledger.config import Settings
from subscription_ledger.core.ledger import SettlementLedger
from subscription_ledger.core.policies import SubscriptionPolicy
from subscription_ledger.core.relayer import RelayerService
from subscription_ledger.domain.errors import ErrorKind
from subscription_ledger.domain.models import Plan, Subscription
from subscription_ledger.sdk.client import SubscriptionClient
from subscription_ledger.sdk.results import LookupMiss, LookupResult

ALICE = "0xalice"


class TestMutations:
    """Test suite for client mutations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_plan_and_subscribe(
        self, client: SubscriptionClient, fund: Any
    ) -> None:
        """Test successful calls return reference ids and data."""
        created = await client.create_plan("basic", 10, 60, max_subscribers=5)

        assert created.success is True
        plan_id = created.reference_id
        assert created.data["plan_id"] == plan_id

        fund(ALICE)
        subscribed = await client.subscribe(plan_id, subscriber=ALICE)

        assert subscribed.success is True
        assert subscribed.reference_id == f"{ALICE}:{plan_id}"
        assert subscribed.data["next_charge_time"] == T0 + 60

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failures_are_classified_not_raised(
        self, client: SubscriptionClient, fund: Any
    ) -> None:
        """Test ledger errors come back as kinds on the result."""
        invalid = await client.create_plan("bad", 0, 60)
        missing = await client.subscribe("0xmissing", subscriber=ALICE)

        plan_id = (await client.create_plan("basic", 10, 60)).reference_id
        fund(ALICE)
        await client.subscribe(plan_id, subscriber=ALICE)
        duplicate = await client.subscribe(plan_id, subscriber=ALICE)
        not_due = await client.process_payment(subscriber=ALICE)

        assert invalid.error_kind is ErrorKind.VALIDATION
        assert missing.error_kind is ErrorKind.NOT_FOUND
        assert duplicate.error_kind is ErrorKind.DUPLICATE_SUBSCRIPTION
        assert not_due.error_kind is ErrorKind.NOT_DUE
        for result in (invalid, missing, duplicate, not_due):
            assert result.success is False
            assert result.errors[0].message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_exception_maps_to_unknown(
        self, client: SubscriptionClient, ledger: SettlementLedger, mocker: Any
    ) -> None:
        """Test arbitrary exceptions are classified instead of escaping."""
        mocker.patch.object(ledger, "create_plan", side_effect=RuntimeError("boom"))

        result = await client.create_plan("basic", 10, 60)

        assert result.success is False
        assert result.error_kind is ErrorKind.UNKNOWN
        assert "boom" not in result.errors[0].message

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_timeout_maps_to_network_timeout(
        self, ledger: SettlementLedger, test_settings: Settings, make_plan: Any, fund: Any
    ) -> None:
        """Test a slow confirmation is reported as network_timeout after committing."""
        plan_id = await make_plan()
        fund(ALICE)
        ledger.confirmation_delay = 0.5
        settings = test_settings.model_copy(update={"ledger_call_timeout_seconds": 0.05})
        client = SubscriptionClient(ledger, caller=ALICE, settings=settings)

        result = await client.subscribe(plan_id)

        assert result.error_kind is ErrorKind.NETWORK_TIMEOUT
        ledger.confirmation_delay = 0
        assert (await client.get_user_subscription()).active is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_payment_direct(
        self, client: SubscriptionClient, fund: Any, clock: Any
    ) -> None:
        """Test without a relayer the payment goes straight to the ledger."""
        plan_id = (await client.create_plan("basic", 10, 60)).reference_id
        fund(ALICE)
        await client.subscribe(plan_id, subscriber=ALICE)
        clock.advance(60)

        result = await client.process_payment(subscriber=ALICE)

        assert result.success is True
        assert result.gasless is False
        assert result.data["total_paid"] == 20

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_payment_gasless(
        self,
        ledger: SettlementLedger,
        relayer: RelayerService,
        test_settings: Settings,
        make_plan: Any,
        fund: Any,
        clock: Any,
    ) -> None:
        """Test an available relayer settles the payment gaslessly."""
        client = SubscriptionClient(ledger, caller=ALICE, relayer=relayer, settings=test_settings)
        plan_id = await make_plan()
        fund(ALICE)
        await client.subscribe(plan_id)
        clock.advance(60)

        result = await client.process_payment()
        again = await client.process_payment()

        assert result.success is True
        assert result.gasless is True
        assert result.reference_id.startswith("0x")
        assert again.success is False
        assert again.gasless is True
        assert again.error_kind is ErrorKind.NOT_DUE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gasless_payment_targets_named_plan(
        self, vault: Any, event_log: Any, test_settings: Settings, clock: Any
    ) -> None:
        """Test gasless payment charges the named plan when several are active."""
        ledger = SettlementLedger(
            vault,
            event_log,
            owner=OWNER,
            supported_tokens=[TOKEN],
            relayer_address=RELAYER,
            fee_m_enabled=True,
            subscription_policy=SubscriptionPolicy.PER_PLAN,
            clock=clock,
        )
        relayer = RelayerService(ledger, vault, relayer_address=RELAYER, enabled=True)
        client = SubscriptionClient(ledger, caller=ALICE, relayer=relayer, settings=test_settings)
        basic = await ledger.create_plan(MERCHANT, "basic", 10, 60)
        pro = await ledger.create_plan(MERCHANT, "pro", 20, 60)
        vault.mint(TOKEN, ALICE, 1000)
        vault.approve(TOKEN, ALICE, ledger.address, 1000)
        await client.subscribe(basic)
        await client.subscribe(pro)
        clock.advance(60)

        unnamed = await client.process_payment()
        result = await client.process_payment(plan_id=basic)

        assert unnamed.error_kind is ErrorKind.VALIDATION
        assert result.success is True
        assert result.gasless is True
        assert result.data["plan_id"] == basic
        assert result.data["amount"] == 10
        assert (await ledger.get_user_subscription(ALICE, pro)).total_paid == 20
        assert (await ledger.get_user_subscription(ALICE, basic)).total_paid == 20

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deactivate_and_cancel(
        self, client: SubscriptionClient, fund: Any
    ) -> None:
        """Test merchant deactivation and subscriber cancellation."""
        plan_id = (await client.create_plan("basic", 10, 60)).reference_id
        fund(ALICE)
        await client.subscribe(plan_id, subscriber=ALICE)

        foreign = await client.deactivate_plan(plan_id, merchant=ALICE)
        deactivated = await client.deactivate_plan(plan_id)
        cancelled = await client.cancel_subscription(subscriber=ALICE)

        assert foreign.error_kind is ErrorKind.UNAUTHORIZED
        assert deactivated.success and deactivated.data["active"] is False
        assert cancelled.success and cancelled.data["total_paid"] == 10


class TestReads:
    """Test suite for client reads."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_plan_and_miss(self, client: SubscriptionClient) -> None:
        """Test reads return the model or a typed miss."""
        plan_id = (await client.create_plan("basic", 10, 60)).reference_id

        plan = await client.get_plan(plan_id)
        miss = await client.get_plan("0xmissing")

        assert isinstance(plan, Plan)
        assert isinstance(miss, LookupResult)
        assert miss.reason is LookupMiss.NOT_FOUND
        assert miss.found is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_all_plans_active_only(self, client: SubscriptionClient) -> None:
        """Test deactivated plans are not listed."""
        keep = (await client.create_plan("keep", 10, 60)).reference_id
        drop = (await client.create_plan("drop", 10, 60)).reference_id
        await client.deactivate_plan(drop)

        plans = await client.get_all_plans()

        assert [plan.plan_id for plan in plans] == [keep]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_user_subscription_states(
        self, client: SubscriptionClient, fund: Any
    ) -> None:
        """Test active, inactive and unknown subscribers."""
        plan_id = (await client.create_plan("basic", 10, 60)).reference_id
        fund(ALICE)

        unknown = await client.get_user_subscription(ALICE)
        await client.subscribe(plan_id, subscriber=ALICE)
        active = await client.get_user_subscription(ALICE)
        await client.cancel_subscription(subscriber=ALICE)
        inactive = await client.get_user_subscription(ALICE)

        assert unknown.reason is LookupMiss.NOT_FOUND
        assert isinstance(active, Subscription)
        assert inactive.reason is LookupMiss.INACTIVE
        assert inactive.record.plan_id == plan_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stats(self, client: SubscriptionClient, fund: Any, clock: Any) -> None:
        """Test merchant and global statistics."""
        plan_id = (await client.create_plan("basic", 10, 60)).reference_id
        fund(ALICE)
        await client.subscribe(plan_id, subscriber=ALICE)
        clock.advance(60)
        await client.process_payment(subscriber=ALICE)

        merchant = await client.get_merchant_stats()
        stats = await client.get_global_stats()

        assert merchant.merchant == MERCHANT
        assert merchant.revenue == 10
        assert merchant.active_plans == 1
        assert merchant.total_subscribers == 1
        assert (stats.total_revenue, stats.total_subscriptions, stats.total_plans) == (10, 1, 1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_read_failure_is_unavailable(
        self, client: SubscriptionClient, ledger: SettlementLedger, mocker: Any
    ) -> None:
        """Test a failing read returns a typed miss carrying the error kind."""
        mocker.patch.object(ledger, "get_global_stats", side_effect=ConnectionError("down"))

        result = await client.get_global_stats()

        assert result.reason is LookupMiss.UNAVAILABLE
        assert result.error.kind is ErrorKind.NETWORK_ERROR

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_history_newest_first(
        self, client: SubscriptionClient, fund: Any, clock: Any
    ) -> None:
        """Test history comes from the event log, newest first."""
        plan_id = (await client.create_plan("basic", 10, 60)).reference_id
        fund(ALICE)
        await client.subscribe(plan_id, subscriber=ALICE)
        clock.advance(60)
        await client.process_payment(subscriber=ALICE)

        history = await client.get_payment_history(ALICE)

        assert [entry.kind.value for entry in history] == ["renewal", "initial"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_history_without_reconciler(
        self, ledger: SettlementLedger, test_settings: Settings
    ) -> None:
        """Test history is unavailable without an event reconciler."""
        client = SubscriptionClient(ledger, caller=ALICE, settings=test_settings)

        result = await client.get_payment_history()

        assert result.reason is LookupMiss.UNAVAILABLE


class TestGaslessCapability:
    """Test suite for can_pay_gasless."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "enabled,balance,allowance,expected",
        [
            (True, 100, 100, True),
            (False, 100, 100, False),
            (True, 100, 5, False),
            (True, 5, 100, False),
        ],
    )
    async def test_capability_combinations(
        self,
        ledger: SettlementLedger,
        vault: Any,
        test_settings: Settings,
        make_plan: Any,
        fund: Any,
        enabled: bool,
        balance: int,
        allowance: int,
        expected: bool,
    ) -> None:
        """Test gasless needs the relayer plus allowance plus balance."""
        relayer = RelayerService(ledger, vault, relayer_address=RELAYER, enabled=enabled)
        client = SubscriptionClient(ledger, caller=ALICE, relayer=relayer, settings=test_settings)
        plan_id = await make_plan(price_amount=10)
        fund(ALICE, balance, allowance)

        capability = await client.can_pay_gasless(plan_id)

        assert capability.can_pay_gasless is expected
        assert capability.relayer_available is enabled
        assert capability.has_allowance is (allowance >= 10)
        assert capability.has_balance is (balance >= 10)
        assert capability.required == 10

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_plan(self, client: SubscriptionClient) -> None:
        """Test an unknown plan yields an all-false capability."""
        capability = await client.can_pay_gasless("0xmissing", subscriber=ALICE)

        assert capability.can_pay_gasless is False
        assert capability.required == 0
