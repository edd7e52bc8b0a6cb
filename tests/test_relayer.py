"""
Unit tests for relayer batch settlement and the relayer service.
"""
from typing import Any

import pytest

from conftest import MERCHANT, RELAYER, TOKEN
from subscription_ledger.config import ZERO_ADDRESS
from subscription_ledger.core.ledger import SettlementLedger
from subscription_ledger.core.relayer import RelayerService
from subscription_ledger.domain.errors import ErrorKind, Unauthorized, ValidationError


class TestBatchSettlement:
    """Test suite for SettlementLedger.process_batch_payments."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_relayer_rejected(self, ledger: SettlementLedger) -> None:
        """Test only the configured relayer may settle batches."""
        with pytest.raises(Unauthorized):
            await ledger.process_batch_payments(MERCHANT, ["0xa"], TOKEN, [10])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disabled_path_rejected(
        self, vault: Any, event_log: Any, clock: Any
    ) -> None:
        """Test the relayer itself is rejected while fee abstraction is off."""
        ledger = SettlementLedger(
            vault,
            event_log,
            owner="0xowner",
            supported_tokens=[TOKEN],
            relayer_address=RELAYER,
            fee_m_enabled=False,
            clock=clock,
        )
        with pytest.raises(Unauthorized):
            await ledger.process_batch_payments(RELAYER, ["0xa"], TOKEN, [10])

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "subscribers,amounts",
        [(["0xa", "0xb"], [10]), ([], [])],
    )
    async def test_malformed_batch_rejected(
        self, ledger: SettlementLedger, subscribers: list, amounts: list
    ) -> None:
        """Test unequal or empty arrays are rejected before any entry runs."""
        with pytest.raises(ValidationError):
            await ledger.process_batch_payments(RELAYER, subscribers, TOKEN, amounts)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plan_ids_length_must_match(self, ledger: SettlementLedger) -> None:
        """Test per-entry plan ids must line up with the subscribers."""
        with pytest.raises(ValidationError):
            await ledger.process_batch_payments(
                RELAYER, ["0xa", "0xb"], TOKEN, [10, 10], plan_ids=["0xplan"]
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_failure_settles_the_rest(
        self,
        ledger: SettlementLedger,
        make_plan: Any,
        fund: Any,
        clock: Any,
        vault: Any,
    ) -> None:
        """Test a batch of 5 with 3 failing entries settles the other 2."""
        plan_id = await make_plan(price_amount=10, interval=60)
        due = ["0xdue1", "0xdue2"]
        for subscriber in due + ["0xbroke", "0xlate"]:
            fund(subscriber, 100)
            await ledger.subscribe(subscriber, plan_id, TOKEN)
        clock.advance(60)

        # not due: subscribes after the clock moved
        fund("0xfresh", 100)
        await ledger.subscribe("0xfresh", plan_id, TOKEN)
        # uncovered: allowance revoked
        vault.approve(TOKEN, "0xbroke", ledger.address, 0)

        before = {s.key: s for s in (await ledger.snapshot()).subscriptions.values()}

        result = await ledger.process_batch_payments(
            RELAYER,
            ["0xdue1", "0xbroke", "0xfresh", "0xdue2", "0xlate"],
            TOKEN,
            [10, 10, 10, 10, 99],
        )

        assert result.settled == 2
        assert result.failed == 3
        by_subscriber = {entry.subscriber: entry for entry in result.entries}
        assert by_subscriber["0xbroke"].error_kind is ErrorKind.INSUFFICIENT_ALLOWANCE
        assert by_subscriber["0xfresh"].error_kind is ErrorKind.NOT_DUE
        assert by_subscriber["0xlate"].error_kind is ErrorKind.VALIDATION
        assert [entry.index for entry in result.entries] == [0, 1, 2, 3, 4]

        after = {s.key: s for s in (await ledger.snapshot()).subscriptions.values()}
        for subscriber in ("0xbroke", "0xfresh", "0xlate"):
            key = f"{subscriber}:{plan_id}"
            assert after[key] == before[key]
        for subscriber in due:
            assert after[f"{subscriber}:{plan_id}"].total_paid == 20

        assert (await ledger.get_merchant_stats(MERCHANT)).revenue == 20

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_subscriber_reported_not_raised(
        self, ledger: SettlementLedger
    ) -> None:
        """Test an entry without a subscription is reported as a failed entry."""
        result = await ledger.process_batch_payments(RELAYER, ["0xghost"], TOKEN, [10])

        assert result.settled == 0
        assert result.entries[0].error_kind is ErrorKind.NO_ACTIVE_SUBSCRIPTION
        assert result.entries[0].error_message


class TestRelayerService:
    """Test suite for RelayerService."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "address,enabled,expected",
        [
            (RELAYER, True, True),
            (RELAYER, False, False),
            (ZERO_ADDRESS, True, False),
            ("", True, False),
        ],
    )
    def test_is_available(
        self, ledger: SettlementLedger, vault: Any, address: str, enabled: bool, expected: bool
    ) -> None:
        """Test availability needs the flag and a real relayer address."""
        service = RelayerService(ledger, vault, relayer_address=address, enabled=enabled)
        assert service.is_available() is expected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_status(self, relayer: RelayerService) -> None:
        """Test status reports the ledger flag and relayer address."""
        status = await relayer.get_status()

        assert status.enabled is True
        assert status.relayer == RELAYER
        assert status.available is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gasless_payment_defaults_to_plan_price(
        self, relayer: RelayerService, ledger: SettlementLedger, make_plan: Any, fund: Any, clock: Any
    ) -> None:
        """Test a single gasless payment charges the subscribed plan's price."""
        plan_id = await make_plan(price_amount=25)
        fund("0xalice", 100)
        await ledger.subscribe("0xalice", plan_id, TOKEN)
        clock.advance(60)

        entry = await relayer.process_gasless_payment("0xalice", TOKEN)

        assert entry.success is True
        assert entry.amount == 25
        assert entry.charge.total_paid == 50

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gasless_payment_unavailable(
        self, ledger: SettlementLedger, vault: Any
    ) -> None:
        """Test gasless calls fail fast when the relayer is not configured."""
        service = RelayerService(ledger, vault)

        with pytest.raises(Unauthorized):
            await service.process_gasless_payment("0xalice", TOKEN, 10)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_gasless_payments(
        self, relayer: RelayerService, ledger: SettlementLedger, make_plan: Any, fund: Any, clock: Any
    ) -> None:
        """Test batched gasless payments report per-entry outcomes."""
        plan_id = await make_plan(price_amount=10)
        for subscriber in ("0xa", "0xb"):
            fund(subscriber, 100)
            await ledger.subscribe(subscriber, plan_id, TOKEN)
        clock.advance(60)

        result = await relayer.process_batch_gasless_payments(
            [("0xa", 10), ("0xb", 10), ("0xc", 10)], TOKEN
        )

        assert result.settled == 2
        assert result.failed == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "balance,allowance,has_allowance,can_pay",
        [(100, 100, True, True), (100, 5, False, False), (5, 100, True, False)],
    )
    async def test_check_allowance(
        self,
        relayer: RelayerService,
        make_plan: Any,
        fund: Any,
        balance: int,
        allowance: int,
        has_allowance: bool,
        can_pay: bool,
    ) -> None:
        """Test allowance and balance are compared against the plan price."""
        plan_id = await make_plan(price_amount=10)
        fund("0xalice", balance, allowance)

        check = await relayer.check_allowance("0xalice", plan_id, TOKEN)

        assert check.required == 10
        assert check.allowance == allowance
        assert check.balance == balance
        assert check.has_allowance is has_allowance
        assert check.can_pay is can_pay
