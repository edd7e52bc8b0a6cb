"""
Unit tests for the in-memory event log and event decoding.
"""
import asyncio

import pytest

from subscription_ledger.domain.events import (
    CancelReason,
    Cancelled,
    EventType,
    PlanCreated,
    decode_event,
)
from subscription_ledger.infrastructure.event_log import InMemoryEventLog, make_tx_ref


def _plan_created(name: str = "basic") -> PlanCreated:
    return PlanCreated(
        occurred_at=100,
        plan_id=f"0x{name}",
        merchant="0xmerchant",
        name=name,
        price_amount=10,
        interval=60,
        supports_membership_token=False,
        max_subscribers=10,
    )


class TestInMemoryEventLog:
    """Test suite for InMemoryEventLog."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_append_stamps_sequence_and_reference(self) -> None:
        """Test append assigns consecutive sequences and deterministic references."""
        log = InMemoryEventLog()

        first = await log.append(_plan_created("a"))
        second = await log.append(_plan_created("b"))

        assert (first.sequence, second.sequence) == (1, 2)
        assert first.tx_ref == make_tx_ref(1, _plan_created("a"))
        assert first.tx_ref != second.tx_ref
        assert log.head_sequence == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_read_and_tail(self) -> None:
        """Test bounded reads from a position and from the end."""
        log = InMemoryEventLog()
        for name in "abcde":
            await log.append(_plan_created(name))

        assert [e.sequence for e in await log.read(from_sequence=3)] == [3, 4, 5]
        assert [e.sequence for e in await log.read(from_sequence=2, limit=2)] == [2, 3]
        assert [e.sequence for e in await log.tail(2)] == [4, 5]
        assert await log.tail(0) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_follow_waits_for_new_entries(self) -> None:
        """Test follow yields existing entries then suspends until appends."""
        log = InMemoryEventLog()
        await log.append(_plan_created("a"))
        received = []

        async def consume() -> None:
            async for event in log.follow(1):
                received.append(event.sequence)
                if len(received) == 3:
                    return

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await log.append(_plan_created("b"))
        await log.append(_plan_created("c"))
        await asyncio.wait_for(task, timeout=1.0)

        assert received == [1, 2, 3]


class TestEventDecoding:
    """Test suite for typed event decoding."""

    @pytest.mark.unit
    def test_decode_picks_event_class(self) -> None:
        """Test the event_type discriminator selects the concrete class."""
        event = Cancelled(
            occurred_at=5,
            subscriber="0xalice",
            plan_id="0xplan",
            merchant="0xmerchant",
            reason=CancelReason.DELINQUENT,
        )

        decoded = decode_event(event.model_dump(mode="json"))

        assert isinstance(decoded, Cancelled)
        assert decoded.event_type is EventType.CANCELLED
        assert decoded.reason is CancelReason.DELINQUENT

    @pytest.mark.unit
    def test_involves_is_case_insensitive(self) -> None:
        """Test party filtering ignores address case."""
        event = _plan_created()

        assert event.involves(merchant="0xMERCHANT")
        assert not event.involves(subscriber="0xalice")
        assert event.involves()
