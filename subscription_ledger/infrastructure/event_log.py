"""
Event Log - Append-Only Record of Ledger Mutations

What it does:
1. Stores every ledger event (append-only, immutable)
2. Stamps each event with its sequence position and a transaction reference
3. Lets followers suspend until new entries arrive
4. Serves bounded windows for recent-event queries

The production log is external infrastructure with at-least-once delivery;
consumers must apply events idempotently by sequence.
"""

from __future__ import annotations

import asyncio
import hashlib
from typing import AsyncIterator, Protocol

import structlog

from subscription_ledger.domain.events import LedgerEvent

logger = structlog.get_logger(__name__)


class EventLog(Protocol):
    """Interface for the ledger's event log."""

    @property
    def head_sequence(self) -> int:
        """Sequence of the newest entry (0 when empty)."""
        ...

    async def append(self, event: LedgerEvent) -> LedgerEvent:
        """Append an event and return it stamped with sequence and tx_ref."""
        ...

    async def read(self, from_sequence: int = 1, limit: int | None = None) -> list[LedgerEvent]:
        """Read events starting at `from_sequence` (inclusive)."""
        ...

    async def tail(self, count: int) -> list[LedgerEvent]:
        """Read the newest `count` events, oldest first."""
        ...

    def follow(self, from_sequence: int = 1) -> AsyncIterator[LedgerEvent]:
        """Yield events from `from_sequence` on, waiting for new ones forever."""
        ...


def make_tx_ref(sequence: int, event: LedgerEvent) -> str:
    """
    Derive an opaque transaction reference for a log entry.

    Deterministic in the event content and position, so a redelivered entry
    carries the same reference.
    """
    body = event.model_dump_json(exclude={"sequence", "tx_ref"})
    digest = hashlib.sha256(f"{sequence}:{body}".encode()).hexdigest()
    return f"0x{digest}"


class InMemoryEventLog:
    """
    In-memory event log.

    Useful for:
    - Unit tests (fast, deterministic)
    - Local development (no infrastructure needed)
    """

    def __init__(self) -> None:
        self._events: list[LedgerEvent] = []
        self._condition = asyncio.Condition()

    @property
    def head_sequence(self) -> int:
        return len(self._events)

    async def append(self, event: LedgerEvent) -> LedgerEvent:
        async with self._condition:
            sequence = len(self._events) + 1
            stamped = event.sequenced(sequence, make_tx_ref(sequence, event))
            self._events.append(stamped)
            self._condition.notify_all()

        logger.debug(
            "event_log.append",
            sequence=sequence,
            event_type=stamped.event_type.value,
            tx_ref=stamped.tx_ref,
        )
        return stamped

    async def read(self, from_sequence: int = 1, limit: int | None = None) -> list[LedgerEvent]:
        start = max(from_sequence, 1) - 1
        end = None if limit is None else start + limit
        return list(self._events[start:end])

    async def tail(self, count: int) -> list[LedgerEvent]:
        if count <= 0:
            return []
        return list(self._events[-count:])

    async def follow(self, from_sequence: int = 1) -> AsyncIterator[LedgerEvent]:
        next_sequence = max(from_sequence, 1)
        while True:
            async with self._condition:
                await self._condition.wait_for(lambda: len(self._events) >= next_sequence)
                batch = self._events[next_sequence - 1:]
            for event in batch:
                yield event
                next_sequence = event.sequence + 1
