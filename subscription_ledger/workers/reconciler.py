"""
Event log reconciler.

Follows the ledger's event log, applies each event to the subscription
projection and fans it out to registered listeners.

Delivery model:
- Apply happens once per sequence; redelivered events are ignored
- Every listener owns a bounded channel drained by its own task
- A listener that raises is logged and skipped; nothing else is affected
"""
import asyncio
import inspect
import itertools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from subscription_ledger.config import Settings
from subscription_ledger.core.policies import ChannelOverflowPolicy
from subscription_ledger.core.projection import SubscriptionProjection
from subscription_ledger.domain.events import EventType, LedgerEvent
from subscription_ledger.domain.models import PaymentHistoryEntry
from subscription_ledger.infrastructure.event_log import EventLog
from subscription_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

WILDCARD = "*"

Listener = Callable[[LedgerEvent], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ListenerHandle:
    """Returned by add_listener; pass it to remove_listener."""

    listener_id: int
    channel: str


@dataclass
class _Registration:
    handle: ListenerHandle
    callback: Listener
    queue: "asyncio.Queue[LedgerEvent]"
    task: Optional["asyncio.Task[None]"] = None
    delivered: int = 0
    failures: int = 0
    dropped: int = 0


@dataclass
class _Counters:
    applied: int = 0
    duplicates: int = 0
    dropped: int = 0
    listener_failures: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)


def _channel_name(event_type: Union[EventType, str]) -> str:
    if isinstance(event_type, EventType):
        return event_type.value
    return event_type


class EventLogReconciler:
    """
    Materialized view of the ledger fed from its event log.

    Usage:
        reconciler = EventLogReconciler(event_log)
        handle = reconciler.add_listener(EventType.CHARGED, on_charged)
        await reconciler.start()
        ...
        await reconciler.stop()
    """

    def __init__(
        self,
        event_log: EventLog,
        queue_size: int = 1000,
        overflow_policy: ChannelOverflowPolicy = ChannelOverflowPolicy.DROP_OLDEST,
        block_timeout: float = 5.0,
        recent_events_window: int = 10000,
    ):
        self.event_log = event_log
        self.projection = SubscriptionProjection()
        self.queue_size = queue_size
        self.overflow_policy = overflow_policy
        self.block_timeout = block_timeout
        self.recent_events_window = recent_events_window

        self._listeners: Dict[str, Dict[int, _Registration]] = {}
        self._ids = itertools.count(1)
        self._counters = _Counters()
        self._follow_task: Optional["asyncio.Task[None]"] = None
        self._apply_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, event_log: EventLog) -> "EventLogReconciler":
        return cls(
            event_log,
            queue_size=settings.listener_queue_size,
            overflow_policy=ChannelOverflowPolicy(settings.listener_overflow_policy),
            block_timeout=settings.listener_block_timeout_seconds,
            recent_events_window=settings.recent_events_window,
        )

    @property
    def is_running(self) -> bool:
        return self._follow_task is not None and not self._follow_task.done()

    @property
    def last_sequence(self) -> int:
        return self.projection.last_sequence

    # ------------------------------------------------------------------
    # Listener registry
    # ------------------------------------------------------------------

    def add_listener(
        self, event_type: Union[EventType, str], callback: Listener
    ) -> ListenerHandle:
        """
        Register a callback for one event type, or "*" for every event.

        The callback may be a plain function or a coroutine function.
        """
        channel = _channel_name(event_type)
        if channel != WILDCARD and channel not in {t.value for t in EventType}:
            raise ValueError(f"Unknown event type: {event_type}")

        handle = ListenerHandle(listener_id=next(self._ids), channel=channel)
        registration = _Registration(
            handle=handle,
            callback=callback,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._listeners.setdefault(channel, {})[handle.listener_id] = registration

        logger.debug("listener_added", channel=channel, listener_id=handle.listener_id)
        return handle

    def remove_listener(self, handle: ListenerHandle) -> bool:
        """Unregister a listener. Queued but undelivered events are discarded."""
        registration = self._listeners.get(handle.channel, {}).pop(handle.listener_id, None)
        if registration is None:
            return False

        if registration.task is not None:
            registration.task.cancel()

        logger.debug(
            "listener_removed", channel=handle.channel, listener_id=handle.listener_id
        )
        return True

    def listener_count(self, event_type: Union[EventType, str, None] = None) -> int:
        if event_type is None:
            return sum(len(channel) for channel in self._listeners.values())
        return len(self._listeners.get(_channel_name(event_type), {}))

    def watch_subscriber(self, subscriber: str, callback: Listener) -> Callable[[], bool]:
        """
        Deliver every event concerning one subscriber.

        Returns:
            Callable that removes the watch
        """

        async def _filtered(event: LedgerEvent) -> None:
            if event.involves(subscriber=subscriber):
                await _invoke(callback, event)

        handle = self.add_listener(WILDCARD, _filtered)
        return lambda: self.remove_listener(handle)

    def watch_merchant(self, merchant: str, callback: Listener) -> Callable[[], bool]:
        """
        Deliver every event concerning one merchant.

        Returns:
            Callable that removes the watch
        """

        async def _filtered(event: LedgerEvent) -> None:
            if event.involves(merchant=merchant):
                await _invoke(callback, event)

        handle = self.add_listener(WILDCARD, _filtered)
        return lambda: self.remove_listener(handle)

    # ------------------------------------------------------------------
    # Apply and dispatch
    # ------------------------------------------------------------------

    async def handle_event(self, event: LedgerEvent) -> bool:
        """
        Apply one delivered event and fan it out.

        An event that arrives ahead of the projection first pulls the missing
        entries from the log, so every listener still sees sequence order.

        Returns:
            bool: False when the event was a redelivery or could not be applied yet
        """
        async with self._apply_lock:
            if event.sequence < self.projection.next_sequence:
                applied: List[LedgerEvent] = []
                duplicate = True
            else:
                duplicate = False
                applied = await self._fill_gap(event.sequence)
                if self.projection.apply(event):
                    applied.append(event)

        if duplicate:
            self._counters.duplicates += 1
            metrics.record_duplicate_event()
            logger.debug("duplicate_event_ignored", sequence=event.sequence)
            return False

        for applied_event in applied:
            event_type = applied_event.event_type.value
            self._counters.applied += 1
            self._counters.by_type[event_type] = self._counters.by_type.get(event_type, 0) + 1
            metrics.record_event_applied(event_type, applied_event.sequence)
            await self._dispatch(applied_event)

        if not applied or applied[-1].sequence != event.sequence:
            logger.warning(
                "event_deferred",
                sequence=event.sequence,
                last_sequence=self.projection.last_sequence,
            )
            return False
        return True

    async def _fill_gap(self, up_to: int) -> List[LedgerEvent]:
        """Apply log entries between the projection and `up_to` (exclusive)."""
        missing = up_to - self.projection.next_sequence
        if missing <= 0:
            return []

        logger.info(
            "reconciler_filling_gap",
            from_sequence=self.projection.next_sequence,
            to_sequence=up_to - 1,
        )
        filled: List[LedgerEvent] = []
        for event in await self.event_log.read(
            from_sequence=self.projection.next_sequence, limit=missing
        ):
            if not self.projection.apply(event):
                break
            filled.append(event)
        return filled

    async def _dispatch(self, event: LedgerEvent) -> None:
        targets = list(self._listeners.get(event.event_type.value, {}).values())
        targets.extend(self._listeners.get(WILDCARD, {}).values())

        for registration in targets:
            # an earlier blocking enqueue may have let this listener be removed
            if not self._is_registered(registration):
                continue
            self._ensure_consumer(registration)
            await self._enqueue(registration, event)

    def _is_registered(self, registration: _Registration) -> bool:
        handle = registration.handle
        return self._listeners.get(handle.channel, {}).get(handle.listener_id) is registration

    async def _enqueue(self, registration: _Registration, event: LedgerEvent) -> None:
        queue = registration.queue

        if self.overflow_policy is ChannelOverflowPolicy.DROP_OLDEST:
            if queue.full():
                queue.get_nowait()
                queue.task_done()
                self._record_drop(registration, event)
            queue.put_nowait(event)
            return

        try:
            await asyncio.wait_for(queue.put(event), timeout=self.block_timeout)
        except asyncio.TimeoutError:
            self._record_drop(registration, event)

    def _record_drop(self, registration: _Registration, event: LedgerEvent) -> None:
        registration.dropped += 1
        self._counters.dropped += 1
        metrics.record_listener_drop(self.overflow_policy.value)
        logger.warning(
            "listener_channel_overflow",
            channel=registration.handle.channel,
            listener_id=registration.handle.listener_id,
            policy=self.overflow_policy.value,
            sequence=event.sequence,
        )

    def _ensure_consumer(self, registration: _Registration) -> None:
        if registration.task is None or registration.task.done():
            registration.task = asyncio.create_task(self._consume(registration))

    async def _consume(self, registration: _Registration) -> None:
        while True:
            event = await registration.queue.get()
            try:
                await _invoke(registration.callback, event)
                registration.delivered += 1
            except Exception as e:
                registration.failures += 1
                self._counters.listener_failures += 1
                metrics.record_listener_failure(event.event_type.value)
                logger.error(
                    "listener_failed",
                    channel=registration.handle.channel,
                    listener_id=registration.handle.listener_id,
                    sequence=event.sequence,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                registration.queue.task_done()

    # ------------------------------------------------------------------
    # Follow loop
    # ------------------------------------------------------------------

    async def catch_up(self) -> int:
        """
        Apply every log entry past the projection's position.

        Returns:
            int: Number of events applied
        """
        events = await self.event_log.read(from_sequence=self.projection.last_sequence + 1)
        applied = 0
        for event in events:
            if await self.handle_event(event):
                applied += 1
        return applied

    async def drain(self) -> None:
        """Wait until every listener channel has been delivered."""
        for channel in list(self._listeners.values()):
            for registration in list(channel.values()):
                if registration.task is not None and not registration.task.done():
                    await registration.queue.join()

    async def start(self) -> None:
        """Start following the event log. No-op when already running."""
        if self.is_running:
            logger.info("reconciler_already_running")
            return

        self._follow_task = asyncio.create_task(self._follow())
        logger.info("reconciler_started", from_sequence=self.projection.last_sequence + 1)

    async def stop(self) -> None:
        """Stop following and stop every listener consumer."""
        consumers = [
            registration
            for channel in self._listeners.values()
            for registration in channel.values()
            if registration.task is not None
        ]
        if self._follow_task is None and not consumers:
            logger.info("reconciler_not_running")
            return

        if self._follow_task is not None:
            self._follow_task.cancel()
            try:
                await self._follow_task
            except asyncio.CancelledError:
                pass
            self._follow_task = None

        for registration in consumers:
            registration.task.cancel()
            try:
                await registration.task
            except asyncio.CancelledError:
                pass
            registration.task = None

        logger.info("reconciler_stopped", last_sequence=self.projection.last_sequence)

    async def _follow(self) -> None:
        try:
            async for event in self.event_log.follow(self.projection.last_sequence + 1):
                await self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("reconciler_follow_failed", error=str(e))
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_recent_events(
        self,
        subscriber: Optional[str] = None,
        merchant: Optional[str] = None,
        event_type: Union[EventType, str, None] = None,
        limit: int = 50,
    ) -> List[LedgerEvent]:
        """
        Query the recent window of the log, newest first.

        Only the last `recent_events_window` entries are scanned.
        """
        if limit <= 0:
            return []

        channel = _channel_name(event_type) if event_type is not None else None
        window = await self.event_log.tail(self.recent_events_window)

        matches: List[LedgerEvent] = []
        for event in reversed(window):
            if channel is not None and channel != WILDCARD and event.event_type.value != channel:
                continue
            if not event.involves(subscriber=subscriber, merchant=merchant):
                continue
            matches.append(event)
            if len(matches) >= limit:
                break
        return matches

    def get_payment_history(self, subscriber: Optional[str] = None) -> List[PaymentHistoryEntry]:
        return self.projection.get_payment_history(subscriber)

    def get_status(self) -> Dict[str, Any]:
        head = self.event_log.head_sequence
        return {
            "running": self.is_running,
            "last_sequence": self.projection.last_sequence,
            "head_sequence": head,
            "lag": max(head - self.projection.last_sequence, 0),
            "listeners": self.listener_count(),
            "events_applied": self._counters.applied,
            "duplicates_ignored": self._counters.duplicates,
            "events_dropped": self._counters.dropped,
            "listener_failures": self._counters.listener_failures,
            "applied_by_type": dict(self._counters.by_type),
        }


async def _invoke(callback: Listener, event: LedgerEvent) -> None:
    result = callback(event)
    if inspect.isawaitable(result):
        await result
