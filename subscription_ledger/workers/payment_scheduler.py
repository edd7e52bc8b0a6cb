"""
Automated payment scheduler.

Periodically charges due subscriptions through the permissionless
process_payment call.

Cache discipline:
- The registry is a cache; the ledger is authoritative
- A charge that timed out may still have committed, so the cached due time is
  never advanced on a timeout; the entry is re-read from the ledger first
- Permanent failures are recorded and left alone until resumed
"""
import asyncio
import time
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from subscription_ledger.config import Settings
from subscription_ledger.core.ledger import SettlementLedger
from subscription_ledger.domain.errors import (
    ErrorKind,
    NetworkError,
    NetworkTimeout,
    NoActiveSubscription,
    classify_error,
    error_message,
)
from subscription_ledger.domain.events import Cancelled, Charged, EventType, Subscribed
from subscription_ledger.domain.models import Subscription, subscription_key
from subscription_ledger.monitoring.metrics import metrics
from subscription_ledger.workers.reconciler import EventLogReconciler, ListenerHandle

logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 86400
DEFAULT_INTERVAL_DAYS = 30

DEACTIVATING_ERRORS = (ErrorKind.NO_ACTIVE_SUBSCRIPTION, ErrorKind.PLAN_INACTIVE)


class ChargeStatus(str, Enum):
    SCHEDULED = "scheduled"
    FAILED = "failed"  # permanent failure, waits for resume()


class ScheduledCharge(BaseModel):
    """Scheduler's cached view of one subscriber's next charge."""

    subscriber: str
    plan_id: str
    amount: int
    token: str
    next_charge_time: int
    interval_seconds: int
    active: bool = True
    status: ChargeStatus = ChargeStatus.SCHEDULED
    last_error: Optional[str] = None
    needs_resync: bool = False

    @property
    def key(self) -> str:
        return subscription_key(self.subscriber, self.plan_id)

    @property
    def interval_days(self) -> float:
        return self.interval_seconds / SECONDS_PER_DAY

    def is_due(self, now: int) -> bool:
        return (
            self.active
            and self.status is ChargeStatus.SCHEDULED
            and not self.needs_resync
            and self.next_charge_time <= now
        )


class PaymentRecord(BaseModel):
    """One scheduler charge attempt."""

    model_config = ConfigDict(frozen=True)

    subscriber: str
    plan_id: str
    amount: int
    timestamp: int
    success: bool
    manual: bool = False
    tx_ref: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None


class SchedulerStats(BaseModel):
    total_subscriptions: int
    total_payments: int
    successful_payments: int
    failed_payments: int
    transient_failures: int
    success_rate: float
    is_processing: bool
    is_running: bool
    sweeps_completed: int


class SweepReport(BaseModel):
    """Summary of one sweep cycle."""

    sweep: int
    resynced: int = 0
    due: int = 0
    succeeded: int = 0
    failed: int = 0
    transient: int = 0
    deactivated: int = 0
    duration_seconds: float = 0.0


class PaymentScheduler:
    """
    Sweeps the registry on a timer and charges what is due.

    Usage:
        scheduler = PaymentScheduler(ledger, interval_minutes=5)
        scheduler.attach(reconciler)
        await scheduler.start()
    """

    def __init__(
        self,
        ledger: SettlementLedger,
        interval_minutes: float = 5.0,
        call_timeout: float = 30.0,
        resync_every_sweeps: int = 12,
    ):
        self.ledger = ledger
        self.interval_minutes = interval_minutes
        self.call_timeout = call_timeout
        self.resync_every_sweeps = resync_every_sweeps

        self._registry: Dict[str, ScheduledCharge] = {}  # keyed by subscriber:plan_id
        self._history: List[PaymentRecord] = []
        self._handles: List[ListenerHandle] = []
        self._task: Optional["asyncio.Task[None]"] = None
        self._processing = False
        self._sweeps = 0

        self._total_payments = 0
        self._successful_payments = 0
        self._failed_payments = 0
        self._transient_failures = 0

    @classmethod
    def from_settings(cls, settings: Settings, ledger: SettlementLedger) -> "PaymentScheduler":
        return cls(
            ledger,
            interval_minutes=settings.scheduler_interval_minutes,
            call_timeout=settings.ledger_call_timeout_seconds,
            resync_every_sweeps=settings.resync_every_sweeps,
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_processing(self) -> bool:
        return self._processing

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def attach(self, reconciler: EventLogReconciler) -> List[ListenerHandle]:
        """Keep the registry in step with Subscribed, Charged and Cancelled events."""
        self._handles = [
            reconciler.add_listener(EventType.SUBSCRIBED, self._on_subscribed),
            reconciler.add_listener(EventType.CHARGED, self._on_charged),
            reconciler.add_listener(EventType.CANCELLED, self._on_cancelled),
        ]
        return self._handles

    def _on_subscribed(self, event: Subscribed) -> None:
        entry = ScheduledCharge(
            subscriber=event.subscriber,
            plan_id=event.plan_id,
            amount=event.amount,
            token=event.token,
            next_charge_time=event.next_charge_time,
            interval_seconds=event.next_charge_time - event.occurred_at,
        )
        self._registry[entry.key] = entry
        metrics.set_tracked_subscriptions(len(self._registry))
        logger.info(
            "scheduler_subscription_tracked",
            subscriber=event.subscriber,
            plan_id=event.plan_id,
            next_charge_time=event.next_charge_time,
        )

    def _on_charged(self, event: Charged) -> None:
        entry = self._registry.get(subscription_key(event.subscriber, event.plan_id))
        if entry is None:
            return
        if event.next_charge_time > entry.next_charge_time:
            entry.next_charge_time = event.next_charge_time

    def _on_cancelled(self, event: Cancelled) -> None:
        entry = self._registry.get(subscription_key(event.subscriber, event.plan_id))
        if entry is None:
            return
        entry.active = False
        logger.info(
            "scheduler_subscription_inactive",
            subscriber=event.subscriber,
            plan_id=event.plan_id,
            reason=event.reason.value,
        )

    def register(
        self,
        subscriber: str,
        plan_id: str,
        amount: int,
        token: str,
        interval_days: float = DEFAULT_INTERVAL_DAYS,
        next_charge_time: Optional[int] = None,
    ) -> ScheduledCharge:
        """Track a subscription explicitly."""
        interval_seconds = int(interval_days * SECONDS_PER_DAY)
        if next_charge_time is None:
            next_charge_time = self.ledger.now() + interval_seconds

        entry = ScheduledCharge(
            subscriber=subscriber,
            plan_id=plan_id,
            amount=amount,
            token=token,
            next_charge_time=next_charge_time,
            interval_seconds=interval_seconds,
        )
        self._registry[entry.key] = entry
        metrics.set_tracked_subscriptions(len(self._registry))

        logger.info(
            "scheduler_subscription_registered",
            subscriber=subscriber,
            plan_id=plan_id,
            next_charge_time=next_charge_time,
        )
        return entry.model_copy()

    def _entries(self, subscriber: str, plan_id: Optional[str] = None) -> List[ScheduledCharge]:
        if plan_id is not None:
            entry = self._registry.get(subscription_key(subscriber, plan_id))
            return [entry] if entry else []
        return [entry for entry in self._registry.values() if entry.subscriber == subscriber]

    def _find(self, subscriber: str, plan_id: Optional[str] = None) -> Optional[ScheduledCharge]:
        """The named entry, else the subscriber's latest active one, else their latest."""
        entries = self._entries(subscriber, plan_id)
        if not entries:
            return None
        active = [entry for entry in entries if entry.active]
        return (active or entries)[-1]

    def unregister(self, subscriber: str, plan_id: Optional[str] = None) -> bool:
        """Stop tracking one subscription, or all of a subscriber's when no plan is named."""
        entries = self._entries(subscriber, plan_id)
        for entry in entries:
            del self._registry[entry.key]
        if entries:
            metrics.set_tracked_subscriptions(len(self._registry))
            logger.info(
                "scheduler_subscription_unregistered", subscriber=subscriber, plan_id=plan_id
            )
        return bool(entries)

    def resume(self, subscriber: str, plan_id: Optional[str] = None) -> bool:
        """Re-enable entries parked after a permanent failure."""
        entries = self._entries(subscriber, plan_id)
        for entry in entries:
            entry.status = ChargeStatus.SCHEDULED
            entry.last_error = None
            entry.needs_resync = True
        if entries:
            logger.info("scheduler_subscription_resumed", subscriber=subscriber, plan_id=plan_id)
        return bool(entries)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the sweep loop; the first sweep runs immediately."""
        if self.is_running:
            logger.info("payment_scheduler_already_running")
            return

        self._task = asyncio.create_task(self._run())
        logger.info("payment_scheduler_started", interval_minutes=self.interval_minutes)

    async def stop(self) -> None:
        """Stop the loop. Registry and history are kept."""
        if self._task is None:
            logger.info("payment_scheduler_not_running")
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("payment_scheduler_stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("payment_scheduler_sweep_error", error=str(e))
            await asyncio.sleep(self.interval_minutes * 60)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> Optional[SweepReport]:
        """
        Run one sweep cycle.

        Returns:
            SweepReport, or None when another sweep is still in flight
        """
        if self._processing:
            metrics.record_sweep_skipped()
            logger.info("payment_sweep_skipped_in_progress")
            return None

        self._processing = True
        started = time.perf_counter()
        try:
            self._sweeps += 1
            report = SweepReport(sweep=self._sweeps)

            full_resync = (
                self.resync_every_sweeps > 0 and self._sweeps % self.resync_every_sweeps == 0
            )
            for entry in list(self._registry.values()):
                if not entry.active:
                    continue
                if full_resync or entry.needs_resync:
                    if await self._resync_entry(entry.subscriber, entry):
                        report.resynced += 1

            now = self.ledger.now()
            due = [entry for entry in self._registry.values() if entry.is_due(now)]
            report.due = len(due)

            outcomes = await asyncio.gather(
                *(self._charge_entry(entry.subscriber, entry) for entry in due)
            )
            for outcome in outcomes:
                if outcome == "success":
                    report.succeeded += 1
                elif outcome == "transient":
                    report.transient += 1
                elif outcome == "deactivated":
                    report.deactivated += 1
                elif outcome == "failed":
                    report.failed += 1

            report.duration_seconds = time.perf_counter() - started
            metrics.record_sweep(report.duration_seconds)
            logger.info("payment_sweep_completed", **report.model_dump())
            return report
        finally:
            self._processing = False

    async def _charge_entry(self, subscriber: str, entry: ScheduledCharge) -> str:
        try:
            result = await asyncio.wait_for(
                self.ledger.process_payment(subscriber, entry.token, entry.plan_id),
                timeout=self.call_timeout,
            )
        except Exception as e:
            return await self._handle_failure(subscriber, entry, e)

        entry.next_charge_time = result.next_charge_time
        entry.last_error = None
        self._total_payments += 1
        self._successful_payments += 1
        metrics.record_payment_attempt("success")
        self._history.append(
            PaymentRecord(
                subscriber=subscriber,
                plan_id=entry.plan_id,
                amount=result.amount,
                timestamp=result.charged_at,
                success=True,
                tx_ref=result.tx_ref,
            )
        )

        logger.info(
            "scheduled_payment_succeeded",
            subscriber=subscriber,
            amount=result.amount,
            next_charge_time=result.next_charge_time,
            tx_ref=result.tx_ref,
        )
        return "success"

    async def _handle_failure(
        self, subscriber: str, entry: ScheduledCharge, error: Exception
    ) -> str:
        kind = classify_error(error)
        message = error_message(error, kind)
        entry.last_error = message

        if kind.transient:
            # outcome unknown; the ledger may have committed
            entry.needs_resync = True
            self._total_payments += 1
            self._transient_failures += 1
            metrics.record_payment_attempt("transient")
            logger.warning(
                "scheduled_payment_outcome_unknown",
                subscriber=subscriber,
                error_kind=kind.value,
            )
            return "transient"

        if kind is ErrorKind.NOT_DUE:
            logger.info("scheduled_payment_cache_stale", subscriber=subscriber)
            entry.last_error = None
            await self._resync_entry(subscriber, entry)
            return "stale"

        self._total_payments += 1
        self._failed_payments += 1
        metrics.record_payment_attempt("failed")
        self._record_failure(subscriber, entry, kind, message)

        if kind in DEACTIVATING_ERRORS:
            entry.active = False
            logger.info(
                "scheduled_subscription_deactivated",
                subscriber=subscriber,
                error_kind=kind.value,
            )
            return "deactivated"

        entry.status = ChargeStatus.FAILED
        logger.warning(
            "scheduled_payment_failed",
            subscriber=subscriber,
            error_kind=kind.value,
            error=message,
        )
        return "failed"

    def _record_failure(
        self,
        subscriber: str,
        entry: ScheduledCharge,
        kind: ErrorKind,
        message: str,
        manual: bool = False,
    ) -> None:
        self._history.append(
            PaymentRecord(
                subscriber=subscriber,
                plan_id=entry.plan_id,
                amount=entry.amount,
                timestamp=self.ledger.now(),
                success=False,
                manual=manual,
                error_kind=kind,
                error_message=message,
            )
        )

    # ------------------------------------------------------------------
    # Resync
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(NetworkError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )
    async def _read_subscription(self, subscriber: str, plan_id: str) -> Optional[Subscription]:
        try:
            return await asyncio.wait_for(
                self.ledger.get_user_subscription(subscriber, plan_id),
                timeout=self.call_timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkTimeout("Subscription read timed out", subscriber=subscriber) from e
        except (ConnectionError, OSError) as e:
            raise NetworkError("Ledger unreachable", subscriber=subscriber) from e

    async def _resync_entry(self, subscriber: str, entry: ScheduledCharge) -> bool:
        """Overwrite the cached entry from authoritative ledger state."""
        try:
            subscription = await self._read_subscription(subscriber, entry.plan_id)
        except NetworkError as e:
            entry.needs_resync = True
            logger.warning("scheduler_resync_failed", subscriber=subscriber, error=e.message)
            return False

        entry.needs_resync = False
        if subscription is None or not subscription.active:
            entry.active = False
            logger.info("scheduler_resync_inactive", subscriber=subscriber)
            return True

        if subscription.next_charge_time != entry.next_charge_time:
            logger.info(
                "scheduler_resync_corrected",
                subscriber=subscriber,
                cached=entry.next_charge_time,
                authoritative=subscription.next_charge_time,
            )
        entry.next_charge_time = subscription.next_charge_time
        return True

    # ------------------------------------------------------------------
    # Queries and manual charges
    # ------------------------------------------------------------------

    async def process_manual_payment(
        self, subscriber: str, plan_id: Optional[str] = None
    ) -> PaymentRecord:
        """
        Charge a registered subscription now, outside the sweep cycle.

        Raises:
            NoActiveSubscription: Subscriber is not registered
        """
        entry = self._find(subscriber, plan_id)
        if entry is None:
            raise NoActiveSubscription(
                f"Subscriber {subscriber} is not registered", subscriber=subscriber
            )

        try:
            result = await asyncio.wait_for(
                self.ledger.process_payment(subscriber, entry.token, entry.plan_id),
                timeout=self.call_timeout,
            )
        except Exception as e:
            kind = classify_error(e)
            message = error_message(e, kind)
            if kind.transient:
                entry.needs_resync = True
            self._record_failure(subscriber, entry, kind, message, manual=True)
            logger.warning("manual_payment_failed", subscriber=subscriber, error_kind=kind.value)
            return self._history[-1]

        entry.next_charge_time = result.next_charge_time
        record = PaymentRecord(
            subscriber=subscriber,
            plan_id=entry.plan_id,
            amount=result.amount,
            timestamp=result.charged_at,
            success=True,
            manual=True,
            tx_ref=result.tx_ref,
        )
        self._history.append(record)
        logger.info("manual_payment_succeeded", subscriber=subscriber, tx_ref=result.tx_ref)
        return record

    def get_payment_history(self, subscriber: Optional[str] = None) -> List[PaymentRecord]:
        if subscriber is None:
            return list(self._history)
        return [record for record in self._history if record.subscriber == subscriber]

    def get_subscription_status(
        self, subscriber: str, plan_id: Optional[str] = None
    ) -> Optional[ScheduledCharge]:
        entry = self._find(subscriber, plan_id)
        return entry.model_copy() if entry else None

    def get_stats(self) -> SchedulerStats:
        total = self._total_payments
        return SchedulerStats(
            total_subscriptions=len(self._registry),
            total_payments=total,
            successful_payments=self._successful_payments,
            failed_payments=self._failed_payments,
            transient_failures=self._transient_failures,
            success_rate=(self._successful_payments / total * 100) if total else 0.0,
            is_processing=self._processing,
            is_running=self.is_running,
            sweeps_completed=self._sweeps,
        )

    def get_status(self) -> Dict[str, Any]:
        return self.get_stats().model_dump()
