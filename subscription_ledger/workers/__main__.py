"""
Subscription ledger worker.

Runs the event log reconciler and the payment scheduler against a ledger
built from settings until SIGINT or SIGTERM.
"""
import argparse
import asyncio
import signal
from typing import Optional

import structlog

from subscription_ledger.config import get_settings
from subscription_ledger.core.ledger import SettlementLedger
from subscription_ledger.infrastructure import InMemoryEventLog, InMemoryTokenVault
from subscription_ledger.monitoring.logging import setup_logging
from subscription_ledger.workers.payment_scheduler import PaymentScheduler
from subscription_ledger.workers.reconciler import EventLogReconciler

logger = structlog.get_logger(__name__)


async def start_worker(interval_minutes: Optional[float] = None) -> None:
    """
    Start the reconciler and scheduler and run until a shutdown signal.

    Args:
        interval_minutes: Sweep period override (default: from settings)
    """
    settings = get_settings()
    setup_logging(settings)

    event_log = InMemoryEventLog()
    ledger = SettlementLedger.from_settings(settings, InMemoryTokenVault(), event_log)
    reconciler = EventLogReconciler.from_settings(settings, event_log)
    scheduler = PaymentScheduler.from_settings(settings, ledger)
    if interval_minutes is not None:
        scheduler.interval_minutes = interval_minutes
    scheduler.attach(reconciler)

    logger.info(
        "subscription_worker_starting",
        network_endpoint=settings.network_endpoint,
        interval_minutes=scheduler.interval_minutes,
    )

    shutdown = asyncio.Event()

    def signal_handler(sig: int) -> None:
        logger.info("subscription_worker_shutdown_signal_received", signal=sig)
        shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await reconciler.start()
        await scheduler.start()
        await shutdown.wait()
    except Exception as e:
        logger.error("subscription_worker_error", error=str(e))
        raise
    finally:
        await scheduler.stop()
        await reconciler.stop()
        logger.info("subscription_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Subscription ledger worker")
    parser.add_argument(
        "--interval-minutes",
        type=float,
        default=None,
        help="Minutes between scheduler sweeps (default: from settings)",
    )
    args = parser.parse_args()

    asyncio.run(start_worker(interval_minutes=args.interval_minutes))


if __name__ == "__main__":
    main()
