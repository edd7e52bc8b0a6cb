"""
Health checks for the ledger and its off-chain agents.

Checks:
- Ledger reachability
- Reconciler lag behind the ledger
- Scheduler loop state
"""
import asyncio
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from subscription_ledger.config import Settings, get_settings
from subscription_ledger.monitoring.metrics import metrics

if TYPE_CHECKING:
    from subscription_ledger.core.ledger import SettlementLedger
    from subscription_ledger.workers.payment_scheduler import PaymentScheduler
    from subscription_ledger.workers.reconciler import EventLogReconciler

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the ledger and its agents.

    Provides:
    - Ledger reachability check
    - Reconciler lag check
    - Scheduler state check
    - Overall system health status
    """

    def __init__(
        self,
        ledger: "SettlementLedger",
        reconciler: Optional["EventLogReconciler"] = None,
        scheduler: Optional["PaymentScheduler"] = None,
        settings: Optional[Settings] = None,
        max_lag: int = 100,
    ) -> None:
        self.ledger = ledger
        self.reconciler = reconciler
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.max_lag = max_lag

    async def check_ledger(self) -> Dict[str, Any]:
        """
        Check that the ledger answers a read within the call timeout.

        Raises:
            HealthCheckError: If the read fails or times out
        """
        try:
            stats = await asyncio.wait_for(
                self.ledger.get_global_stats(),
                timeout=self.settings.ledger_call_timeout_seconds,
            )
        except Exception as e:
            logger.error("ledger_health_check_failed", error=str(e))
            raise HealthCheckError(f"Ledger health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "ledger",
            "sequence": self.ledger.head_sequence,
            "total_plans": stats.total_plans,
        }

    async def check_reconciler(self) -> Dict[str, Any]:
        """
        Check reconciler lag against the ledger's sequence.

        Raises:
            HealthCheckError: If lag exceeds max_lag
        """
        if self.reconciler is None:
            return {"status": "skipped", "service": "reconciler"}

        lag = max(self.ledger.head_sequence - self.reconciler.last_sequence, 0)
        metrics.set_projection_lag(lag)
        if lag > self.max_lag:
            logger.warning("reconciler_lag_exceeded", lag=lag, max_lag=self.max_lag)
            raise HealthCheckError(f"Reconciler is {lag} events behind the ledger")

        return {
            "status": "healthy",
            "service": "reconciler",
            "running": self.reconciler.is_running,
            "lag": lag,
        }

    async def check_scheduler(self) -> Dict[str, Any]:
        """
        Check that the scheduler loop is running.

        Raises:
            HealthCheckError: If the scheduler is stopped
        """
        if self.scheduler is None:
            return {"status": "skipped", "service": "scheduler"}

        if not self.scheduler.is_running:
            raise HealthCheckError("Payment scheduler is not running")

        stats = self.scheduler.get_stats()
        return {
            "status": "healthy",
            "service": "scheduler",
            "sweeps_completed": stats.sweeps_completed,
            "tracked_subscriptions": stats.total_subscriptions,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("ledger", self.check_ledger),
            ("reconciler", self.check_reconciler),
            ("scheduler", self.check_scheduler),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Process is up; no dependency checks."""
        return {"status": "alive", "app_name": self.settings.app_name}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
