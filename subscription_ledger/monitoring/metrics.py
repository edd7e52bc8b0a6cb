"""
Prometheus metrics for subscription ledger monitoring.

Tracks:
- Ledger operations by outcome
- Charged amounts
- Relayer batch entries
- Scheduler sweeps and payment attempts
- Reconciler applied events, listener failures and channel drops
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Ledger metrics
ledger_operations_total = Counter(
    "ledger_operations_total",
    "Total settlement ledger operations",
    ["operation", "outcome"],  # outcome: success or error kind
)

ledger_charge_amount = Histogram(
    "ledger_charge_amount",
    "Charged amounts in token base units",
    buckets=(1, 10, 100, 1000, 10000, 100000, 1000000, 10**9, 10**18, 10**21),
)

ledger_operation_duration_seconds = Histogram(
    "ledger_operation_duration_seconds",
    "Ledger operation duration in seconds",
    ["operation"],
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Relayer metrics
relayer_batch_entries_total = Counter(
    "relayer_batch_entries_total",
    "Batch settlement entries processed",
    ["status"],  # settled, failed
)

# Scheduler metrics
scheduler_sweeps_total = Counter(
    "scheduler_sweeps_total",
    "Completed scheduler sweep cycles",
)

scheduler_sweeps_skipped_total = Counter(
    "scheduler_sweeps_skipped_total",
    "Sweeps skipped because another sweep was in flight",
)

scheduler_payment_attempts_total = Counter(
    "scheduler_payment_attempts_total",
    "Scheduler payment attempts",
    ["status"],  # success, failed, transient
)

scheduler_tracked_subscriptions = Gauge(
    "scheduler_tracked_subscriptions",
    "Subscriptions tracked by the scheduler registry",
)

scheduler_sweep_duration_seconds = Histogram(
    "scheduler_sweep_duration_seconds",
    "Sweep duration in seconds",
    buckets=(0.01, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

scheduler_last_sweep_timestamp = Gauge(
    "scheduler_last_sweep_timestamp",
    "Timestamp of the last completed sweep",
)

# Reconciler metrics
reconciler_events_applied_total = Counter(
    "reconciler_events_applied_total",
    "Events applied to the projection",
    ["event_type"],
)

reconciler_duplicate_events_total = Counter(
    "reconciler_duplicate_events_total",
    "Redelivered events ignored by the projection",
)

reconciler_listener_failures_total = Counter(
    "reconciler_listener_failures_total",
    "Listener callbacks that raised",
    ["event_type"],
)

reconciler_listener_drops_total = Counter(
    "reconciler_listener_drops_total",
    "Events dropped by full listener channels",
    ["policy"],
)

reconciler_projection_sequence = Gauge(
    "reconciler_projection_sequence",
    "Last event sequence applied to the projection",
)

reconciler_projection_lag = Gauge(
    "reconciler_projection_lag",
    "Ledger sequence minus projection sequence at the last health check",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_ledger_operation(
        operation: str, outcome: str, duration_seconds: float = 0
    ) -> None:
        """Record a ledger operation."""
        ledger_operations_total.labels(operation=operation, outcome=outcome).inc()
        if duration_seconds > 0:
            ledger_operation_duration_seconds.labels(operation=operation).observe(
                duration_seconds
            )

    @staticmethod
    def record_charge(amount: int) -> None:
        """Record a settled charge amount."""
        ledger_charge_amount.observe(amount)

    @staticmethod
    def record_batch_entry(status: str) -> None:
        """Record a relayer batch entry outcome."""
        relayer_batch_entries_total.labels(status=status).inc()

    @staticmethod
    def record_sweep(duration_seconds: float) -> None:
        """Record a completed sweep."""
        scheduler_sweeps_total.inc()
        scheduler_sweep_duration_seconds.observe(duration_seconds)
        scheduler_last_sweep_timestamp.set(time.time())

    @staticmethod
    def record_sweep_skipped() -> None:
        """Record a sweep skipped by the reentrancy guard."""
        scheduler_sweeps_skipped_total.inc()

    @staticmethod
    def record_payment_attempt(status: str) -> None:
        """Record a scheduler payment attempt."""
        scheduler_payment_attempts_total.labels(status=status).inc()

    @staticmethod
    def set_tracked_subscriptions(count: int) -> None:
        """Set scheduler registry size."""
        scheduler_tracked_subscriptions.set(count)

    @staticmethod
    def record_event_applied(event_type: str, sequence: int) -> None:
        """Record an event applied by the reconciler."""
        reconciler_events_applied_total.labels(event_type=event_type).inc()
        reconciler_projection_sequence.set(sequence)

    @staticmethod
    def record_duplicate_event() -> None:
        """Record a redelivered event."""
        reconciler_duplicate_events_total.inc()

    @staticmethod
    def record_listener_failure(event_type: str) -> None:
        """Record a failing listener callback."""
        reconciler_listener_failures_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_listener_drop(policy: str) -> None:
        """Record an event dropped by a full listener channel."""
        reconciler_listener_drops_total.labels(policy=policy).inc()

    @staticmethod
    def set_projection_lag(lag: int) -> None:
        """Set observed reconciler lag."""
        reconciler_projection_lag.set(lag)


# Export singleton instance
metrics = MetricsCollector()
