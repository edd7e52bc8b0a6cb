"""Off-chain agents: event log reconciler and payment scheduler."""
from .payment_scheduler import PaymentScheduler, ScheduledCharge
from .reconciler import EventLogReconciler, ListenerHandle

__all__ = ["EventLogReconciler", "ListenerHandle", "PaymentScheduler", "ScheduledCharge"]
