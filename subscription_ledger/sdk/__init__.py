"""Client facade for external callers."""
from .client import SubscriptionClient
from .results import GaslessCapability, LookupMiss, LookupResult, OperationError, OperationResult

__all__ = [
    "GaslessCapability",
    "LookupMiss",
    "LookupResult",
    "OperationError",
    "OperationResult",
    "SubscriptionClient",
]
