"""Settlement ledger core: state machine, relayer path and projection."""
from .ledger import SettlementLedger
from .policies import ChannelOverflowPolicy, DelinquencyPolicy, SubscriptionPolicy
from .projection import SubscriptionProjection
from .relayer import AllowanceCheck, RelayerService, RelayerStatus

__all__ = [
    "AllowanceCheck",
    "ChannelOverflowPolicy",
    "DelinquencyPolicy",
    "RelayerService",
    "RelayerStatus",
    "SettlementLedger",
    "SubscriptionPolicy",
    "SubscriptionProjection",
]
