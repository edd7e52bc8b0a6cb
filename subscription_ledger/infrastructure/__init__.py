"""
Infrastructure Layer - External Collaborators

This layer contains:
- Event log (append-only, at-least-once delivery)
- Token vault (transfer with pre-authorized allowance)

Key principle: All infrastructure is REPLACEABLE behind a Protocol.
"""
from .event_log import EventLog, InMemoryEventLog
from .token_vault import InMemoryTokenVault, TokenVault

__all__ = ["EventLog", "InMemoryEventLog", "InMemoryTokenVault", "TokenVault"]
