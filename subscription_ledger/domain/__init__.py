"""
Domain Layer - Pure Business Types

This layer contains:
- Ledger events (immutable facts about mutations)
- Read models (plans, subscriptions, stats)
- Error taxonomy

Key principle: ZERO dependencies on infrastructure.
"""
