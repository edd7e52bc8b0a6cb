"""
Subscription Settlement Ledger

Recurring subscription billing on top of a serialized settlement ledger:
1. Plan registry, subscription ledger and accounting counters
2. Gasless batch settlement through a designated relayer
3. Event-driven reconciler maintaining an off-chain projection
4. Periodic payment scheduler driving recurring charges
5. Client facade for external callers
"""

__version__ = "0.1.0"
