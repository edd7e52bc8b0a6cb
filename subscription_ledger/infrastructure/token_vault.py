"""
Token Vault - Value Transfer With Pre-Authorized Allowance

The ledger never holds funds. It pulls each charge straight from the
subscriber to the merchant using an allowance the subscriber granted to the
ledger's spender address.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from subscription_ledger.domain.errors import InsufficientAllowance, InsufficientFunds, ValidationError

logger = structlog.get_logger(__name__)


class TokenVault(Protocol):
    """Interface for the external value-transfer primitive."""

    async def balance_of(self, token: str, owner: str) -> int:
        ...

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        ...

    async def transfer_from(
        self, token: str, owner: str, spender: str, recipient: str, amount: int
    ) -> None:
        """
        Move `amount` from owner to recipient on the spender's allowance.

        Raises InsufficientAllowance or InsufficientFunds without moving
        anything when the transfer is not covered.
        """
        ...


class InMemoryTokenVault:
    """In-memory balances and allowances for tests and local development."""

    def __init__(self) -> None:
        self._balances: dict[tuple[str, str], int] = {}
        self._allowances: dict[tuple[str, str, str], int] = {}

    def mint(self, token: str, owner: str, amount: int) -> None:
        if amount <= 0:
            raise ValidationError("Mint amount must be positive")
        key = (token, owner)
        self._balances[key] = self._balances.get(key, 0) + amount

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise ValidationError("Allowance cannot be negative")
        self._allowances[(token, owner, spender)] = amount

    async def balance_of(self, token: str, owner: str) -> int:
        return self._balances.get((token, owner), 0)

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return self._allowances.get((token, owner, spender), 0)

    async def transfer_from(
        self, token: str, owner: str, spender: str, recipient: str, amount: int
    ) -> None:
        allowed = self._allowances.get((token, owner, spender), 0)
        if allowed < amount:
            raise InsufficientAllowance(
                f"Allowance {allowed} below required {amount}",
                owner=owner,
                token=token,
            )

        balance = self._balances.get((token, owner), 0)
        if balance < amount:
            raise InsufficientFunds(
                f"Balance {balance} below required {amount}",
                owner=owner,
                token=token,
            )

        self._allowances[(token, owner, spender)] = allowed - amount
        self._balances[(token, owner)] = balance - amount
        self._balances[(token, recipient)] = self._balances.get((token, recipient), 0) + amount

        logger.debug(
            "token_vault.transfer",
            token=token,
            owner=owner,
            recipient=recipient,
            amount=amount,
        )
