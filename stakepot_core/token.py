"""
Value-transfer collaborator for the StakePot ledger.

The ledger never moves funds itself.  It talks to a ``TransferService``:

    transfer_in(source, amount)       pull funds into the ledger's custody
    transfer_out(destination, amount) pay funds out of the ledger's custody
    balance_of(account)               balance held by any account

``TokenBank`` is an in-memory ERC-20 style token (balances + allowances)
used by the test-suite and the development node.  ``BankTransferService``
binds a bank to the ledger's custody address: pulls go through
``transfer_from`` so the source must have approved the ledger first.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Protocol, runtime_checkable

from stakepot_core.errors import InsufficientFunds, TransferFault

logger = logging.getLogger("stakepot_token")


@runtime_checkable
class TransferService(Protocol):
    def transfer_in(self, source: str, amount: int) -> None: ...

    def transfer_out(self, destination: str, amount: int) -> None: ...

    def balance_of(self, account: str) -> int: ...


class TokenBank:
    """Balances and allowances for a single fungible token."""

    def __init__(self, symbol: str = "STK", decimals: int = 18):
        self.symbol = symbol
        self.decimals = decimals
        self.balances: dict[str, int] = defaultdict(int)
        self.allowances: dict[tuple[str, str], int] = defaultdict(int)
        self.total_supply: int = 0

    def mint(self, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Cannot mint a negative amount")
        self.balances[account] += amount
        self.total_supply += amount

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((owner, spender), 0)

    def approve(self, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Allowance cannot be negative")
        self.allowances[(owner, spender)] = amount

    def transfer(self, source: str, destination: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Transfer amount cannot be negative")
        have = self.balance_of(source)
        if have < amount:
            raise InsufficientFunds(
                f"{source} holds {have}, needs {amount}"
            )
        self.balances[source] = have - amount
        self.balances[destination] += amount

    def transfer_from(
        self, spender: str, source: str, destination: str, amount: int,
    ) -> None:
        allowed = self.allowance(source, spender)
        if allowed < amount:
            raise InsufficientFunds(
                f"{spender} may spend {allowed} of {source}, needs {amount}"
            )
        self.transfer(source, destination, amount)
        self.allowances[(source, spender)] = allowed - amount


class BankTransferService:
    """``TransferService`` backed by a ``TokenBank`` and a custody address."""

    def __init__(self, bank: TokenBank, custody: str):
        self.bank = bank
        self.custody = custody

    def transfer_in(self, source: str, amount: int) -> None:
        self.bank.transfer_from(self.custody, source, self.custody, amount)

    def transfer_out(self, destination: str, amount: int) -> None:
        try:
            self.bank.transfer(self.custody, destination, amount)
        except InsufficientFunds as exc:
            logger.error(f"Custody account cannot cover payout: {exc}")
            raise TransferFault(str(exc)) from exc

    def balance_of(self, account: str) -> int:
        return self.bank.balance_of(account)
