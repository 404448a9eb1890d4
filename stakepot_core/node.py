"""
A runnable StakePot ledger node.

Combines the staking pool, the development token bank, persistence and the
HTTP API.  Every mutation submitted through the node runs under one
``asyncio.Lock`` and is persisted before the lock is released, so the API
never interleaves two mutations and a restart resumes from the last
committed operation.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any, Callable, Optional

from stakepot_core.config import StakePotConfig
from stakepot_core.identity import NonceTracker
from stakepot_core.invariants import InvariantChecker
from stakepot_core.staking import BlockClock, StakingPool
from stakepot_core.storage import LedgerStore
from stakepot_core.token import BankTransferService, TokenBank

logger = logging.getLogger("stakepot_node")


class LedgerNode:
    """Single authoritative ledger instance plus its collaborators."""

    def __init__(self, config: Optional[StakePotConfig] = None):
        self.config = config or StakePotConfig()
        lc = self.config.ledger
        if not lc.admin:
            raise ValueError("ledger.admin must be configured")

        self.bank = TokenBank(lc.token_symbol, lc.decimals)
        self.transfers = BankTransferService(self.bank, lc.custody)
        self.pool = StakingPool(
            self.transfers,
            lc.to_params(),
            BlockClock(lc.start_block),
            auto_advance=lc.auto_advance,
            invariant_checker=InvariantChecker() if lc.check_invariants else None,
        )
        self.nonces = NonceTracker()
        self.store: LedgerStore | None = None
        self._api = None
        self._mutex = asyncio.Lock()

    # ---- state ----

    def open_storage(self) -> None:
        """Restore from the database, or apply genesis on first run."""
        if self.config.storage.enabled:
            self.store = LedgerStore(self.config.storage.path)
            if self.store.restore(self.pool, self.bank):
                self.nonces = NonceTracker(self.store.load_nonces())
                return
        self.apply_genesis()
        self.persist()

    def apply_genesis(self) -> None:
        unit = 10 ** self.config.ledger.decimals
        for address, whole in self.config.genesis.balances.items():
            self.bank.mint(address, int(whole) * unit)
            logger.info(f"Genesis: minted {whole} {self.bank.symbol} to {address}")

    def persist(self) -> None:
        if self.store is not None:
            self.store.snapshot(self.pool, self.bank, self.nonces.nonces)

    def checkpoint(self) -> bool:
        """
        Persist after a mutation.  A failed snapshot is logged and leaves the
        in-memory state authoritative; the next successful one catches up.
        """
        try:
            self.persist()
        except (sqlite3.Error, OverflowError, ValueError) as exc:
            logger.error(f"Snapshot failed, state held in memory only: {exc}")
            return False
        return True

    async def execute(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run one mutation exclusively and persist the outcome."""
        async with self._mutex:
            try:
                return fn(*args, **kwargs)
            finally:
                self.checkpoint()

    # ---- token helpers (development bank) ----

    def approve(self, owner: str, amount: int) -> None:
        """Let the ledger pull up to ``amount`` from ``owner``."""
        self.bank.approve(owner, self.transfers.custody, amount)

    def transfer(self, source: str, destination: str, amount: int) -> None:
        self.bank.transfer(source, destination, amount)

    # ---- lifecycle ----

    async def start(self) -> None:
        self.open_storage()
        api_cfg = self.config.api
        if api_cfg.enabled:
            from stakepot_core.api import APIServer
            self._api = APIServer(self, api_cfg.host, api_cfg.port, api_config=api_cfg)
            await self._api.start()
        logger.info(
            f"Ledger node started: admin={self.pool.params.admin} "
            f"custody={self.transfers.custody} block={self.pool.clock.now()}"
        )

    async def stop(self) -> None:
        if self._api is not None:
            await self._api.stop()
        if self.store is not None:
            self.persist()
            self.store.close()
            self.store = None
        logger.info("Ledger node stopped")

    def status(self) -> dict:
        summary = self.pool.get_summary()
        summary["custody"] = self.transfers.custody
        summary["custody_balance"] = str(self.pool.external_balance())
        summary["storage"] = self.store.db_path if self.store else None
        return summary
