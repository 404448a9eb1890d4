"""
SQLite-based persistence for StakePot ledger state.

Stores ledger parameters, global counters, every stake record (tombstones
included), token balances and allowances of the development bank, and the
API's per-address nonces, so a node can recover after restart.

Token amounts are arbitrary-precision integers (18-decimal base units easily
exceed SQLite's 64-bit INTEGER), so they are stored as decimal TEXT.  Block
heights, periods and nonces are stored the same way, since admin overrides
can set them to any non-negative integer.

Usage:
    store = LedgerStore("data/stakepot.db")
    store.snapshot(pool, bank, nonces)
    ...
    store.restore(pool, bank)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Optional

from stakepot_core.periods import LedgerParams, PeriodTable
from stakepot_core.staking import StakeRecord

logger = logging.getLogger("stakepot_storage")

_COUNTERS = (
    "total_stake",
    "total_stake_weight",
    "total_reward",
    "pot",
    "dust",
    "retained_penalties",
    "migration_deficit",
)


class LedgerStore:
    """Thin SQLite wrapper for persisting ledger state."""

    CURRENT_SCHEMA_VERSION = 2

    def __init__(self, db_path: str = "data/stakepot.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._conn.commit()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS params (
                id           INTEGER PRIMARY KEY CHECK (id = 1),
                version      INTEGER NOT NULL,
                admin        TEXT NOT NULL,
                pot_address  TEXT NOT NULL DEFAULT '',
                periods      TEXT NOT NULL,
                penalty_rate INTEGER NOT NULL,
                decimals     INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS counters (
                name  TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS stakes (
                account     TEXT NOT NULL,
                idx         INTEGER NOT NULL,
                amount      TEXT NOT NULL,
                period      TEXT NOT NULL,
                weight      TEXT NOT NULL,
                reward      TEXT NOT NULL,
                start_block TEXT NOT NULL,
                close_block TEXT NOT NULL DEFAULT '0',
                PRIMARY KEY (account, idx)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                address TEXT PRIMARY KEY,
                amount  TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS allowances (
                owner   TEXT NOT NULL,
                spender TEXT NOT NULL,
                amount  TEXT NOT NULL,
                PRIMARY KEY (owner, spender)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS nonces (
                address TEXT PRIMARY KEY,
                nonce   TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade StakePot."
            )
        elif row["version"] < 2:
            self._migrate_v1()

    def _migrate_v1(self) -> None:
        """v1 kept block heights, periods and nonces in INTEGER columns."""
        c = self._conn
        c.execute("BEGIN IMMEDIATE")
        try:
            for table in ("stakes", "nonces"):
                c.execute(f"ALTER TABLE {table} RENAME TO {table}_v1")
            self._create_tables()
            c.execute(
                """INSERT INTO stakes
                   SELECT account, idx, amount, CAST(period AS TEXT),
                          CAST(weight AS TEXT), reward, CAST(start_block AS TEXT),
                          CAST(close_block AS TEXT)
                   FROM stakes_v1"""
            )
            c.execute(
                "INSERT INTO nonces SELECT address, CAST(nonce AS TEXT) FROM nonces_v1"
            )
            c.execute("DROP TABLE stakes_v1")
            c.execute("DROP TABLE nonces_v1")
            c.execute("UPDATE schema_version SET version = 2 WHERE id = 1")
            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise
        logger.info(f"Migrated {self.db_path} to schema v2")

    # ── reads ────────────────────────────────────────────────────

    def has_state(self) -> bool:
        row = self._conn.execute("SELECT 1 FROM params WHERE id = 1").fetchone()
        return row is not None

    def load_params(self) -> Optional[LedgerParams]:
        row = self._conn.execute("SELECT * FROM params WHERE id = 1").fetchone()
        if row is None:
            return None
        return LedgerParams(
            admin=row["admin"],
            pot_address=row["pot_address"],
            periods=PeriodTable(tuple(json.loads(row["periods"]))),
            penalty_rate=row["penalty_rate"],
            decimals=row["decimals"],
            version=row["version"],
        )

    def load_counters(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT name, value FROM counters").fetchall()
        return {r["name"]: int(r["value"]) for r in rows}

    def load_stakes(self) -> dict[str, list[StakeRecord]]:
        rows = self._conn.execute(
            "SELECT * FROM stakes ORDER BY account, idx"
        ).fetchall()
        accounts: dict[str, list[StakeRecord]] = {}
        for r in rows:
            stakes = accounts.setdefault(r["account"], [])
            if r["idx"] != len(stakes):
                raise RuntimeError(
                    f"Stake index gap for {r['account']}: expected {len(stakes)}, "
                    f"found {r['idx']}"
                )
            stakes.append(StakeRecord(
                amount=int(r["amount"]),
                period=int(r["period"]),
                weight=int(r["weight"]),
                reward=int(r["reward"]),
                start_block=int(r["start_block"]),
                close_block=int(r["close_block"]),
            ))
        return accounts

    def load_balances(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT address, amount FROM balances").fetchall()
        return {r["address"]: int(r["amount"]) for r in rows}

    def load_allowances(self) -> dict[tuple[str, str], int]:
        rows = self._conn.execute("SELECT * FROM allowances").fetchall()
        return {(r["owner"], r["spender"]): int(r["amount"]) for r in rows}

    def load_nonces(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT address, nonce FROM nonces").fetchall()
        return {r["address"]: int(r["nonce"]) for r in rows}

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot(self, pool: Any, bank: Any = None, nonces: Optional[dict[str, int]] = None) -> None:
        """Persist the full ledger state in a single transaction."""
        c = self._conn
        try:
            c.execute("BEGIN IMMEDIATE")

            p = pool.params
            c.execute(
                """INSERT OR REPLACE INTO params
                   (id, version, admin, pot_address, periods, penalty_rate, decimals)
                   VALUES (1, ?, ?, ?, ?, ?, ?)""",
                (p.version, p.admin, p.pot_address,
                 json.dumps(list(p.periods.durations)), p.penalty_rate, p.decimals),
            )

            counters = {name: getattr(pool, name) for name in _COUNTERS}
            counters["block"] = pool.clock.now()
            c.executemany(
                "INSERT OR REPLACE INTO counters (name, value) VALUES (?, ?)",
                [(k, str(v)) for k, v in counters.items()],
            )

            for account, stakes in pool.accounts.items():
                c.executemany(
                    """INSERT OR REPLACE INTO stakes
                       (account, idx, amount, period, weight, reward,
                        start_block, close_block)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    [(account, i, str(s.amount), str(s.period), str(s.weight),
                      str(s.reward), str(s.start_block), str(s.close_block))
                     for i, s in enumerate(stakes)],
                )

            if bank is not None:
                c.executemany(
                    "INSERT OR REPLACE INTO balances (address, amount) VALUES (?, ?)",
                    [(addr, str(amt)) for addr, amt in bank.balances.items()],
                )
                c.executemany(
                    """INSERT OR REPLACE INTO allowances (owner, spender, amount)
                       VALUES (?, ?, ?)""",
                    [(o, s, str(amt)) for (o, s), amt in bank.allowances.items()],
                )

            if nonces:
                c.executemany(
                    "INSERT OR REPLACE INTO nonces (address, nonce) VALUES (?, ?)",
                    [(addr, str(n)) for addr, n in nonces.items()],
                )

            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise

    def restore(self, pool: Any, bank: Any = None) -> bool:
        """
        Load persisted state into ``pool`` (and ``bank``).

        Returns False, leaving both untouched, when the database is empty.
        """
        params = self.load_params()
        if params is None:
            return False

        counters = self.load_counters()
        pool.params = params
        pool.accounts = self.load_stakes()
        for name in _COUNTERS:
            setattr(pool, name, counters.get(name, 0))
        if "block" in counters:
            pool.clock.height = counters["block"]

        if bank is not None:
            bank.balances.clear()
            bank.balances.update(self.load_balances())
            bank.allowances.clear()
            bank.allowances.update(self.load_allowances())
            bank.total_supply = sum(bank.balances.values())

        logger.info(
            f"Restored ledger v{params.version}: {len(pool.accounts)} accounts, "
            f"block {pool.clock.now()}"
        )
        return True

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
