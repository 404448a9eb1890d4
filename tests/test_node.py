"""
Tests for the ledger node: genesis, mutation serialisation and restart
recovery through SQLite persistence.
"""

from __future__ import annotations

import sqlite3

import pytest

from stakepot_core.config import StakePotConfig
from stakepot_core.errors import BelowMinimum
from stakepot_core.identity import MAX_NONCE
from stakepot_core.node import LedgerNode


def _config(db_path=None) -> StakePotConfig:
    cfg = StakePotConfig()
    cfg.ledger.admin = "0xadmin"
    cfg.ledger.pot_address = "0xpot"
    cfg.ledger.decimals = 0
    cfg.genesis.balances = {"0xalice": 1000, "0xpot": 300}
    if db_path is not None:
        cfg.storage.enabled = True
        cfg.storage.path = str(db_path)
    return cfg


class TestNodeSetup:
    def test_admin_required(self):
        with pytest.raises(ValueError):
            LedgerNode(StakePotConfig())

    def test_genesis_scaled_by_decimals(self):
        cfg = _config()
        cfg.ledger.decimals = 2
        node = LedgerNode(cfg)
        node.open_storage()
        assert node.bank.balance_of("0xalice") == 1000 * 100

    def test_check_invariants_attaches_checker(self):
        cfg = _config()
        assert LedgerNode(cfg).pool.invariant_checker is None
        cfg.ledger.check_invariants = True
        assert LedgerNode(cfg).pool.invariant_checker is not None

    def test_status(self):
        node = LedgerNode(_config())
        node.open_storage()
        status = node.status()
        assert status["custody"] == "stakepot"
        assert status["custody_balance"] == "0"
        assert status["storage"] is None


class TestExecute:
    @pytest.mark.asyncio
    async def test_execute_returns_result(self):
        node = LedgerNode(_config())
        node.open_storage()
        node.approve("0xalice", 100)
        index = await node.execute(node.pool.add_stake, "0xalice", 100, 1)
        assert index == 0
        assert node.pool.total_stake == 100

    @pytest.mark.asyncio
    async def test_execute_propagates_errors(self):
        node = LedgerNode(_config())
        node.open_storage()
        with pytest.raises(BelowMinimum):
            await node.execute(node.pool.add_stake, "0xalice", 0, 1)


class TestPersistence:
    @pytest.mark.asyncio
    async def test_restart_resumes_state(self, tmp_path):
        db = tmp_path / "ledger.db"
        node = LedgerNode(_config(db))
        await node.start()
        node.approve("0xalice", 500)
        node.bank.approve("0xpot", node.transfers.custody, 300)
        await node.execute(node.pool.add_stake, "0xalice", 200, 6500)
        await node.execute(node.pool.distribute, "0xalice")
        node.nonces.consume("0xalice", 9)
        await node.execute(node.pool.set_penalty_rate, "0xadmin", 30)
        block = node.pool.clock.now()
        await node.stop()

        restarted = LedgerNode(_config(db))
        await restarted.start()
        try:
            assert restarted.pool.clock.now() == block
            assert restarted.pool.params.penalty_rate == 30
            assert restarted.pool.total_stake == 200
            assert restarted.pool.get_total_reward() == 300
            assert restarted.bank.balance_of("0xalice") == 800
            assert restarted.nonces.nonces == {"0xalice": 9}
            # Early withdrawal at the persisted 30% rate
            payout = await restarted.execute(restarted.pool.remove_stake, "0xalice", 0)
            assert payout == 140 + 300
        finally:
            await restarted.stop()

    @pytest.mark.asyncio
    async def test_genesis_only_on_first_run(self, tmp_path):
        db = tmp_path / "ledger.db"
        node = LedgerNode(_config(db))
        await node.start()
        node.transfer("0xalice", "0xbob", 250)
        await node.execute(lambda: None)
        await node.stop()

        restarted = LedgerNode(_config(db))
        await restarted.start()
        try:
            assert restarted.bank.balance_of("0xalice") == 750
            assert restarted.bank.balance_of("0xbob") == 250
            assert restarted.bank.total_supply == 1300
        finally:
            await restarted.stop()

    @pytest.mark.asyncio
    async def test_failed_mutation_still_persists_nonce(self, tmp_path):
        db = tmp_path / "ledger.db"
        node = LedgerNode(_config(db))
        await node.start()
        node.nonces.consume("0xalice", 4)
        with pytest.raises(BelowMinimum):
            await node.execute(node.pool.add_stake, "0xalice", 0, 1)
        await node.stop()

        restarted = LedgerNode(_config(db))
        await restarted.start()
        try:
            assert restarted.nonces.nonces == {"0xalice": 4}
        finally:
            await restarted.stop()

    @pytest.mark.asyncio
    async def test_large_block_fields_and_nonce_persist(self, tmp_path):
        db = tmp_path / "ledger.db"
        node = LedgerNode(_config(db))
        await node.start()
        node.nonces.consume("0xalice", MAX_NONCE)
        await node.execute(node.pool.set_periods, "0xadmin", [1, 2 ** 70])
        await node.execute(node.pool.set_stake, "0xadmin", 50, 2 ** 70, "0xeve", 2 ** 80, 0)
        await node.stop()

        restarted = LedgerNode(_config(db))
        await restarted.start()
        try:
            assert restarted.nonces.nonces == {"0xalice": MAX_NONCE}
            stake = restarted.pool.get_stakes("0xeve")[0]
            assert stake.period == 2 ** 70
            assert stake.start_block == 2 ** 80
        finally:
            await restarted.stop()


def _failing_snapshot(*_args, **_kwargs):
    raise sqlite3.OperationalError("disk I/O error")


class TestSnapshotFailure:
    @pytest.mark.asyncio
    async def test_committed_mutation_reported_when_snapshot_fails(self, tmp_path, monkeypatch):
        node = LedgerNode(_config(tmp_path / "ledger.db"))
        node.open_storage()

        monkeypatch.setattr(node.store, "snapshot", _failing_snapshot)
        node.approve("0xalice", 100)
        index = await node.execute(node.pool.add_stake, "0xalice", 100, 1)
        assert index == 0
        assert node.pool.total_stake == 100
        assert node.checkpoint() is False

        monkeypatch.undo()
        assert node.checkpoint() is True
        assert len(node.store.load_stakes()["0xalice"]) == 1
        node.store.close()

    @pytest.mark.asyncio
    async def test_ledger_errors_still_raised(self, tmp_path, monkeypatch):
        node = LedgerNode(_config(tmp_path / "ledger.db"))
        node.open_storage()
        monkeypatch.setattr(node.store, "snapshot", _failing_snapshot)
        with pytest.raises(BelowMinimum):
            await node.execute(node.pool.add_stake, "0xalice", 0, 1)
        node.store.close()
