"""
Tests for stakepot_core.config — TOML configuration and environment overrides.

Covers:
  - Default values for all dataclass sections
  - TOML parsing and section merging
  - Environment variable overrides (precedence over TOML)
  - LedgerConfig.to_params
  - _merge helper edge cases
  - Missing TOML files
"""

from __future__ import annotations

import os
import tempfile
import textwrap
import unittest
from unittest.mock import patch

from stakepot_core.config import (
    APIConfig,
    GenesisConfig,
    LedgerConfig,
    LoggingConfig,
    StakePotConfig,
    StorageConfig,
    _merge,
    load_config,
)
from stakepot_core.periods import DEFAULT_PERIODS


def _write_toml(content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
        f.write(textwrap.dedent(content))
    return f.name


# ═══════════════════════════════════════════════════════════════════
#  Defaults
# ═══════════════════════════════════════════════════════════════════

class TestDefaults(unittest.TestCase):

    def test_ledger_defaults(self):
        lc = LedgerConfig()
        self.assertEqual(lc.admin, "")
        self.assertEqual(lc.custody, "stakepot")
        self.assertEqual(lc.penalty_rate, 10)
        self.assertEqual(lc.decimals, 18)
        self.assertEqual(lc.periods, list(DEFAULT_PERIODS))
        self.assertTrue(lc.auto_advance)
        self.assertFalse(lc.check_invariants)

    def test_periods_not_shared(self):
        a, b = LedgerConfig(), LedgerConfig()
        a.periods.append(9)
        self.assertEqual(b.periods, list(DEFAULT_PERIODS))

    def test_api_defaults(self):
        a = APIConfig()
        self.assertFalse(a.enabled)
        self.assertEqual(a.host, "127.0.0.1")
        self.assertEqual(a.port, 8080)
        self.assertEqual(a.api_key, "")
        self.assertEqual(a.rate_limit_rpm, 120)

    def test_storage_defaults(self):
        s = StorageConfig()
        self.assertFalse(s.enabled)
        self.assertEqual(s.path, "data/stakepot.db")

    def test_genesis_and_logging_defaults(self):
        self.assertEqual(GenesisConfig().balances, {})
        lg = LoggingConfig()
        self.assertEqual(lg.level, "INFO")
        self.assertEqual(lg.format, "human")
        self.assertIsNone(lg.file)

    def test_top_level_sections(self):
        cfg = StakePotConfig()
        self.assertIsInstance(cfg.ledger, LedgerConfig)
        self.assertIsInstance(cfg.api, APIConfig)
        self.assertIsInstance(cfg.storage, StorageConfig)


class TestToParams(unittest.TestCase):

    def test_to_params(self):
        lc = LedgerConfig(admin="0xa", pot_address="0xp", periods=[1, 10],
                          penalty_rate=25, decimals=6)
        params = lc.to_params()
        self.assertEqual(params.admin, "0xa")
        self.assertEqual(params.pot_address, "0xp")
        self.assertEqual(params.periods.durations, (1, 10))
        self.assertEqual(params.penalty_rate, 25)
        self.assertEqual(params.min_stake, 10 ** 6)
        self.assertEqual(params.version, 1)


# ═══════════════════════════════════════════════════════════════════
#  _merge
# ═══════════════════════════════════════════════════════════════════

class TestMerge(unittest.TestCase):

    def test_known_keys(self):
        lc = LedgerConfig()
        _merge(lc, {"admin": "0xa", "penalty_rate": 5})
        self.assertEqual(lc.admin, "0xa")
        self.assertEqual(lc.penalty_rate, 5)

    def test_hyphenated_keys(self):
        lc = LedgerConfig()
        _merge(lc, {"pot-address": "0xp", "check-invariants": True})
        self.assertEqual(lc.pot_address, "0xp")
        self.assertTrue(lc.check_invariants)

    def test_unknown_keys_ignored(self):
        lc = LedgerConfig()
        _merge(lc, {"no_such_field": 1})
        self.assertFalse(hasattr(lc, "no_such_field"))


# ═══════════════════════════════════════════════════════════════════
#  load_config
# ═══════════════════════════════════════════════════════════════════

class TestLoadConfig(unittest.TestCase):

    def test_load_no_file(self):
        cfg = load_config(None)
        self.assertEqual(cfg.api.port, 8080)

    def test_load_missing_file(self):
        cfg = load_config("/tmp/__nonexistent_stakepot__.toml")
        self.assertEqual(cfg.ledger.custody, "stakepot")

    def test_load_toml_file(self):
        path = _write_toml("""\
            [ledger]
            admin = "0xadmin"
            pot_address = "0xpot"
            periods = [1, 100, 1000]
            penalty_rate = 15
            check_invariants = true

            [api]
            enabled = true
            port = 3000
            api_key = "secret123"

            [storage]
            enabled = true
            path = "/tmp/sp.db"

            [genesis.balances]
            "0xalice" = 500
            "0xbob" = 20

            [logging]
            level = "DEBUG"
            format = "json"
        """)
        try:
            cfg = load_config(path)
        finally:
            os.unlink(path)

        self.assertEqual(cfg.ledger.admin, "0xadmin")
        self.assertEqual(cfg.ledger.pot_address, "0xpot")
        self.assertEqual(cfg.ledger.periods, [1, 100, 1000])
        self.assertEqual(cfg.ledger.penalty_rate, 15)
        self.assertTrue(cfg.ledger.check_invariants)
        self.assertTrue(cfg.api.enabled)
        self.assertEqual(cfg.api.port, 3000)
        self.assertEqual(cfg.api.api_key, "secret123")
        self.assertTrue(cfg.storage.enabled)
        self.assertEqual(cfg.storage.path, "/tmp/sp.db")
        self.assertEqual(cfg.genesis.balances, {"0xalice": 500, "0xbob": 20})
        self.assertEqual(cfg.logging.format, "json")


# ═══════════════════════════════════════════════════════════════════
#  Environment variable overrides
# ═══════════════════════════════════════════════════════════════════

class TestEnvOverrides(unittest.TestCase):

    @patch.dict(os.environ, {"STAKEPOT_ADMIN": "0xenv"}, clear=False)
    def test_env_admin(self):
        self.assertEqual(load_config(None).ledger.admin, "0xenv")

    @patch.dict(os.environ, {"STAKEPOT_POT_ADDRESS": "0xpot"}, clear=False)
    def test_env_pot_address(self):
        self.assertEqual(load_config(None).ledger.pot_address, "0xpot")

    @patch.dict(os.environ, {"STAKEPOT_PENALTY": "35"}, clear=False)
    def test_env_penalty(self):
        self.assertEqual(load_config(None).ledger.penalty_rate, 35)

    @patch.dict(os.environ, {"STAKEPOT_PERIODS": "1, 20 ,300,"}, clear=False)
    def test_env_periods(self):
        self.assertEqual(load_config(None).ledger.periods, [1, 20, 300])

    @patch.dict(os.environ, {"STAKEPOT_API_PORT": "4444"}, clear=False)
    def test_env_api_port(self):
        cfg = load_config(None)
        self.assertEqual(cfg.api.port, 4444)
        self.assertTrue(cfg.api.enabled)  # auto-enabled

    @patch.dict(os.environ, {"STAKEPOT_API_KEY": "my-key"}, clear=False)
    def test_env_api_key(self):
        self.assertEqual(load_config(None).api.api_key, "my-key")

    @patch.dict(os.environ, {"STAKEPOT_LOG_LEVEL": "debug"}, clear=False)
    def test_env_log_level_uppercased(self):
        self.assertEqual(load_config(None).logging.level, "DEBUG")

    @patch.dict(os.environ, {"STAKEPOT_LOG_FMT": "json"}, clear=False)
    def test_env_log_format(self):
        self.assertEqual(load_config(None).logging.format, "json")

    @patch.dict(os.environ, {"STAKEPOT_DB_PATH": "/tmp/sp.db"}, clear=False)
    def test_env_db_path(self):
        cfg = load_config(None)
        self.assertEqual(cfg.storage.path, "/tmp/sp.db")
        self.assertTrue(cfg.storage.enabled)  # auto-enabled


class TestEnvOverridesToml(unittest.TestCase):

    @patch.dict(os.environ, {"STAKEPOT_PENALTY": "50"}, clear=False)
    def test_env_wins_over_toml(self):
        path = _write_toml("""\
            [ledger]
            penalty_rate = 15
            admin = "0xfile"
        """)
        try:
            cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertEqual(cfg.ledger.penalty_rate, 50)
        self.assertEqual(cfg.ledger.admin, "0xfile")


if __name__ == "__main__":
    unittest.main()
