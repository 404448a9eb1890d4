"""
Configuration for StakePot ledger nodes.

Settings come from three layers, later ones winning:

    dataclass defaults  <  TOML file  <  STAKEPOT_* environment variables

Each TOML table maps onto one dataclass section of ``StakePotConfig``
(``[ledger]``, ``[api]``, ``[storage]``, ``[genesis]``, ``[logging]``).
Keys may use dashes or underscores; unknown keys are ignored with a warning.

Usage:
    from stakepot_core.config import load_config
    cfg = load_config("stakepot.toml")
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from stakepot_core.periods import (
    DEFAULT_DECIMALS,
    DEFAULT_PENALTY_RATE,
    DEFAULT_PERIODS,
    LedgerParams,
    PeriodTable,
)

logger = logging.getLogger("stakepot_config")


@dataclass
class LedgerConfig:
    """Initial ledger parameters and engine switches."""
    admin: str = ""
    custody: str = "stakepot"
    pot_address: str = ""
    token_symbol: str = "STK"
    decimals: int = DEFAULT_DECIMALS
    penalty_rate: int = DEFAULT_PENALTY_RATE
    periods: list[int] = field(default_factory=lambda: list(DEFAULT_PERIODS))
    start_block: int = 1
    # Each committed mutation advances the block counter by one
    auto_advance: bool = True
    check_invariants: bool = False

    def to_params(self) -> LedgerParams:
        return LedgerParams(
            admin=self.admin,
            pot_address=self.pot_address,
            periods=PeriodTable(tuple(self.periods)),
            penalty_rate=self.penalty_rate,
            decimals=self.decimals,
        )


@dataclass
class APIConfig:
    """HTTP front-end of the node."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""            # shared secret for POST routes; empty disables the check
    rate_limit_rpm: int = 120    # per client IP; 0 disables limiting
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """SQLite snapshot location."""
    enabled: bool = False
    path: str = "data/stakepot.db"


@dataclass
class GenesisConfig:
    """
    Development token balances.

    ``balances`` maps address → initial balance in whole tokens; the node
    scales them by ``10 ** decimals`` when minting.
    """
    balances: dict[str, int] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "human"        # human | json
    file: str | None = None


@dataclass
class StakePotConfig:
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    genesis: GenesisConfig = field(default_factory=GenesisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(section: Any, raw: dict[str, Any]) -> None:
    """Copy the keys of one TOML table onto a config section."""
    for key, value in raw.items():
        name = key.replace("-", "_")
        if not hasattr(section, name):
            logger.warning(
                f"Ignoring unknown config key {key!r} in [{type(section).__name__}]"
            )
            continue
        setattr(section, name, value)


def _int_list(text: str) -> list[int]:
    return [int(part) for part in text.split(",") if part.strip()]


# (variable, section, attribute, converter, section switch it turns on)
_ENV_OVERRIDES: tuple[tuple[str, str, str, Callable[[str], Any], str | None], ...] = (
    ("STAKEPOT_ADMIN",       "ledger",  "admin",        str,       None),
    ("STAKEPOT_POT_ADDRESS", "ledger",  "pot_address",  str,       None),
    ("STAKEPOT_PENALTY",     "ledger",  "penalty_rate", int,       None),
    ("STAKEPOT_PERIODS",     "ledger",  "periods",      _int_list, None),
    ("STAKEPOT_API_PORT",    "api",     "port",         int,       "enabled"),
    ("STAKEPOT_API_KEY",     "api",     "api_key",      str,       None),
    ("STAKEPOT_LOG_LEVEL",   "logging", "level",        str.upper, None),
    ("STAKEPOT_LOG_FMT",     "logging", "format",       str,       None),
    ("STAKEPOT_DB_PATH",     "storage", "path",         str,       "enabled"),
)


def _apply_env(cfg: StakePotConfig) -> None:
    for var, section_name, attr, convert, switch in _ENV_OVERRIDES:
        raw = os.environ.get(var)
        if not raw:
            continue
        section = getattr(cfg, section_name)
        setattr(section, attr, convert(raw))
        if switch:
            setattr(section, switch, True)


def load_config(path: str | None = None) -> StakePotConfig:
    """
    Build a ``StakePotConfig`` from an optional TOML file plus the environment.

    A missing file is not an error; the defaults are used instead.

    Environment variables:
        STAKEPOT_ADMIN        -> ledger.admin
        STAKEPOT_POT_ADDRESS  -> ledger.pot_address
        STAKEPOT_PENALTY      -> ledger.penalty_rate
        STAKEPOT_PERIODS      -> ledger.periods   (comma-separated)
        STAKEPOT_API_PORT     -> api.port         (also enables the API)
        STAKEPOT_API_KEY      -> api.api_key
        STAKEPOT_LOG_LEVEL    -> logging.level
        STAKEPOT_LOG_FMT      -> logging.format
        STAKEPOT_DB_PATH      -> storage.path     (also enables storage)
    """
    cfg = StakePotConfig()

    if path is not None and Path(path).is_file():
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        for section in fields(cfg):
            table = data.get(section.name)
            if isinstance(table, dict):
                _merge(getattr(cfg, section.name), table)

    _apply_env(cfg)
    return cfg
