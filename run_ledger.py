#!/usr/bin/env python3
"""
StakePot Node Runner — starts a ledger node with:
  - The staking pool and a development token bank
  - SQLite persistence (when enabled)
  - The signed HTTP API (when enabled)

Usage:
    python run_ledger.py --config stakepot.toml --port 8080 \\
                         --db data/stakepot.db

Environment variables (alternative to flags):
    STAKEPOT_ADMIN, STAKEPOT_API_PORT, STAKEPOT_DB_PATH, STAKEPOT_LOG_LEVEL
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging

from stakepot_core.config import load_config
from stakepot_core.logging_config import setup_logging
from stakepot_core.node import LedgerNode

logger = logging.getLogger("stakepot_node")


def parse_args():
    p = argparse.ArgumentParser(description="StakePot Ledger Node")
    p.add_argument("--config", default=None, help="Path to stakepot.toml config file")
    p.add_argument("--admin", default=None, help="Admin address (overrides config)")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port (enables the API)")
    p.add_argument("--db", default=None, help="SQLite path (enables persistence)")
    p.add_argument("--check-invariants", action="store_true",
                   help="Verify ledger invariants after every mutation")
    return p.parse_args()


async def main():
    args = parse_args()

    # Load config (TOML + env overrides)
    cfg = load_config(args.config)

    # CLI flags override config
    if args.admin:
        cfg.ledger.admin = args.admin
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
        cfg.api.enabled = True
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True
    if args.check_invariants:
        cfg.ledger.check_invariants = True

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    if not cfg.api.enabled:
        logger.warning("API disabled; the node will only hold state. Set [api] enabled = true.")

    node = LedgerNode(cfg)
    await node.start()
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await node.stop()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
