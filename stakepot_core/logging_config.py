"""
Structured logging configuration for StakePot nodes.

Two console formats:
  - **human** – single line, coloured when stderr is a terminal
  - **json**  – one JSON object per line, for log shippers

Ledger events attach structured context with ``extra={"ctx": {...}}``.
The JSON format nests it under ``"ctx"``; the human format appends it as
``key=value`` pairs.

Usage:
    from stakepot_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="logs/stakepot.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# Library loggers that drown ledger events at INFO
_QUIET_LOGGERS: dict[str, str] = {
    "aiohttp.access": "WARNING",
    "asyncio": "WARNING",
}


def _record_ctx(record: logging.LogRecord) -> dict[str, Any]:
    ctx = getattr(record, "ctx", None)
    return ctx if isinstance(ctx, dict) else {}


class _JSONFormatter(logging.Formatter):
    """One JSON object per record; big-int amounts stay exact."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        ctx = _record_ctx(record)
        if ctx:
            payload["ctx"] = ctx
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class _HumanFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL  ] logger: message key=value ...``"""

    LEVEL_COLOURS = {
        "DEBUG": "36",
        "INFO": "32",
        "WARNING": "33",
        "ERROR": "31",
        "CRITICAL": "1;31",
    }

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def _level_tag(self, levelname: str) -> str:
        tag = f"[{levelname:<7}]"
        code = self.LEVEL_COLOURS.get(levelname)
        if self.colour and code:
            return f"\033[{code}m{{ts}} {tag}\033[0m"
        return f"{{ts}} {tag}"

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        parts = [
            self._level_tag(record.levelname).format(ts=ts),
            f"{record.name}: {record.getMessage()}",
        ]
        parts.extend(f"{k}={v}" for k, v in _record_ctx(record).items())
        text = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            text += "\n" + self.formatException(record.exc_info)
        return text


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
    logger_levels: Optional[dict[str, str]] = None,
) -> None:
    """
    Install StakePot's handlers on the root logger, replacing existing ones.

    Parameters
    ----------
    level : str
        Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    fmt : str
        ``"human"`` or ``"json"`` for the stderr handler.
    log_file : str, optional
        Additional JSON log file; parent directories are created.
    logger_levels : dict, optional
        Per-logger level overrides on top of the quiet list,
        e.g. ``{"stakepot_api": "DEBUG"}``.
    """
    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter(colour=sys.stderr.isatty()))
    handlers.append(console)

    if log_file:
        target = Path(log_file)
        target.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(_JSONFormatter())
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(_level(level))
    root.handlers[:] = handlers

    for name, lvl in {**_QUIET_LOGGERS, **(logger_levels or {})}.items():
        logging.getLogger(name).setLevel(_level(lvl))
