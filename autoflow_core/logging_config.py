"""
Log output for the AutoFlow engine and its HTTP server.

Core modules log under ``autoflow.<component>``.  The root logger gets one
console handler, either coloured text (``human``) or one JSON object per
line (``json``), plus an optional JSON file handler.

Records logged with ``extra={"session": address}`` carry the connected
wallet address; both formats print it.

Usage:
    from autoflow_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="autoflow.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ENGINE_LOGGER = "autoflow"
VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

_LEVEL_COLOURS = {
    "DEBUG": "36",
    "INFO": "32",
    "WARNING": "33",
    "ERROR": "31",
    "CRITICAL": "1;31",
}


def _session_of(record: logging.LogRecord) -> str | None:
    return getattr(record, "session", None) or None


class _JSONFormatter(logging.Formatter):
    """``{"ts", "level", "logger", "msg"[, "session"][, "exception"]}``"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if (session := _session_of(record)) is not None:
            payload["session"] = session
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class _HumanFormatter(logging.Formatter):
    """``12:00:01 [INFO   ] autoflow.session: Connected ...``"""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        colour = _LEVEL_COLOURS.get(record.levelname)
        level = f"[{record.levelname:<7}]"
        if colour:
            level = f"\033[{colour}m{level}\033[0m"
        parts = [stamp, level, f"{record.name}:", record.getMessage()]
        if (session := _session_of(record)) is not None:
            parts.append(f"<{session}>")
        text = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Replace the root logger's handlers.

    *fmt* is ``"human"`` or ``"json"`` for the console; *log_file*, when
    given, adds a JSON file handler (parent directories are created).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    handlers[0].setFormatter(_JSONFormatter() if fmt == "json" else _HumanFormatter())
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(path))
        file_handler.setFormatter(_JSONFormatter())
        handlers.append(file_handler)
    for handler in handlers:
        root.addHandler(handler)

    # Per-request access lines drown out the engine at DEBUG.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def set_log_level(level: str, logger_name: str = ENGINE_LOGGER) -> str:
    """Change the level of *logger_name* at runtime; returns the level set."""
    name = level.upper()
    if name not in VALID_LEVELS:
        raise ValueError(f"Unknown log level: {level}")
    logging.getLogger(logger_name).setLevel(name)
    return name
