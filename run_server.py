#!/usr/bin/env python3
"""
AutoFlow server runner: serves one connection session over HTTP.

Usage:
    python run_server.py --config autoflow.toml --port 8080
    python run_server.py --provider simulated --latency-scale 0.1 \\
                         --connect metamask:0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed

Environment variables (alternative to flags):
    AUTOFLOW_API_HOST, AUTOFLOW_API_PORT, AUTOFLOW_PROVIDER, AUTOFLOW_LOG_LEVEL, ...
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from autoflow_core.api import APIServer  # noqa: E402
from autoflow_core.config import load_config  # noqa: E402
from autoflow_core.errors import ProviderError  # noqa: E402
from autoflow_core.logging_config import setup_logging  # noqa: E402
from autoflow_core.provider import build_provider  # noqa: E402
from autoflow_core.session import ConnectionSession  # noqa: E402

logger = logging.getLogger("autoflow.server")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="AutoFlow simulation server")
    p.add_argument("--config", default=None, help="Path to autoflow.toml config file")
    p.add_argument("--host", default=None, help="Listen host")
    p.add_argument("--port", type=int, default=None, help="Listen port")
    p.add_argument("--provider", choices=["simulated", "circle"], default=None,
                   help="Wallet provider")
    p.add_argument("--latency-scale", type=float, default=None,
                   help="Multiplier on simulated command latency (0 = instant)")
    p.add_argument("--seed", type=int, default=None, help="Random seed")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--connect", default=None, metavar="PROVIDER:IDENTITY",
                   help="Connect a session on startup, e.g. circle:alice@example.com")
    return p.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    # Load config (TOML + env overrides), then CLI flags override config
    cfg = load_config(args.config)
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
    if args.provider:
        cfg.provider.kind = args.provider
    if args.latency_scale is not None:
        cfg.simulation.latency_scale = args.latency_scale
    if args.seed is not None:
        cfg.simulation.random_seed = args.seed
    if args.log_level:
        cfg.logging.level = args.log_level

    setup_logging(level=cfg.logging.level, fmt=cfg.logging.format, log_file=cfg.logging.file)

    provider = build_provider(cfg.provider)
    session = ConnectionSession(provider, cfg)
    api = APIServer(session, host=cfg.api.host, port=cfg.api.port, api_config=cfg.api)
    await api.start()

    if args.connect:
        kind, _, identity = args.connect.partition(":")
        try:
            await session.connect(kind, identity)
        except (ProviderError, ValueError) as exc:
            logger.error(f"Startup connect failed: {exc}")

    try:
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        await api.stop()
        await provider.close()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
