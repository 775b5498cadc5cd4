"""
TOML-based configuration for AutoFlow.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from autoflow_core.config import load_config
    cfg = load_config("autoflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass
class SimulationConfig:
    """Timers, latency and randomness of the simulation."""
    receipt_tick_seconds: float = 15.0
    yield_tick_seconds: float = 60.0
    # Multiplier on the per-command simulated latency (0 = instant).
    latency_scale: float = 1.0
    decline_rate: float = 0.10
    display_floor: Decimal = Decimal("0.00")
    random_seed: int | None = None


@dataclass
class SeedConfig:
    """
    Demo state a fresh session starts from.

    Wallet balances are non-zero so the dashboard never opens empty;
    set them to 0 to start from a blank wallet.
    """
    custodial_wallet_balance: Decimal = Decimal("400.00")
    external_wallet_balance: Decimal = Decimal("400.00")
    principal: Decimal = Decimal("789.23")
    annual_rate: Decimal = Decimal("0.052")
    initial_accrual_days: int = 14
    external_card_link_probability: float = 0.70
    history: bool = True


@dataclass
class ProviderConfig:
    """Wallet provider selection and Circle credentials."""
    kind: str = "simulated"          # "simulated" or "circle"
    base_url: str = "https://api.circle.com"
    api_key: str = ""
    entity_secret: str = ""
    blockchain: str = "ETH-SEPOLIA"
    timeout_seconds: float = 10.0
    # Round-trip delay of the simulated provider's balance reads.
    simulated_latency_seconds: float = 1.5


@dataclass
class APIConfig:
    """REST API settings."""
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 65_536


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class AutoFlowConfig:
    """Top-level configuration container."""
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    seed: SeedConfig = field(default_factory=SeedConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place).

    Values landing on a ``Decimal`` field are converted through ``str`` so
    TOML floats like ``789.23`` keep their written digits.
    """
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if not hasattr(dc, key_under):
            continue
        if isinstance(getattr(dc, key_under), Decimal):
            value = Decimal(str(value))
        setattr(dc, key_under, value)


def load_config(path: str | None = None) -> AutoFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        AUTOFLOW_API_HOST               -> api.host
        AUTOFLOW_API_PORT               -> api.port
        AUTOFLOW_API_KEY                -> api.api_key
        AUTOFLOW_CORS_ORIGINS           -> api.cors_origins (comma-separated)
        AUTOFLOW_LOG_LEVEL              -> logging.level
        AUTOFLOW_LOG_FMT                -> logging.format
        AUTOFLOW_PROVIDER               -> provider.kind
        AUTOFLOW_CIRCLE_BASE_URL        -> provider.base_url
        AUTOFLOW_CIRCLE_API_KEY         -> provider.api_key
        AUTOFLOW_CIRCLE_ENTITY_SECRET   -> provider.entity_secret
        AUTOFLOW_LATENCY_SCALE          -> simulation.latency_scale
    """
    cfg = AutoFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("simulation", cfg.simulation),
                ("seed", cfg.seed),
                ("provider", cfg.provider),
                ("api", cfg.api),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("AUTOFLOW_API_HOST"):
        cfg.api.host = v
    if v := os.environ.get("AUTOFLOW_API_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("AUTOFLOW_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("AUTOFLOW_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("AUTOFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("AUTOFLOW_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("AUTOFLOW_PROVIDER"):
        cfg.provider.kind = v.lower()
    if v := os.environ.get("AUTOFLOW_CIRCLE_BASE_URL"):
        cfg.provider.base_url = v
    if v := os.environ.get("AUTOFLOW_CIRCLE_API_KEY"):
        cfg.provider.api_key = v
    if v := os.environ.get("AUTOFLOW_CIRCLE_ENTITY_SECRET"):
        cfg.provider.entity_secret = v
    if v := os.environ.get("AUTOFLOW_LATENCY_SCALE"):
        cfg.simulation.latency_scale = float(v)

    return cfg
