"""
Tests for autoflow_core.config: TOML configuration and environment overrides.

Covers:
  - Default values for all dataclass sections
  - TOML parsing and section merging
  - Decimal fields keeping their written digits
  - Environment variable overrides (precedence over TOML)
  - _merge helper edge cases
  - Missing TOML files
"""

from __future__ import annotations

import os
import tempfile
import textwrap
import unittest
from decimal import Decimal
from unittest.mock import patch

from autoflow_core.config import (
    APIConfig,
    AutoFlowConfig,
    LoggingConfig,
    ProviderConfig,
    SeedConfig,
    SimulationConfig,
    _merge,
    load_config,
)


def _write_toml(content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
        f.write(textwrap.dedent(content))
        return f.name


# ═══════════════════════════════════════════════════════════════════
#  Defaults
# ═══════════════════════════════════════════════════════════════════

class TestDefaults(unittest.TestCase):

    def test_simulation_defaults(self):
        s = SimulationConfig()
        self.assertEqual(s.receipt_tick_seconds, 15.0)
        self.assertEqual(s.yield_tick_seconds, 60.0)
        self.assertEqual(s.latency_scale, 1.0)
        self.assertEqual(s.decline_rate, 0.10)
        self.assertEqual(s.display_floor, Decimal("0.00"))
        self.assertIsNone(s.random_seed)

    def test_seed_defaults(self):
        s = SeedConfig()
        self.assertEqual(s.custodial_wallet_balance, Decimal("400.00"))
        self.assertEqual(s.external_wallet_balance, Decimal("400.00"))
        self.assertEqual(s.principal, Decimal("789.23"))
        self.assertEqual(s.annual_rate, Decimal("0.052"))
        self.assertEqual(s.initial_accrual_days, 14)
        self.assertEqual(s.external_card_link_probability, 0.70)
        self.assertTrue(s.history)

    def test_provider_defaults(self):
        p = ProviderConfig()
        self.assertEqual(p.kind, "simulated")
        self.assertEqual(p.base_url, "https://api.circle.com")
        self.assertEqual(p.blockchain, "ETH-SEPOLIA")

    def test_api_defaults(self):
        a = APIConfig()
        self.assertEqual(a.host, "127.0.0.1")
        self.assertEqual(a.port, 8080)
        self.assertEqual(a.api_key, "")
        self.assertEqual(a.cors_origins, [])

    def test_logging_defaults(self):
        lg = LoggingConfig()
        self.assertEqual(lg.level, "INFO")
        self.assertEqual(lg.format, "human")
        self.assertIsNone(lg.file)

    def test_sections_not_shared(self):
        a, b = AutoFlowConfig(), AutoFlowConfig()
        a.api.cors_origins.append("http://x")
        self.assertEqual(b.api.cors_origins, [])


# ═══════════════════════════════════════════════════════════════════
#  _merge helper
# ═══════════════════════════════════════════════════════════════════

class TestMerge(unittest.TestCase):

    def test_merge_updates_fields(self):
        s = SimulationConfig()
        _merge(s, {"latency_scale": 0.5, "random_seed": 7})
        self.assertEqual(s.latency_scale, 0.5)
        self.assertEqual(s.random_seed, 7)

    def test_merge_ignores_unknown_keys(self):
        s = SimulationConfig()
        _merge(s, {"unknown_field": 42})
        self.assertFalse(hasattr(s, "unknown_field"))

    def test_merge_hyphenated_keys(self):
        s = SeedConfig()
        _merge(s, {"initial-accrual-days": 3})
        self.assertEqual(s.initial_accrual_days, 3)

    def test_merge_decimal_from_float(self):
        s = SeedConfig()
        _merge(s, {"principal": 1000.10})
        self.assertEqual(s.principal, Decimal("1000.1"))
        self.assertIsInstance(s.principal, Decimal)


# ═══════════════════════════════════════════════════════════════════
#  TOML loading
# ═══════════════════════════════════════════════════════════════════

class TestLoadConfig(unittest.TestCase):

    def test_load_no_file(self):
        cfg = load_config(None)
        self.assertEqual(cfg.api.port, 8080)

    def test_load_missing_file(self):
        cfg = load_config("/tmp/__nonexistent_autoflow__.toml")
        self.assertEqual(cfg.provider.kind, "simulated")

    def test_load_toml_file(self):
        path = _write_toml("""\
            [simulation]
            receipt_tick_seconds = 5
            latency_scale = 0.0
            display_floor = 0.00
            random_seed = 99

            [seed]
            custodial_wallet_balance = 250.5
            principal = 1000.00
            history = false

            [provider]
            kind = "circle"
            blockchain = "MATIC-AMOY"

            [api]
            port = 3000
            cors_origins = ["http://localhost:3000"]

            [logging]
            level = "DEBUG"
            format = "json"
        """)
        try:
            cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertEqual(cfg.simulation.receipt_tick_seconds, 5)
        self.assertEqual(cfg.simulation.latency_scale, 0.0)
        self.assertEqual(cfg.simulation.random_seed, 99)
        self.assertEqual(cfg.seed.custodial_wallet_balance, Decimal("250.5"))
        self.assertEqual(cfg.seed.principal, Decimal("1000.0"))
        self.assertFalse(cfg.seed.history)
        self.assertEqual(cfg.provider.kind, "circle")
        self.assertEqual(cfg.provider.blockchain, "MATIC-AMOY")
        self.assertEqual(cfg.api.port, 3000)
        self.assertEqual(cfg.api.cors_origins, ["http://localhost:3000"])
        self.assertEqual(cfg.logging.format, "json")


# ═══════════════════════════════════════════════════════════════════
#  Environment overrides
# ═══════════════════════════════════════════════════════════════════

class TestEnvOverrides(unittest.TestCase):

    @patch.dict(os.environ, {"AUTOFLOW_API_PORT": "4444"}, clear=False)
    def test_api_port(self):
        self.assertEqual(load_config().api.port, 4444)

    @patch.dict(os.environ, {"AUTOFLOW_API_HOST": "0.0.0.0"}, clear=False)
    def test_api_host(self):
        self.assertEqual(load_config().api.host, "0.0.0.0")

    @patch.dict(os.environ, {"AUTOFLOW_API_KEY": "my-key"}, clear=False)
    def test_api_key(self):
        self.assertEqual(load_config().api.api_key, "my-key")

    @patch.dict(os.environ, {"AUTOFLOW_CORS_ORIGINS": "http://a.com, http://b.com"}, clear=False)
    def test_cors_origins(self):
        self.assertEqual(load_config().api.cors_origins, ["http://a.com", "http://b.com"])

    @patch.dict(os.environ, {"AUTOFLOW_LOG_LEVEL": "debug"}, clear=False)
    def test_log_level_uppercased(self):
        self.assertEqual(load_config().logging.level, "DEBUG")

    @patch.dict(os.environ, {"AUTOFLOW_LOG_FMT": "json"}, clear=False)
    def test_log_format(self):
        self.assertEqual(load_config().logging.format, "json")

    @patch.dict(os.environ, {
        "AUTOFLOW_PROVIDER": "CIRCLE",
        "AUTOFLOW_CIRCLE_API_KEY": "TEST_API_KEY:abc",
        "AUTOFLOW_CIRCLE_ENTITY_SECRET": "ab" * 32,
        "AUTOFLOW_CIRCLE_BASE_URL": "https://api-sandbox.example",
    }, clear=False)
    def test_provider_settings(self):
        p = load_config().provider
        self.assertEqual(p.kind, "circle")
        self.assertEqual(p.api_key, "TEST_API_KEY:abc")
        self.assertEqual(p.entity_secret, "ab" * 32)
        self.assertEqual(p.base_url, "https://api-sandbox.example")

    @patch.dict(os.environ, {"AUTOFLOW_LATENCY_SCALE": "0.25"}, clear=False)
    def test_latency_scale(self):
        self.assertEqual(load_config().simulation.latency_scale, 0.25)

    @patch.dict(os.environ, {"AUTOFLOW_API_PORT": "8888"}, clear=False)
    def test_env_beats_toml(self):
        path = _write_toml("""\
            [api]
            port = 3000
        """)
        try:
            cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertEqual(cfg.api.port, 8888)


if __name__ == "__main__":
    unittest.main()
