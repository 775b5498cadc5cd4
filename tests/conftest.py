"""
Shared pytest fixtures for the AutoFlow test suite.
"""

import random
from decimal import Decimal

import pytest

from autoflow_core.balances import BalanceStateMachine
from autoflow_core.config import AutoFlowConfig
from autoflow_core.ledger import TransactionLedger
from autoflow_core.provider import SimulatedWalletProvider
from autoflow_core.receipt import ReceiptGenerator
from autoflow_core.session import ConnectionSession
from autoflow_core.yield_engine import YieldAccrualEngine


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_790_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    """Deterministic random source."""
    return random.Random(1234)


@pytest.fixture
def ledger(clock, rng):
    """Empty ledger on the fake clock."""
    return TransactionLedger(ReceiptGenerator(rng), clock=clock)


@pytest.fixture
def engine(ledger):
    """Yield engine on the demo principal with 12.50 already accrued."""
    return YieldAccrualEngine(
        ledger, Decimal("789.23"), Decimal("0.052"), initial_accrued=Decimal("12.50")
    )


@pytest.fixture
def machine(ledger, engine, rng):
    """Wallet 500, card 0, no latency, spends always approved, no card gate."""
    return BalanceStateMachine(
        ledger,
        engine,
        Decimal("500.00"),
        Decimal("0.00"),
        rng=rng,
        decline_rate=0.0,
        latency_scale=0.0,
    )


@pytest.fixture
def fast_config():
    """Config with instant commands and no declines."""
    cfg = AutoFlowConfig()
    cfg.simulation.latency_scale = 0.0
    cfg.simulation.decline_rate = 0.0
    cfg.simulation.random_seed = 42
    return cfg


@pytest.fixture
def provider():
    return SimulatedWalletProvider()


@pytest.fixture
def conn(provider, fast_config, clock):
    """Disconnected ConnectionSession over the simulated provider."""
    return ConnectionSession(provider, fast_config, clock=clock)
