"""
AutoFlow - a client-side wallet / card / yield simulation engine.

Key features:
- Append-only transaction ledger with simulated on-chain receipts
- Non-compounding yield accrual on a fixed demo principal
- Wallet, card and yield balances moved only through audited commands
- One connection session owning the background receipt and yield timers
- Simulated or Circle developer-controlled wallet providers
"""

__version__ = "0.1.0"
__all__ = [
    "precision",
    "errors",
    "receipt",
    "ledger",
    "yield_engine",
    "balances",
    "invariants",
    "scheduler",
    "addresses",
    "provider",
    "session",
    "config",
    "logging_config",
    "api",
]
