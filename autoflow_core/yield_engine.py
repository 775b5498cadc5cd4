"""
Simulated yield accrual for AutoFlow.

Yield is simple (non-compounding) daily interest on a fixed demo
principal, decoupled from the spendable wallet balance so that spending
never feeds back into future yield:

    daily   = principal × annual_rate / 365
    weekly  = principal × annual_rate / 52
    monthly = principal × annual_rate / 12
    annual  = principal × annual_rate

Each accrual tick (every 60 s in the demo cadence) posts one day's worth
of yield, rounded to cents, to the yield pool and to the ledger.  Money
leaves the pool through three doors: collected to the wallet, collected
to the card, or spent directly.  The engine owns the pool; the
:class:`~autoflow_core.balances.BalanceStateMachine` owns the ledger
append for each withdrawal so it is booked exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from autoflow_core.errors import ErrorCode, OperationResult
from autoflow_core.ledger import EntryKind, LedgerEntry, TransactionLedger
from autoflow_core.precision import ZERO, is_positive_amount, parse_amount, quantize

if TYPE_CHECKING:
    from autoflow_core.balances import BalanceStateMachine

logger = logging.getLogger("autoflow.yield")

DEFAULT_ANNUAL_RATE: Decimal = Decimal("0.052")
DEFAULT_ACCRUAL_INTERVAL: float = 60.0

# Quick-spend presets offered next to the direct-yield spend form.
SPEND_PRESETS: dict[str, tuple[str, Decimal]] = {
    "coffee": ("Coffee", Decimal("3.50")),
    "food": ("Lunch", Decimal("12.00")),
    "shopping": ("Shopping", Decimal("25.00")),
}


# ── pure helpers ────────────────────────────────────────────────────────

def daily_yield(principal: Decimal, annual_rate: Decimal) -> Decimal:
    return Decimal(principal) * Decimal(annual_rate) / 365


def weekly_yield(principal: Decimal, annual_rate: Decimal) -> Decimal:
    return Decimal(principal) * Decimal(annual_rate) / 52


def monthly_yield(principal: Decimal, annual_rate: Decimal) -> Decimal:
    return Decimal(principal) * Decimal(annual_rate) / 12


def annual_yield(principal: Decimal, annual_rate: Decimal) -> Decimal:
    return Decimal(principal) * Decimal(annual_rate)


@dataclass(frozen=True)
class YieldProjection:
    principal: Decimal
    annual_rate: Decimal
    daily: Decimal
    weekly: Decimal
    monthly: Decimal
    annual: Decimal

    @classmethod
    def for_principal(cls, principal: Decimal, annual_rate: Decimal) -> YieldProjection:
        return cls(
            principal=quantize(principal),
            annual_rate=Decimal(annual_rate),
            daily=quantize(daily_yield(principal, annual_rate)),
            weekly=quantize(weekly_yield(principal, annual_rate)),
            monthly=quantize(monthly_yield(principal, annual_rate)),
            annual=quantize(annual_yield(principal, annual_rate)),
        )

    def to_dict(self) -> dict:
        return {
            "principal": f"{self.principal:.2f}",
            "apy_pct": f"{self.annual_rate * 100:.1f}%",
            "daily": f"{self.daily:.2f}",
            "weekly": f"{self.weekly:.2f}",
            "monthly": f"{self.monthly:.2f}",
            "annual": f"{self.annual:.2f}",
        }


# ── engine ──────────────────────────────────────────────────────────────

class YieldAccrualEngine:
    """Owns the yield pool (``yield_accrued``) for one session."""

    def __init__(
        self,
        ledger: TransactionLedger,
        principal: Decimal,
        annual_rate: Decimal = DEFAULT_ANNUAL_RATE,
        accrual_interval_seconds: float = DEFAULT_ACCRUAL_INTERVAL,
        initial_accrued: Decimal = ZERO,
    ):
        if principal < 0:
            raise ValueError("principal must be non-negative")
        if accrual_interval_seconds <= 0:
            raise ValueError("accrual interval must be positive")
        self.ledger = ledger
        self.principal = quantize(principal)
        self.annual_rate = Decimal(annual_rate)
        self.accrual_interval_seconds = accrual_interval_seconds
        self._accrued = quantize(initial_accrued)
        self._balances: BalanceStateMachine | None = None
        self._closed = False

    @classmethod
    def with_backfill(
        cls,
        ledger: TransactionLedger,
        principal: Decimal,
        annual_rate: Decimal = DEFAULT_ANNUAL_RATE,
        days: int = 14,
        accrual_interval_seconds: float = DEFAULT_ACCRUAL_INTERVAL,
    ) -> YieldAccrualEngine:
        """Engine whose pool already holds *days* of unposted accrual."""
        backfill = quantize(daily_yield(principal, annual_rate) * days)
        return cls(ledger, principal, annual_rate, accrual_interval_seconds, backfill)

    # ── wiring ──────────────────────────────────────────────────────

    def bind(self, balances: BalanceStateMachine) -> None:
        self._balances = balances

    def close(self) -> None:
        """Stop accruing; later ticks are no-ops."""
        self._closed = True

    # ── queries ─────────────────────────────────────────────────────

    @property
    def yield_accrued(self) -> Decimal:
        return self._accrued

    @property
    def per_tick_amount(self) -> Decimal:
        return quantize(daily_yield(self.principal, self.annual_rate))

    def projection(self) -> YieldProjection:
        return YieldProjection.for_principal(self.principal, self.annual_rate)

    # ── accrual ─────────────────────────────────────────────────────

    def tick(self) -> Optional[LedgerEntry]:
        """Post one day's yield.  Returns the entry, or None if skipped."""
        if self._closed:
            return None
        amount = self.per_tick_amount
        if amount == ZERO:
            logger.debug("Accrual rounds to zero, skipping tick")
            return None
        self._accrued += amount
        entry = self.ledger.append(EntryKind.YIELD, amount, "Daily yield earned")
        logger.debug(f"Accrued {amount} (pool {self._accrued})")
        return entry

    # ── withdrawals ─────────────────────────────────────────────────

    def _check(self, amount) -> tuple[Decimal | None, OperationResult | None]:
        if self._balances is None:
            raise RuntimeError("YieldAccrualEngine is not bound to a BalanceStateMachine")
        value = parse_amount(amount)
        if not is_positive_amount(value):
            return None, OperationResult.failure(
                ErrorCode.INVALID_AMOUNT, "Amount must be a positive number"
            )
        if value > self._accrued:
            return None, OperationResult.failure(
                ErrorCode.INSUFFICIENT_YIELD,
                f"Insufficient yield: have {self._accrued}, need {value}",
            )
        return value, None

    def _withdraw(self, amount, target: str, label: str | None = None) -> OperationResult:
        value, failure = self._check(amount)
        if failure is not None:
            return failure
        blocked = self._balances.yield_target_error(target)
        if blocked is not None:
            return blocked

        def debit() -> None:
            self._accrued -= value

        return self._balances.apply_yield_withdrawal(target, value, debit, label)

    def collect_to_wallet(self, amount=None) -> OperationResult:
        """Move *amount* (everything when ``None``) from the pool to the wallet."""
        return self._withdraw(self._accrued if amount is None else amount, "wallet")

    def collect_to_card(self, amount) -> OperationResult:
        return self._withdraw(amount, "card")

    def spend_directly(self, amount, label: str | None = None) -> OperationResult:
        return self._withdraw(amount, "spend", label)
