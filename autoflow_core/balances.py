"""
Balance state machine for an AutoFlow session.

The :class:`BalanceStateMachine` is the single writer of the wallet and
card balances and the single place ledger entries are booked for user
commands.  Every command follows the same shape:

  1. validate the amount and the preconditions
  2. mark the operation busy and sleep the simulated network latency
  3. drop the result if the session ended meanwhile
  4. re-check the preconditions, then mutate and append **without an
     intervening await**, so each command is atomic on the event loop

Card spends go through a small approval state machine:

    Idle ──► Processing ──┬─► Approved   (balance debited, entry booked)
                          └─► Declined   (nothing changes)
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from autoflow_core.errors import ErrorCode, InvariantViolation, OperationResult
from autoflow_core.invariants import BalanceInvariantChecker
from autoflow_core.ledger import EntryKind, TransactionLedger
from autoflow_core.precision import ZERO, display_amount, is_positive_amount, parse_amount, quantize

if TYPE_CHECKING:
    from autoflow_core.session import CardLink
    from autoflow_core.yield_engine import YieldAccrualEngine

logger = logging.getLogger("autoflow.balances")

# Simulated provider round-trip per command (seconds, before scaling).
OPERATION_LATENCY: dict[str, float] = {
    "deposit": 1.5,
    "transfer": 1.5,
    "topup": 1.0,
    "spend": 2.0,
    "yield_spend": 1.5,
    "yield_collect": 1.5,
}

DEFAULT_DECLINE_RATE: float = 0.10


def _first_failure(*results: OperationResult | None) -> OperationResult | None:
    """First non-``None`` result.  Failures are falsy, so ``or`` cannot chain them."""
    for result in results:
        if result is not None:
            return result
    return None


class SpendState(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    APPROVED = "approved"
    DECLINED = "declined"


@dataclass(frozen=True)
class BalanceState:
    """Point-in-time copy of the three session balances."""
    wallet_balance: Decimal = ZERO
    card_balance: Decimal = ZERO
    yield_accrued: Decimal = ZERO

    def display(self, floor: Decimal = ZERO) -> BalanceState:
        """Copy with every figure floored for presentation."""
        return BalanceState(
            wallet_balance=display_amount(self.wallet_balance, floor),
            card_balance=display_amount(self.card_balance, floor),
            yield_accrued=display_amount(self.yield_accrued, floor),
        )

    def to_dict(self) -> dict:
        return {
            "wallet_balance": f"{self.wallet_balance:.2f}",
            "card_balance": f"{self.card_balance:.2f}",
            "yield_accrued": f"{self.yield_accrued:.2f}",
        }


class BalanceStateMachine:
    """Wallet / card balances plus the commands that move them."""

    def __init__(
        self,
        ledger: TransactionLedger,
        yield_engine: YieldAccrualEngine,
        wallet_balance: Decimal = ZERO,
        card_balance: Decimal = ZERO,
        *,
        card: Optional[Callable[[], Optional[CardLink]]] = None,
        rng: random.Random | None = None,
        decline_rate: float = DEFAULT_DECLINE_RATE,
        latency_scale: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if wallet_balance < 0 or card_balance < 0:
            raise ValueError("Initial balances must be non-negative")
        if not 0.0 <= decline_rate <= 1.0:
            raise ValueError("decline_rate must be within [0, 1]")
        self.ledger = ledger
        self.yield_engine = yield_engine
        self._wallet = quantize(wallet_balance)
        self._card = quantize(card_balance)
        self._card_lookup = card
        self.rng = rng or random.Random()
        self.decline_rate = decline_rate
        self.latency_scale = latency_scale
        self._sleep = sleep
        self._in_flight: set[str] = set()
        self._closed = False
        self._checker = BalanceInvariantChecker()
        self.spend_state = SpendState.IDLE
        yield_engine.bind(self)

    # ── queries ─────────────────────────────────────────────────────

    @property
    def wallet_balance(self) -> Decimal:
        return self._wallet

    @property
    def card_balance(self) -> Decimal:
        return self._card

    @property
    def state(self) -> BalanceState:
        return BalanceState(self._wallet, self._card, self.yield_engine.yield_accrued)

    @property
    def closed(self) -> bool:
        return self._closed

    def is_busy(self, operation: str | None = None) -> bool:
        if operation is None:
            return bool(self._in_flight)
        return operation in self._in_flight

    def close(self) -> None:
        """Mark the owning session as gone; in-flight results are dropped."""
        self._closed = True

    # ── precondition helpers ────────────────────────────────────────

    def _card_error(self) -> OperationResult | None:
        if self._card_lookup is None:
            return None
        card = self._card_lookup()
        if card is None or not card.is_linked:
            return OperationResult.failure(ErrorCode.CARD_NOT_LINKED, "Link a card first")
        if not card.is_active:
            return OperationResult.failure(
                ErrorCode.CARD_NOT_LINKED, f"Card is {card.status.value}"
            )
        return None

    def _need_wallet(self, amount: Decimal) -> OperationResult | None:
        if self._wallet < amount:
            return OperationResult.failure(
                ErrorCode.INSUFFICIENT_FUNDS,
                f"Insufficient wallet balance: have {self._wallet}, need {amount}",
            )
        return None

    def _need_card(self, amount: Decimal) -> OperationResult | None:
        if self._card < amount:
            return OperationResult.failure(
                ErrorCode.INSUFFICIENT_FUNDS,
                f"Insufficient card balance: have {self._card}, need {amount}",
            )
        return None

    def _need_yield(self, amount: Decimal) -> OperationResult | None:
        accrued = self.yield_engine.yield_accrued
        if accrued < amount:
            return OperationResult.failure(
                ErrorCode.INSUFFICIENT_YIELD,
                f"Insufficient yield: have {accrued}, need {amount}",
            )
        return None

    def yield_target_error(self, target: str) -> OperationResult | None:
        """Called by the yield engine before it debits the pool."""
        if self._closed:
            return OperationResult.failure(ErrorCode.SESSION_ENDED, "Session has ended")
        if target == "card":
            return self._card_error()
        return None

    # ── command pipeline ────────────────────────────────────────────

    async def _run(
        self,
        operation: str,
        amount,
        precheck: Callable[[Decimal], OperationResult | None],
        apply: Callable[[Decimal], OperationResult],
        on_start: Callable[[], None] | None = None,
    ) -> OperationResult:
        if self._closed:
            return OperationResult.failure(ErrorCode.SESSION_ENDED, "Session has ended")
        if operation in self._in_flight:
            return OperationResult.failure(
                ErrorCode.IN_PROGRESS, f"A {operation} is already in progress"
            )
        value = parse_amount(amount)
        if not is_positive_amount(value):
            return OperationResult.failure(
                ErrorCode.INVALID_AMOUNT, "Amount must be a positive number"
            )
        failure = precheck(value)
        if failure is not None:
            return failure

        self._in_flight.add(operation)
        if on_start is not None:
            on_start()
        try:
            await self._sleep(OPERATION_LATENCY[operation] * self.latency_scale)
        finally:
            self._in_flight.discard(operation)

        if self._closed:
            logger.info(f"Discarding {operation} of {value}: session ended while in flight")
            return OperationResult.failure(ErrorCode.SESSION_ENDED, "Session has ended")
        failure = precheck(value)
        if failure is not None:
            return failure
        return apply(value)

    def _commit(
        self,
        kind: EntryKind,
        signed_amount: Decimal,
        description: str,
        mutate: Callable[[], None],
    ) -> OperationResult:
        """Mutate balances and book the matching entry as one step."""
        self._checker.capture(self)
        mutate()
        entry = self.ledger.append(kind, signed_amount, description)
        ok, msg = self._checker.verify(self)
        if not ok:
            logger.error(f"Invariant violation after {kind.value}: {msg}")
            raise InvariantViolation(msg)
        return OperationResult.success(entry)

    # ── wallet / card commands ──────────────────────────────────────

    async def deposit(self, amount, asset_label: str = "USDC") -> OperationResult:
        def apply(value: Decimal) -> OperationResult:
            def mutate() -> None:
                self._wallet += value
            return self._commit(EntryKind.DEPOSIT, value, f"Deposited {asset_label}", mutate)

        return await self._run("deposit", amount, lambda v: None, apply)

    def _move_to_card(self, kind: EntryKind, description: str):
        def apply(value: Decimal) -> OperationResult:
            def mutate() -> None:
                self._wallet -= value
                self._card += value
            return self._commit(kind, value, description, mutate)
        return apply

    def _wallet_to_card_precheck(self, value: Decimal) -> OperationResult | None:
        return _first_failure(self._card_error(), self._need_wallet(value))

    async def transfer_to_card(self, amount) -> OperationResult:
        return await self._run(
            "transfer",
            amount,
            self._wallet_to_card_precheck,
            self._move_to_card(EntryKind.TRANSFER_TO_CARD, "Transferred wallet→card"),
        )

    async def top_up_card(self, amount) -> OperationResult:
        # Same movement as transfer_to_card; only the ledger kind differs.
        return await self._run(
            "topup",
            amount,
            self._wallet_to_card_precheck,
            self._move_to_card(EntryKind.TOPUP, "Added funds to card"),
        )

    async def spend_from_card(self, amount, merchant: str | None = None) -> OperationResult:
        description = f"Card purchase: {merchant}" if merchant else "Card purchase"

        def precheck(value: Decimal) -> OperationResult | None:
            return _first_failure(self._card_error(), self._need_card(value))

        def apply(value: Decimal) -> OperationResult:
            approved = self.rng.random() >= self.decline_rate
            if not approved:
                self.spend_state = SpendState.DECLINED
                logger.info(f"Card spend of {value} declined")
                return OperationResult.failure(
                    ErrorCode.DECLINED, "Transaction declined by card network"
                )
            self.spend_state = SpendState.APPROVED

            def mutate() -> None:
                self._card -= value
            return self._commit(EntryKind.SPEND, -value, description, mutate)

        started = False

        def begin() -> None:
            nonlocal started
            started = True
            self.spend_state = SpendState.PROCESSING

        result = await self._run("spend", amount, precheck, apply, on_start=begin)
        if started and self.spend_state is SpendState.PROCESSING:
            # dropped after the network delay (session ended or funds gone)
            self.spend_state = SpendState.IDLE
        return result

    # ── yield commands ──────────────────────────────────────────────

    async def spend_yield_directly(self, amount, label: str | None = None) -> OperationResult:
        return await self._run(
            "yield_spend",
            amount,
            self._need_yield,
            lambda v: self.yield_engine.spend_directly(v, label),
        )

    async def collect_yield_to_card(self, amount) -> OperationResult:
        return await self._run(
            "yield_collect",
            amount,
            lambda v: _first_failure(self._card_error(), self._need_yield(v)),
            self.yield_engine.collect_to_card,
        )

    async def collect_yield_to_wallet(self, amount=None) -> OperationResult:
        if amount is None:
            amount = self.yield_engine.yield_accrued
        return await self._run(
            "yield_collect",
            amount,
            self._need_yield,
            self.yield_engine.collect_to_wallet,
        )

    def apply_yield_withdrawal(
        self,
        target: str,
        value: Decimal,
        debit: Callable[[], None],
        label: str | None = None,
    ) -> OperationResult:
        """Book a yield-pool withdrawal the engine has already validated."""
        if target == "wallet":
            def mutate() -> None:
                debit()
                self._wallet += value
            return self._commit(EntryKind.DEPOSIT, value, "Collected yield to wallet", mutate)

        if target == "card":
            def mutate() -> None:
                debit()
                self._card += value
            return self._commit(EntryKind.TRANSFER_TO_CARD, value, "Moved earnings to card", mutate)

        if target == "spend":
            description = f"Direct yield spend: {label}" if label else "Direct yield spend"
            return self._commit(EntryKind.SPEND, -value, description, debit)

        raise ValueError(f"Unknown yield withdrawal target: {target}")
