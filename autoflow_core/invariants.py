"""
Post-mutation invariant checks for AutoFlow balances.

Run around every balance mutation:
  - No balance (wallet, card, yield pool) goes negative
  - Exactly one ledger entry is appended per mutation
  - The entry's signed amount equals the change of the balance it
    references (wallet for deposits, card for transfers / top-ups,
    card or pool for spends, pool for yield)
  - Value is only created or destroyed by external flows: transfers and
    top-ups leave the total of all three balances unchanged, spends and
    yield move it by the entry amount, deposits by either (yield collected
    to the wallet is internal)

A failure means the code that mutated the balances is wrong, so the
checker reports it rather than trying to repair state.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from autoflow_core.ledger import EntryKind
from autoflow_core.precision import ZERO

# Kinds that only move value between balances.
INTERNAL_KINDS = frozenset({EntryKind.TRANSFER_TO_CARD, EntryKind.TOPUP})


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balances and ledger length before a mutation."""
    wallet: Decimal = ZERO
    card: Decimal = ZERO
    yield_accrued: Decimal = ZERO
    ledger_length: int = 0

    @property
    def total(self) -> Decimal:
        return self.wallet + self.card + self.yield_accrued


class BalanceInvariantChecker:
    """
    Captures a pre-mutation snapshot of a balance state machine and
    validates invariants after the mutation is applied.
    """

    def __init__(self):
        self._snapshot: BalanceSnapshot | None = None

    @staticmethod
    def _take(balances) -> BalanceSnapshot:
        state = balances.state
        return BalanceSnapshot(
            wallet=state.wallet_balance,
            card=state.card_balance,
            yield_accrued=state.yield_accrued,
            ledger_length=len(balances.ledger),
        )

    def capture(self, balances) -> None:
        self._snapshot = self._take(balances)

    def verify(self, balances) -> tuple[bool, str]:
        """Returns ``(passed, error_message)``."""
        if self._snapshot is None:
            return True, ""
        before, after = self._snapshot, self._take(balances)
        self._snapshot = None

        errors: list[str] = []

        for name in ("wallet", "card", "yield_accrued"):
            value = getattr(after, name)
            if value < ZERO:
                errors.append(f"Negative {name} balance: {value}")

        appended = after.ledger_length - before.ledger_length
        if appended != 1:
            errors.append(f"Expected one ledger entry, got {appended}")
            return False, "; ".join(errors)

        entry = balances.ledger.entries[-1]
        amount = entry.signed_amount
        wallet_d = after.wallet - before.wallet
        card_d = after.card - before.card
        pool_d = after.yield_accrued - before.yield_accrued

        if entry.kind is EntryKind.DEPOSIT:
            referenced = wallet_d
        elif entry.kind in (EntryKind.TRANSFER_TO_CARD, EntryKind.TOPUP):
            referenced = card_d
        elif entry.kind is EntryKind.YIELD:
            referenced = pool_d
        else:
            referenced = card_d + pool_d
        if referenced != amount:
            errors.append(
                f"{entry.kind.value} entry {amount} does not match balance change {referenced}"
            )

        total_d = after.total - before.total
        if entry.kind in INTERNAL_KINDS:
            allowed: tuple[Decimal, ...] = (ZERO,)
        elif entry.kind is EntryKind.DEPOSIT:
            # external deposit, or yield collected into the wallet
            allowed = (ZERO, amount)
        else:
            allowed = (amount,)
        if total_d not in allowed:
            errors.append(f"Total balance moved by {total_d} for entry {amount}")

        if errors:
            return False, "; ".join(errors)
        return True, ""
