"""
Append-only transaction ledger for an AutoFlow session.

Every balance-affecting event becomes a :class:`LedgerEntry`.  Entries are
frozen once appended; only their receipt is swapped for a newer one by
:meth:`TransactionLedger.tick`, which is the sole writer of receipt
transitions after creation.

Reading is done through :meth:`TransactionLedger.view`, which returns the
newest entries grouped by local calendar day, the way the activity feed
shows them.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date, datetime, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterator, Optional

from autoflow_core.errors import InvalidAmountError
from autoflow_core.precision import ZERO, format_signed, quantize
from autoflow_core.receipt import Receipt, ReceiptGenerator

logger = logging.getLogger("autoflow.ledger")

SECONDS_PER_DAY: int = 86_400


class EntryKind(Enum):
    DEPOSIT = "deposit"
    SPEND = "spend"
    TRANSFER_TO_CARD = "transfer"
    YIELD = "yield"
    TOPUP = "topup"


KIND_ACTION_LABELS: dict[EntryKind, str] = {
    EntryKind.DEPOSIT: "Deposit",
    EntryKind.SPEND: "Card Spend",
    EntryKind.TRANSFER_TO_CARD: "Transfer to Card",
    EntryKind.YIELD: "Yield Earned",
    EntryKind.TOPUP: "Add Funds",
}

KIND_RECEIPT_TITLES: dict[EntryKind, str] = {
    EntryKind.DEPOSIT: "Deposit Transaction",
    EntryKind.SPEND: "Card Spend Transaction",
    EntryKind.TRANSFER_TO_CARD: "Transfer Transaction",
    EntryKind.YIELD: "Yield Collection Transaction",
    EntryKind.TOPUP: "Card Topup Transaction",
}


@dataclass(frozen=True)
class LedgerEntry:
    """One immutable record of a balance-affecting event."""
    entry_id: str
    kind: EntryKind
    signed_amount: Decimal
    description: str
    created_at: float
    receipt: Receipt

    @property
    def action_label(self) -> str:
        return KIND_ACTION_LABELS[self.kind]

    @property
    def receipt_title(self) -> str:
        return KIND_RECEIPT_TITLES[self.kind]

    def to_dict(self) -> dict:
        return {
            "id": self.entry_id,
            "kind": self.kind.value,
            "action": self.action_label,
            "amount": f"{self.signed_amount:.2f}",
            "display_amount": format_signed(self.signed_amount),
            "description": self.description,
            "created_at": self.created_at,
            "receipt_title": self.receipt_title,
            "receipt": self.receipt.to_dict(),
        }


@dataclass
class DayBucket:
    """Entries booked on one local calendar day, newest first."""
    day: date
    entries: list[LedgerEntry] = field(default_factory=list)

    @property
    def label(self) -> str:
        # e.g. "Saturday, October 17, 2026"
        return f"{self.day:%A}, {self.day:%B} {self.day.day}, {self.day.year}"

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "label": self.label,
            "entries": [e.to_dict() for e in self.entries],
        }


@dataclass
class LedgerView:
    """Read-only projection of the newest ledger entries."""
    entries: list[LedgerEntry]
    days: list[DayBucket]
    total: int

    @property
    def has_more(self) -> bool:
        return self.total > len(self.entries)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "count": len(self.entries),
            "has_more": self.has_more,
            "days": [b.to_dict() for b in self.days],
            "entries": [e.to_dict() for e in self.entries],
        }


class TransactionLedger:
    """
    Ordered store of :class:`LedgerEntry` objects.

    ``append`` / ``append_historical`` are the only ways entries enter the
    ledger; ``tick`` is the only way receipts change afterwards.
    """

    def __init__(
        self,
        receipts: ReceiptGenerator | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.receipts = receipts or ReceiptGenerator()
        self._clock = clock
        self._entries: list[LedgerEntry] = []
        self._index: dict[str, int] = {}
        self._last_id_ms: int = 0

    # ── internals ───────────────────────────────────────────────────

    def _next_id(self) -> str:
        """Millisecond timestamp, bumped so ids strictly increase."""
        now_ms = int(self._clock() * 1000)
        self._last_id_ms = max(now_ms, self._last_id_ms + 1)
        return str(self._last_id_ms)

    def _insert(self, entry: LedgerEntry) -> LedgerEntry:
        self._index[entry.entry_id] = len(self._entries)
        self._entries.append(entry)
        return entry

    @staticmethod
    def _checked_amount(signed_amount: Decimal) -> Decimal:
        amount = quantize(signed_amount)
        if amount == ZERO:
            raise InvalidAmountError("Ledger entries must have a non-zero amount")
        return amount

    # ── writers ─────────────────────────────────────────────────────

    def append(
        self,
        kind: EntryKind,
        signed_amount: Decimal,
        description: str,
        receipt: Optional[Receipt] = None,
    ) -> LedgerEntry:
        """Book a new entry now.  Raises ``InvalidAmountError`` on zero."""
        amount = self._checked_amount(signed_amount)
        entry = LedgerEntry(
            entry_id=self._next_id(),
            kind=kind,
            signed_amount=amount,
            description=description,
            created_at=self._clock(),
            receipt=receipt if receipt is not None else self.receipts.create(kind),
        )
        logger.debug(f"Appended {kind.value} {amount} ({entry.entry_id})")
        return self._insert(entry)

    def append_historical(
        self,
        kind: EntryKind,
        signed_amount: Decimal,
        description: str,
        age_days: int,
    ) -> LedgerEntry:
        """Book an already-settled entry dated *age_days* in the past."""
        amount = self._checked_amount(signed_amount)
        entry = LedgerEntry(
            entry_id=self._next_id(),
            kind=kind,
            signed_amount=amount,
            description=description,
            created_at=self._clock() - age_days * SECONDS_PER_DAY,
            receipt=self.receipts.create_historical(kind, age_days),
        )
        return self._insert(entry)

    def tick(self) -> int:
        """
        Advance every unsettled receipt one lifecycle step.

        Never raises: a receipt that fails to advance is logged and left
        as it was.  Returns the number of receipts that changed.
        """
        now = self._clock()
        changed = 0
        for pos, entry in enumerate(self._entries):
            try:
                if entry.receipt.is_settled:
                    continue
                advanced = self.receipts.advance(entry.receipt, now - entry.created_at)
            except Exception:
                logger.exception(f"Skipping receipt for entry {entry.entry_id}")
                continue
            if advanced != entry.receipt:
                self._entries[pos] = replace(entry, receipt=advanced)
                changed += 1
        return changed

    def clear(self) -> None:
        self._entries.clear()
        self._index.clear()

    # ── readers ─────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(list(self._entries))

    @property
    def entries(self) -> tuple[LedgerEntry, ...]:
        """Entries in append order."""
        return tuple(self._entries)

    def find_by_id(self, entry_id: str) -> LedgerEntry | None:
        pos = self._index.get(entry_id)
        return self._entries[pos] if pos is not None else None

    def view(
        self,
        limit: int | None = 10,
        group_by_day: bool = True,
        tz: tzinfo | None = None,
    ) -> LedgerView:
        """
        Newest *limit* entries (all when ``None``), sorted by ``created_at``
        descending.  When *group_by_day* is set the entries are also
        bucketed by calendar day in *tz* (local time when ``None``).
        """
        ordered = sorted(
            self._entries,
            key=lambda e: (e.created_at, int(e.entry_id)),
            reverse=True,
        )
        if limit is not None:
            ordered = ordered[:max(0, limit)]

        days: list[DayBucket] = []
        if group_by_day:
            buckets: dict[date, DayBucket] = {}
            for entry in ordered:
                day = datetime.fromtimestamp(entry.created_at, tz).date()
                if day not in buckets:
                    buckets[day] = DayBucket(day)
                    days.append(buckets[day])
                buckets[day].entries.append(entry)
        return LedgerView(entries=ordered, days=days, total=len(self._entries))

    def summary(self) -> dict:
        """Totals per kind plus headline yield / spend figures."""
        totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
        counts: dict[str, int] = defaultdict(int)
        for entry in self._entries:
            totals[entry.kind.value] += entry.signed_amount
            counts[entry.kind.value] += 1
        return {
            "entries": len(self._entries),
            "by_kind": {
                k: {"count": counts[k], "total": f"{totals[k]:.2f}"}
                for k in sorted(totals)
            },
            "yield_earned": f"{totals[EntryKind.YIELD.value]:.2f}",
            "total_spent": f"{-totals[EntryKind.SPEND.value]:.2f}",
            "pending": sum(1 for e in self._entries if not e.receipt.is_settled),
        }
