"""
Simulated on-chain receipts for AutoFlow ledger entries.

No chain is touched.  Each ledger entry carries a :class:`Receipt` whose
fields look like a real EVM transaction and whose status is walked
forward by the ledger's background tick:

    pending ──(age ≥ 15 s)──► processing ──(6 confs)──► confirmed ──► … 12 confs

Card spends settle on Polygon (cheap path); everything else settles on
Ethereum.  Receipts are immutable; :meth:`ReceiptGenerator.advance`
returns a new one.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, replace
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from autoflow_core.ledger import EntryKind


class ReceiptStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"


# Forward-only ordering used by monotonicity checks.
STATUS_ORDER: dict[ReceiptStatus, int] = {
    ReceiptStatus.PENDING: 0,
    ReceiptStatus.PROCESSING: 1,
    ReceiptStatus.CONFIRMED: 2,
}

# ── Lifecycle parameters ────────────────────────────────────────────────

PROCESSING_DELAY_SECONDS: float = 15.0
CONFIRMATIONS_TO_CONFIRM: int = 6
CONFIRMATIONS_SETTLED: int = 12

# ── Synthetic chain parameters ─────────────────────────────────────────

GAS_USED_MIN: int = 21_000
GAS_USED_SPAN: int = 100_000            # gas_used ∈ [21 000, 121 000)
GAS_PRICE_MIN_GWEI: float = 10.0
GAS_PRICE_SPAN_GWEI: float = 20.0       # gas_price ∈ [10, 30) gwei
BLOCK_NUMBER_MIN: int = 15_000_000
BLOCK_NUMBER_SPAN: int = 1_000_000
GWEI_PER_NATIVE: Decimal = Decimal(10) ** 9

NETWORK_CURRENCY: dict[str, str] = {
    "Ethereum": "ETH",
    "Polygon": "MATIC",
}

EXPLORER_TX_URL: dict[str, str] = {
    "Ethereum": "https://etherscan.io/tx/{}",
    "Polygon": "https://polygonscan.com/tx/{}",
}


def short_address(address: str) -> str:
    """``0x1234...abcd`` form used in receipts and the session header."""
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


@dataclass(frozen=True)
class Receipt:
    """Settlement metadata for one ledger entry."""
    tx_hash: str
    from_address: str
    to_address: str
    network: str
    currency: str
    gas_used: int
    gas_price_gwei: Decimal
    fee_in_currency: Decimal
    block_number: Optional[int] = None
    confirmations: int = 0
    status: ReceiptStatus = ReceiptStatus.PENDING

    @property
    def is_settled(self) -> bool:
        """Confirmed and past the cosmetic confirmation count."""
        return (
            self.status is ReceiptStatus.CONFIRMED
            and self.confirmations >= CONFIRMATIONS_SETTLED
        )

    @property
    def display_status(self) -> str:
        # A freshly confirmed tx still reads "Processing" in the feed
        # until it has the full six confirmations behind it.
        if self.status is ReceiptStatus.PENDING:
            return "Pending"
        if self.confirmations < CONFIRMATIONS_TO_CONFIRM:
            return "Processing"
        return "Confirmed"

    @property
    def explorer_url(self) -> str:
        template = EXPLORER_TX_URL.get(self.network, EXPLORER_TX_URL["Ethereum"])
        return template.format(self.tx_hash)

    def to_dict(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "network": self.network,
            "currency": self.currency,
            "gas_used": self.gas_used,
            "gas_price_gwei": f"{self.gas_price_gwei:.2f}",
            "fee": f"{self.fee_in_currency:.6f}",
            "block_number": self.block_number,
            "confirmations": self.confirmations,
            "status": self.status.value,
            "display_status": self.display_status,
            "explorer_url": self.explorer_url,
        }


class ReceiptGenerator:
    """
    Produces and advances :class:`Receipt` objects.

    The random source is injectable so tests can pin hashes, gas figures
    and block numbers.
    """

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    # ── random helpers ──────────────────────────────────────────────

    def _hex(self, n_bytes: int) -> str:
        return f"0x{self.rng.getrandbits(n_bytes * 8):0{n_bytes * 2}x}"

    def _block_number(self) -> int:
        return BLOCK_NUMBER_MIN + self.rng.randrange(BLOCK_NUMBER_SPAN)

    @staticmethod
    def network_for(kind: EntryKind) -> str:
        from autoflow_core.ledger import EntryKind
        return "Polygon" if kind is EntryKind.SPEND else "Ethereum"

    # ── public API ──────────────────────────────────────────────────

    def create(self, kind: EntryKind) -> Receipt:
        """Fresh pending receipt for a just-booked entry."""
        network = self.network_for(kind)
        gas_used = GAS_USED_MIN + self.rng.randrange(GAS_USED_SPAN)
        gas_price = Decimal(
            str(GAS_PRICE_MIN_GWEI + self.rng.random() * GAS_PRICE_SPAN_GWEI)
        ).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
        return Receipt(
            tx_hash=self._hex(32),
            from_address=self._hex(20),
            to_address=self._hex(20),
            network=network,
            currency=NETWORK_CURRENCY[network],
            gas_used=gas_used,
            gas_price_gwei=gas_price,
            fee_in_currency=gas_used * gas_price / GWEI_PER_NATIVE,
        )

    def create_historical(self, kind: EntryKind, age_days: int) -> Receipt:
        """Already-settled receipt for seeded history entries."""
        base = self.create(kind)
        return replace(
            base,
            status=ReceiptStatus.CONFIRMED,
            block_number=self._block_number(),
            confirmations=min(CONFIRMATIONS_SETTLED, (age_days + 1) * 2),
        )

    def advance(self, receipt: Receipt, entry_age: float) -> Receipt:
        """
        One lifecycle step.  Safe to call on every timer tick: a receipt
        never loses confirmations and its status never moves backward.
        """
        if receipt.status is ReceiptStatus.PENDING:
            if entry_age < PROCESSING_DELAY_SECONDS:
                return receipt
            return replace(
                receipt,
                status=ReceiptStatus.PROCESSING,
                block_number=self._block_number(),
                confirmations=max(receipt.confirmations, 1),
            )

        if receipt.status is ReceiptStatus.PROCESSING:
            confirmations = receipt.confirmations + 1
            status = (
                ReceiptStatus.CONFIRMED
                if confirmations >= CONFIRMATIONS_TO_CONFIRM
                else ReceiptStatus.PROCESSING
            )
            return replace(receipt, confirmations=confirmations, status=status)

        if receipt.confirmations < CONFIRMATIONS_SETTLED:
            return replace(receipt, confirmations=receipt.confirmations + 1)
        return receipt
