"""
Error taxonomy for the AutoFlow core.

Expected business-rule failures (bad amount, not enough funds, declined
card, ...) are *returned* as :class:`OperationResult` values carrying an
:class:`ErrorCode`; callers branch on them.  Exceptions are reserved for
defects and for infrastructure failures that the connect flow must
surface (provider unavailable / rejected, no active session).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autoflow_core.ledger import LedgerEntry


class ErrorCode(Enum):
    INVALID_AMOUNT = "InvalidAmount"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    INSUFFICIENT_YIELD = "InsufficientYield"
    CARD_NOT_LINKED = "CardNotLinked"
    DECLINED = "DeclinedTransaction"
    IN_PROGRESS = "OperationInProgress"
    SESSION_ENDED = "SessionEnded"


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a balance command.

    Truthy on success.  ``entry`` is the ledger entry the command
    appended (``None`` on failure).
    """
    ok: bool
    code: ErrorCode | None = None
    message: str = ""
    entry: LedgerEntry | None = None

    @classmethod
    def success(cls, entry: LedgerEntry, message: str = "OK") -> OperationResult:
        return cls(ok=True, entry=entry, message=message)

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> OperationResult:
        return cls(ok=False, code=code, message=message)

    def __bool__(self) -> bool:
        return self.ok

    def to_dict(self) -> dict:
        d: dict = {"ok": self.ok, "message": self.message}
        if self.code is not None:
            d["error"] = self.code.value
        if self.entry is not None:
            d["entry"] = self.entry.to_dict()
        return d


# ── exceptions ──────────────────────────────────────────────────────────

class AutoFlowError(Exception):
    """Base class for every exception raised by the core."""


class InvalidAmountError(AutoFlowError, ValueError):
    """A zero or malformed amount reached the ledger directly."""


class ProviderError(AutoFlowError):
    """The wallet provider could not complete a request."""


class ProviderUnavailable(ProviderError):
    """Transport failure, timeout or provider-side 5xx.  Retryable."""


class ProviderRejected(ProviderError):
    """The provider refused the request (4xx, bad identity, bad payload)."""


class SessionNotFound(AutoFlowError):
    """A command was issued while no session is connected."""


class InvariantViolation(AutoFlowError):
    """A balance mutation broke a ledger/balance invariant."""
