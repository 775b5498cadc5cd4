"""
Connection session: the lifecycle owner of one connected user.

    connect(provider, identity)
        │
        ├─► WalletProvider.create_wallet / address check
        ├─► seed TransactionLedger with ~30 days of settled history
        ├─► YieldAccrualEngine (demo principal, 14 days pre-accrued)
        ├─► BalanceStateMachine (seeded wallet, card balances)
        └─► PeriodicTask  receipts every 15 s, yield every 60 s
                │
    disconnect()┘  cancel timers → close components → clear ledger

Exactly one :class:`Session` is live per :class:`ConnectionSession`.
Every query and command issued without one raises ``SessionNotFound``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from autoflow_core.addresses import to_checksum_address
from autoflow_core.balances import BalanceState, BalanceStateMachine
from autoflow_core.config import AutoFlowConfig
from autoflow_core.errors import ErrorCode, OperationResult, ProviderError, ProviderRejected, SessionNotFound
from autoflow_core.ledger import EntryKind, LedgerEntry, LedgerView, TransactionLedger
from autoflow_core.precision import ZERO, display_amount, quantize
from autoflow_core.provider import SimulatedWalletProvider, WalletProvider, WalletRef
from autoflow_core.receipt import ReceiptGenerator
from autoflow_core.scheduler import PeriodicTask
from autoflow_core.yield_engine import SPEND_PRESETS, YieldAccrualEngine, YieldProjection

logger = logging.getLogger("autoflow.session")


class AuthProvider(Enum):
    CUSTODIAL = "circle"
    EXTERNAL_SIGNER = "metamask"


class CardStatus(Enum):
    ACTIVE = "active"
    PENDING = "pending"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class CardLink:
    is_linked: bool = False
    last_four: str = ""
    credit_limit: Decimal = ZERO
    status: CardStatus = CardStatus.PENDING

    @property
    def is_active(self) -> bool:
        return self.is_linked and self.status is CardStatus.ACTIVE

    def available_credit(self, card_balance: Decimal) -> Decimal:
        return max(ZERO, quantize(self.credit_limit - card_balance))

    def to_dict(self) -> dict:
        return {
            "is_linked": self.is_linked,
            "last_four": self.last_four,
            "credit_limit": f"{self.credit_limit:.2f}",
            "status": self.status.value,
        }


@dataclass(frozen=True)
class Session:
    user_address: str
    auth_provider: AuthProvider
    identity: str
    card_link: Optional[CardLink] = None
    wallet_ref: Optional[WalletRef] = None
    created_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "user_address": self.user_address,
            "auth_provider": self.auth_provider.value,
            "identity": self.identity,
            "card_link": self.card_link.to_dict() if self.card_link else None,
            "wallet": self.wallet_ref.to_dict() if self.wallet_ref else None,
            "created_at": self.created_at,
        }


# ── demo seed data ──────────────────────────────────────────────────────

CUSTODIAL_CARD_LIMIT = Decimal("800.00")
CUSTODIAL_CARD_BALANCE_NEW = Decimal("650.00")
CUSTODIAL_CARD_BALANCE_EXISTING = Decimal("450.00")

EXTERNAL_CARD_LIMIT = Decimal("950.00")
EXTERNAL_CARD_BALANCE = Decimal("847.32")
EXTERNAL_CARD_LAST_FOUR = "1234"

# (kind, signed amount, description, age in days)
CUSTODIAL_HISTORY: tuple[tuple[EntryKind, str, str, int], ...] = (
    (EntryKind.DEPOSIT, "650.00", "Initial deposit", 30),
    (EntryKind.YIELD, "4.32", "Interest earned", 7),
)

EXTERNAL_HISTORY: tuple[tuple[EntryKind, str, str, int], ...] = (
    (EntryKind.DEPOSIT, "750.00", "Initial deposit", 30),
    (EntryKind.YIELD, "3.29", "Weekly yield earned", 25),
    (EntryKind.SPEND, "-78.45", "Online shopping purchase", 20),
    (EntryKind.YIELD, "3.12", "Weekly yield earned", 18),
    (EntryKind.TRANSFER_TO_CARD, "50.00", "Transferred earnings to card", 15),
    (EntryKind.SPEND, "-4.75", "Coffee shop purchase", 10),
    (EntryKind.YIELD, "3.24", "Weekly yield earned", 7),
    (EntryKind.SPEND, "-22.50", "Restaurant purchase", 3),
    (EntryKind.YIELD, "0.42", "Daily yield earned", 1),
)


class ConnectionSession:
    """
    Owns the live :class:`Session` and the four components wired to it.

    Parameters
    ----------
    provider : WalletProvider
        Used for custodial wallet creation and balance reads.
    config : AutoFlowConfig
        Seeds, timer cadence, latency and decline rate.
    rng : random.Random, optional
        Shared by receipts, declines and the card pre-link roll.
    clock : callable
        Wall clock in seconds; injected for tests.
    """

    def __init__(
        self,
        provider: WalletProvider | None = None,
        config: AutoFlowConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or AutoFlowConfig()
        self.provider = provider or SimulatedWalletProvider()
        seed = self.config.simulation.random_seed
        self.rng = rng or random.Random(seed)
        self._clock = clock

        self._session: Session | None = None
        self._ledger: TransactionLedger | None = None
        self._engine: YieldAccrualEngine | None = None
        self._balances: BalanceStateMachine | None = None
        self._timers: list[PeriodicTask] = []
        self._last_provider_balance: Decimal | None = None
        self._lifecycle = asyncio.Lock()
        self._balance_fetch_in_flight = False

    # ── lifecycle ───────────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._session is not None

    @property
    def timers(self) -> tuple[PeriodicTask, ...]:
        return tuple(self._timers)

    async def connect(
        self,
        auth_provider: AuthProvider | str,
        identity: str,
        existing_user: bool = False,
    ) -> Session:
        """
        Bind a user and start the background timers.

        Raises ``ProviderUnavailable`` / ``ProviderRejected``; on failure any
        previous session is left untouched and no new state is kept.
        """
        auth_provider = AuthProvider(auth_provider)
        seed = self.config.seed

        if auth_provider is AuthProvider.CUSTODIAL:
            ref = await self.provider.create_wallet(identity)
            address = ref.address
            wallet_seed = seed.custodial_wallet_balance
        else:
            try:
                address = to_checksum_address((identity or "").strip())
            except ValueError as exc:
                raise ProviderRejected(f"Invalid signer address: {identity!r}") from exc
            ref = None
            wallet_seed = seed.external_wallet_balance

        wallet_balance = wallet_seed
        fetched: Decimal | None = None
        if ref is not None:
            try:
                fetched = await self.provider.fetch_balance(ref)
            except ProviderError as exc:
                logger.warning(f"Balance fetch failed on connect, using seed: {exc}")
            else:
                if fetched > ZERO:
                    wallet_balance = fetched

        card, card_balance, history = self._seed_card(auth_provider, existing_user)

        ledger = TransactionLedger(ReceiptGenerator(self.rng), clock=self._clock)
        if seed.history:
            for kind, amount, description, age_days in history:
                ledger.append_historical(kind, Decimal(amount), description, age_days)

        engine = YieldAccrualEngine.with_backfill(
            ledger,
            seed.principal,
            seed.annual_rate,
            days=seed.initial_accrual_days,
            accrual_interval_seconds=self.config.simulation.yield_tick_seconds,
        )
        balances = BalanceStateMachine(
            ledger,
            engine,
            wallet_balance,
            card_balance,
            card=self._current_card,
            rng=self.rng,
            decline_rate=self.config.simulation.decline_rate,
            latency_scale=self.config.simulation.latency_scale,
        )
        session = Session(
            user_address=address,
            auth_provider=auth_provider,
            identity=identity,
            card_link=card,
            wallet_ref=ref,
            created_at=self._clock(),
        )

        # Swapping sessions awaits timer shutdown; the lock keeps a second
        # connect from installing its timers in that gap.
        async with self._lifecycle:
            if self._session is not None:
                await self._teardown()

            self._session = session
            self._last_provider_balance = fetched
            self._ledger = ledger
            self._engine = engine
            self._balances = balances
            self._timers = [
                PeriodicTask("receipts", self.config.simulation.receipt_tick_seconds, ledger.tick),
                PeriodicTask("yield", self.config.simulation.yield_tick_seconds, engine.tick),
            ]
            for timer in self._timers:
                timer.start()

        logger.info(
            f"Connected {address} via {auth_provider.value} "
            f"(wallet {wallet_balance}, card {'linked' if card and card.is_linked else 'none'})",
            extra={"session": address},
        )
        return session

    def _seed_card(
        self, auth_provider: AuthProvider, existing_user: bool
    ) -> tuple[CardLink | None, Decimal, tuple]:
        if auth_provider is AuthProvider.CUSTODIAL:
            card = CardLink(
                is_linked=True,
                last_four="9876" if existing_user else "5432",
                credit_limit=CUSTODIAL_CARD_LIMIT,
                status=CardStatus.ACTIVE,
            )
            balance = CUSTODIAL_CARD_BALANCE_EXISTING if existing_user else CUSTODIAL_CARD_BALANCE_NEW
            return card, balance, CUSTODIAL_HISTORY

        if self.rng.random() < self.config.seed.external_card_link_probability:
            card = CardLink(
                is_linked=True,
                last_four=EXTERNAL_CARD_LAST_FOUR,
                credit_limit=EXTERNAL_CARD_LIMIT,
                status=CardStatus.ACTIVE,
            )
            return card, EXTERNAL_CARD_BALANCE, EXTERNAL_HISTORY
        return None, ZERO, EXTERNAL_HISTORY

    async def disconnect(self) -> None:
        """Stop the timers, then drop every piece of session state."""
        async with self._lifecycle:
            await self._teardown()

    async def _teardown(self) -> None:
        if self._session is None:
            return
        for timer in self._timers:
            timer.cancel()
        timers, self._timers = self._timers, []

        if self._balances is not None:
            self._balances.close()
        if self._engine is not None:
            self._engine.close()
        if self._ledger is not None:
            self._ledger.clear()

        address = self._session.user_address
        self._session = None
        self._ledger = None
        self._engine = None
        self._balances = None
        self._last_provider_balance = None

        for timer in timers:
            await timer.wait_closed()
        logger.info(f"Disconnected {address}", extra={"session": address})

    def link_card(self, last_four: str, credit_limit: Decimal | None = None) -> CardLink:
        """Link a card; linking again returns the existing link unchanged."""
        session = self._require()
        current = session.card_link
        if current is not None and current.is_linked:
            return current
        digits = (last_four or "").strip()
        if len(digits) != 4 or not digits.isdigit():
            raise ValueError("last_four must be exactly four digits")
        limit = CUSTODIAL_CARD_LIMIT if credit_limit is None else quantize(credit_limit)
        card = CardLink(
            is_linked=True, last_four=digits, credit_limit=limit, status=CardStatus.ACTIVE
        )
        self._session = replace(session, card_link=card)
        logger.info(f"Linked card ending {digits} to {session.user_address}")
        return card

    # ── internals ───────────────────────────────────────────────────

    def _require(self) -> Session:
        if self._session is None:
            logger.error("No active session")
            raise SessionNotFound("No active session; call connect() first")
        return self._session

    def _machine(self) -> BalanceStateMachine:
        self._require()
        return self._balances

    def _current_card(self) -> CardLink | None:
        return self._session.card_link if self._session is not None else None

    # ── queries ─────────────────────────────────────────────────────

    def get_session(self) -> Session:
        return self._require()

    def get_balances(self) -> BalanceState:
        """Balances floored for display."""
        return self._machine().state.display(self.config.simulation.display_floor)

    def get_ledger_view(self, limit: int | None = 10, group_by_day: bool = True) -> LedgerView:
        self._require()
        return self._ledger.view(limit=limit, group_by_day=group_by_day)

    def get_ledger_entry(self, entry_id: str) -> LedgerEntry | None:
        self._require()
        return self._ledger.find_by_id(entry_id)

    def get_ledger_summary(self) -> dict:
        self._require()
        return self._ledger.summary()

    def get_yield_available(self) -> Decimal:
        self._require()
        return display_amount(self._engine.yield_accrued, self.config.simulation.display_floor)

    def get_yield_projection(self) -> YieldProjection:
        self._require()
        return self._engine.projection()

    def get_card_info(self) -> dict:
        session = self._require()
        card = session.card_link
        balance = display_amount(self._balances.card_balance, self.config.simulation.display_floor)
        if card is None:
            return {"is_linked": False, "balance": f"{balance:.2f}"}
        info = card.to_dict()
        info["balance"] = f"{balance:.2f}"
        info["available_credit"] = f"{card.available_credit(self._balances.card_balance):.2f}"
        return info

    async def get_provider_balance(self) -> Decimal:
        """Provider's figure for the wallet; last known value on failure.

        A refresh requested while another is still in flight gets the last
        known value instead of a second provider round-trip.
        """
        session = self._require()
        fallback = self._balances.wallet_balance
        last_known = self._last_provider_balance if self._last_provider_balance is not None else fallback
        if session.wallet_ref is None:
            return fallback
        if self._balance_fetch_in_flight:
            return last_known
        self._balance_fetch_in_flight = True
        try:
            value = await self.provider.fetch_balance(session.wallet_ref)
        except ProviderError as exc:
            logger.warning(f"Provider balance unavailable: {exc}")
            return last_known
        finally:
            self._balance_fetch_in_flight = False
        if self._session is session:
            self._last_provider_balance = value
        return value

    # ── commands ────────────────────────────────────────────────────

    async def deposit(self, amount, asset: str = "USDC") -> OperationResult:
        return await self._machine().deposit(amount, asset)

    async def transfer_to_card(self, amount) -> OperationResult:
        return await self._machine().transfer_to_card(amount)

    async def top_up_card(self, amount) -> OperationResult:
        return await self._machine().top_up_card(amount)

    async def spend_from_card(self, amount, merchant: str | None = None) -> OperationResult:
        return await self._machine().spend_from_card(amount, merchant)

    async def spend_yield_directly(self, amount, label: str | None = None) -> OperationResult:
        return await self._machine().spend_yield_directly(amount, label)

    async def spend_yield_preset(self, name: str) -> OperationResult:
        machine = self._machine()
        preset = SPEND_PRESETS.get(name)
        if preset is None:
            return OperationResult.failure(ErrorCode.INVALID_AMOUNT, f"Unknown preset: {name}")
        label, amount = preset
        return await machine.spend_yield_directly(amount, label)

    async def collect_yield_to_card(self, amount) -> OperationResult:
        return await self._machine().collect_yield_to_card(amount)

    async def collect_yield_to_wallet(self, amount=None) -> OperationResult:
        return await self._machine().collect_yield_to_wallet(amount)
