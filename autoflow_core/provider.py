"""
Wallet-as-a-service providers for AutoFlow.

The core only needs two things from a provider:

    create_wallet(identity) -> WalletRef          (address to show the user)
    fetch_balance(ref)      -> Decimal            (seed / refresh display)

Two implementations:

* :class:`SimulatedWalletProvider`: in-process; mints secp256k1 key pairs
  and Ethereum-style addresses.  The default for demos and tests.
* :class:`CircleWalletProvider`: ``aiohttp`` client for Circle's
  developer-controlled wallets API.  Each mutating request carries a
  fresh RSA-OAEP ciphertext of the entity secret, as Circle requires.

Provider failures are mapped onto two exceptions only:
``ProviderUnavailable`` (network, timeout, 5xx; retryable) and
``ProviderRejected`` (4xx, malformed response, bad identity).
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Protocol

import aiohttp

from autoflow_core.addresses import generate_address
from autoflow_core.errors import ProviderRejected, ProviderUnavailable
from autoflow_core.precision import ZERO, quantize

if TYPE_CHECKING:
    from autoflow_core.config import ProviderConfig

logger = logging.getLogger("autoflow.provider")

SUPPORTED_BLOCKCHAINS: tuple[str, ...] = ("ETH-SEPOLIA", "MATIC-AMOY")
BALANCE_TOKEN: str = "USDC"


@dataclass(frozen=True)
class WalletRef:
    """Handle to a provider-side wallet."""
    wallet_id: str
    address: str
    blockchain: str = "ETH-SEPOLIA"
    wallet_set_id: str = ""

    def to_dict(self) -> dict:
        return {
            "wallet_id": self.wallet_id,
            "address": self.address,
            "blockchain": self.blockchain,
            "wallet_set_id": self.wallet_set_id,
        }


class WalletProvider(Protocol):
    async def create_wallet(self, identity: str) -> WalletRef: ...

    async def fetch_balance(self, ref: WalletRef) -> Decimal: ...

    async def close(self) -> None: ...


# ═══════════════════════════════════════════════════════════════════
#  Simulated provider
# ═══════════════════════════════════════════════════════════════════

class SimulatedWalletProvider:
    """In-memory provider with optional injected failures."""

    def __init__(
        self,
        starting_balance: Decimal = ZERO,
        blockchain: str = "ETH-SEPOLIA",
        *,
        latency_seconds: float = 0.0,
        fail_create: type[Exception] | None = None,
        fail_balance: bool = False,
    ):
        self.starting_balance = quantize(starting_balance)
        self.blockchain = blockchain
        self.latency_seconds = latency_seconds
        self.fail_create = fail_create
        self.fail_balance = fail_balance
        self.wallets: dict[str, WalletRef] = {}
        self.balances: dict[str, Decimal] = {}
        self._by_identity: dict[str, str] = {}

    async def create_wallet(self, identity: str) -> WalletRef:
        if self.fail_create is not None:
            raise self.fail_create("Simulated provider failure")
        if not identity or not identity.strip():
            raise ProviderRejected("Identity is required")
        # Existing users get their wallet back.
        existing = self._by_identity.get(identity)
        if existing is not None:
            return self.wallets[existing]
        _priv, address = generate_address()
        ref = WalletRef(
            wallet_id=str(uuid.uuid4()),
            address=address,
            blockchain=self.blockchain,
            wallet_set_id=str(uuid.uuid5(uuid.NAMESPACE_URL, identity)),
        )
        self.wallets[ref.wallet_id] = ref
        self.balances[ref.wallet_id] = self.starting_balance
        self._by_identity[identity] = ref.wallet_id
        logger.info(f"Simulated wallet {ref.address} created for {identity}")
        return ref

    async def fetch_balance(self, ref: WalletRef) -> Decimal:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)
        if self.fail_balance:
            raise ProviderUnavailable("Simulated balance outage")
        if ref.wallet_id not in self.wallets:
            raise ProviderRejected(f"Unknown wallet {ref.wallet_id}")
        return self.balances[ref.wallet_id]

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════
#  Circle developer-controlled wallets
# ═══════════════════════════════════════════════════════════════════

def encrypt_entity_secret(entity_secret_hex: str, public_key_pem: str) -> str:
    """RSA-OAEP(SHA-256) encrypt the 32-byte entity secret, base64-encoded."""
    from Crypto.Cipher import PKCS1_OAEP
    from Crypto.Hash import SHA256
    from Crypto.PublicKey import RSA

    try:
        secret = bytes.fromhex(entity_secret_hex)
    except ValueError as exc:
        raise ProviderRejected("Entity secret must be hex") from exc
    if len(secret) != 32:
        raise ProviderRejected("Entity secret must be 32 bytes")
    cipher = PKCS1_OAEP.new(RSA.import_key(public_key_pem), hashAlgo=SHA256)
    return base64.b64encode(cipher.encrypt(secret)).decode("ascii")


class CircleWalletProvider:
    """Thin async client over Circle's W3S REST API."""

    def __init__(
        self,
        api_key: str,
        entity_secret: str,
        base_url: str = "https://api.circle.com",
        blockchain: str = "ETH-SEPOLIA",
        timeout_seconds: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ):
        if blockchain not in SUPPORTED_BLOCKCHAINS:
            raise ValueError(f"Unsupported blockchain: {blockchain}")
        if not api_key:
            logger.warning("Circle API key is not set")
        if not entity_secret:
            logger.warning("Circle entity secret is not set")
        self.api_key = api_key
        self.entity_secret = entity_secret
        self.base_url = base_url.rstrip("/")
        self.blockchain = blockchain
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._public_key: str | None = None

    # ── transport ───────────────────────────────────────────────────

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, body: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with self._http().request(method, url, json=body, headers=headers) as resp:
                if resp.status >= 500:
                    raise ProviderUnavailable(f"Circle {method} {path}: HTTP {resp.status}")
                try:
                    payload: Any = await resp.json(content_type=None)
                except ValueError as exc:
                    raise ProviderRejected(f"Circle {method} {path}: invalid JSON") from exc
                if resp.status >= 400:
                    detail = payload.get("message", "") if isinstance(payload, dict) else ""
                    raise ProviderRejected(
                        f"Circle {method} {path}: HTTP {resp.status} {detail}".rstrip()
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderUnavailable(f"Circle {method} {path}: {exc!r}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise ProviderRejected(f"Circle {method} {path}: missing data envelope")
        return payload["data"]

    async def _ciphertext(self) -> str:
        if self._public_key is None:
            data = await self._request("GET", "/v1/w3s/config/entity/publicKey")
            key = data.get("publicKey")
            if not key:
                raise ProviderRejected("Circle did not return an entity public key")
            self._public_key = key
        return encrypt_entity_secret(self.entity_secret, self._public_key)

    # ── WalletProvider ──────────────────────────────────────────────

    async def create_wallet_set(self, name: str) -> str:
        data = await self._request("POST", "/v1/w3s/developer/walletSets", {
            "idempotencyKey": str(uuid.uuid4()),
            "name": name,
            "entitySecretCiphertext": await self._ciphertext(),
        })
        wallet_set_id = (data.get("walletSet") or {}).get("id")
        if not wallet_set_id:
            raise ProviderRejected("Could not get wallet set ID from response")
        return wallet_set_id

    async def create_wallet(self, identity: str) -> WalletRef:
        if not identity or not identity.strip():
            raise ProviderRejected("Identity is required")
        logger.info(f"Creating Circle wallet for {identity} on {self.blockchain}")
        wallet_set_id = await self.create_wallet_set(f"WalletSet for {identity}")
        data = await self._request("POST", "/v1/w3s/developer/wallets", {
            "idempotencyKey": str(uuid.uuid4()),
            "entitySecretCiphertext": await self._ciphertext(),
            "walletSetId": wallet_set_id,
            "blockchains": [self.blockchain],
            "count": 1,
        })
        wallets = data.get("wallets") or []
        if not wallets or not wallets[0].get("address"):
            raise ProviderRejected("Circle returned no wallet")
        w = wallets[0]
        return WalletRef(
            wallet_id=w["id"],
            address=w["address"],
            blockchain=w.get("blockchain", self.blockchain),
            wallet_set_id=wallet_set_id,
        )

    async def fetch_balance(self, ref: WalletRef) -> Decimal:
        data = await self._request("GET", f"/v1/w3s/wallets/{ref.wallet_id}/balances")
        total = ZERO
        for bal in data.get("tokenBalances") or []:
            if (bal.get("token") or {}).get("symbol") != BALANCE_TOKEN:
                continue
            try:
                total += Decimal(str(bal.get("amount", "0")))
            except InvalidOperation as exc:
                raise ProviderRejected(f"Bad balance amount: {bal.get('amount')!r}") from exc
        return quantize(total)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


def build_provider(cfg: ProviderConfig) -> WalletProvider:
    """Provider named by ``[provider] kind``."""
    kind = cfg.kind.lower()
    if kind == "simulated":
        return SimulatedWalletProvider(
            blockchain=cfg.blockchain, latency_seconds=cfg.simulated_latency_seconds
        )
    if kind == "circle":
        return CircleWalletProvider(
            api_key=cfg.api_key,
            entity_secret=cfg.entity_secret,
            base_url=cfg.base_url,
            blockchain=cfg.blockchain,
            timeout_seconds=cfg.timeout_seconds,
        )
    raise ValueError(f"Unknown provider kind: {cfg.kind}")
