"""
REST / HTTP API for an AutoFlow connection session.

Built on ``aiohttp``; one :class:`APIServer` fronts one
:class:`~autoflow_core.session.ConnectionSession`.

Endpoints
---------
GET  /health                  Liveness and timer state
GET  /session                 Connected user, provider, card link
GET  /balances                Wallet / card / yield (display-floored)
GET  /ledger?limit=&group=    Recent entries, grouped by day
GET  /ledger/{entry_id}       One entry with its receipt
GET  /ledger/summary          Totals per kind
GET  /yield                   Available yield and projections
GET  /card                    Card link, balance, available credit
GET  /provider/balance        Provider's wallet balance
POST /connect                 {"provider": "circle"|"metamask", "identity": ..}
POST /disconnect
POST /deposit                 {"amount": .., "asset": "USDC"}
POST /card/link               {"last_four": "1234"}
POST /card/transfer           {"amount": ..}
POST /card/topup              {"amount": ..}
POST /card/spend              {"amount": .., "merchant": ..}
POST /yield/spend             {"amount": .., "label": ..} or {"preset": "coffee"}
POST /yield/collect           {"amount": .., "target": "card"|"wallet"}
POST /admin/log_level         {"level": "DEBUG"}

Status codes
------------
Business failures come back as ``{"ok": false, "error": <code>}`` with
400 (InvalidAmount), 402 (DeclinedTransaction) or 409 (everything else).
No session → 404, ProviderRejected → 502, ProviderUnavailable → 503.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only.
  Timing-safe comparison via ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (origins configurable via ``cors_origins``).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(session, host="127.0.0.1", port=8080, api_config=cfg.api)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from autoflow_core.errors import (
    ErrorCode,
    OperationResult,
    ProviderRejected,
    ProviderUnavailable,
    SessionNotFound,
)
from autoflow_core.logging_config import set_log_level

if TYPE_CHECKING:
    from autoflow_core.config import APIConfig
    from autoflow_core.session import ConnectionSession

logger = logging.getLogger("autoflow.api")

RESULT_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_AMOUNT: 400,
    ErrorCode.DECLINED: 402,
    ErrorCode.INSUFFICIENT_FUNDS: 409,
    ErrorCode.INSUFFICIENT_YIELD: 409,
    ErrorCode.CARD_NOT_LINKED: 409,
    ErrorCode.IN_PROGRESS: 409,
    ErrorCode.SESSION_ENDED: 409,
}


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


def _safe_limit(value: str | None) -> int | None:
    if value is None or value == "":
        return 10
    if value == "all":
        return None
    try:
        limit = int(value)
    except ValueError:
        raise web.HTTPBadRequest(text="limit must be an integer or 'all'")
    if limit < 0:
        raise web.HTTPBadRequest(text="limit must be non-negative")
    return limit


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles Decimal and other non-standard types."""
    return json.dumps(obj, default=str)


def _result_response(result: OperationResult) -> web.Response:
    status = 200 if result.ok else RESULT_STATUS.get(result.code, 409)
    return web.json_response(result.to_dict(), status=status, dumps=_json_dumps)


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST.

    The key is read from the ``X-API-Key`` header only and compared with
    ``hmac.compare_digest``.
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """aiohttp middleware that adds CORS headers for listed origins.

    The ``*`` wildcard is ignored; origins must be listed explicitly.
    """

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map core exceptions onto JSON error responses."""
    try:
        return await handler(request)
    except SessionNotFound as exc:
        return web.json_response({"ok": False, "error": "SessionNotFound", "message": str(exc)}, status=404)
    except ProviderRejected as exc:
        logger.warning(f"Provider rejected {request.path}: {exc}")
        return web.json_response({"ok": False, "error": "ProviderRejected", "message": str(exc)}, status=502)
    except ProviderUnavailable as exc:
        logger.warning(f"Provider unavailable on {request.path}: {exc}")
        return web.json_response(
            {"ok": False, "error": "ProviderUnavailable", "message": str(exc)},
            status=503,
            headers={"Retry-After": "5"},
        )


class APIServer:
    """Thin aiohttp wrapper around a ConnectionSession."""

    def __init__(
        self,
        session: ConnectionSession,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.session = session
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes

            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))

        middlewares.append(error_middleware)
        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        await self.session.disconnect()
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/session", self._get_session)
        app.router.add_get("/balances", self._balances)
        app.router.add_get("/ledger", self._ledger)
        app.router.add_get("/ledger/summary", self._ledger_summary)
        app.router.add_get("/ledger/{entry_id}", self._ledger_entry)
        app.router.add_get("/yield", self._yield)
        app.router.add_get("/card", self._card)
        app.router.add_get("/provider/balance", self._provider_balance)
        app.router.add_post("/connect", self._connect)
        app.router.add_post("/disconnect", self._disconnect)
        app.router.add_post("/deposit", self._deposit)
        app.router.add_post("/card/link", self._link_card)
        app.router.add_post("/card/transfer", self._transfer)
        app.router.add_post("/card/topup", self._topup)
        app.router.add_post("/card/spend", self._card_spend)
        app.router.add_post("/yield/spend", self._yield_spend)
        app.router.add_post("/yield/collect", self._yield_collect)
        app.router.add_post("/admin/log_level", self._admin_log_level)

    # ── queries ──────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        timers = {t.name: t.running for t in self.session.timers}
        return web.json_response({
            "ok": True,
            "connected": self.session.connected,
            "timers": timers,
        })

    async def _get_session(self, _request: web.Request) -> web.Response:
        return web.json_response(self.session.get_session().to_dict(), dumps=_json_dumps)

    async def _balances(self, _request: web.Request) -> web.Response:
        return web.json_response(self.session.get_balances().to_dict())

    async def _ledger(self, request: web.Request) -> web.Response:
        limit = _safe_limit(request.query.get("limit"))
        group = request.query.get("group", "true").lower() not in ("0", "false", "no")
        view = self.session.get_ledger_view(limit=limit, group_by_day=group)
        return web.json_response(view.to_dict(), dumps=_json_dumps)

    async def _ledger_summary(self, _request: web.Request) -> web.Response:
        return web.json_response(self.session.get_ledger_summary(), dumps=_json_dumps)

    async def _ledger_entry(self, request: web.Request) -> web.Response:
        entry = self.session.get_ledger_entry(request.match_info["entry_id"])
        if entry is None:
            raise web.HTTPNotFound(text="Ledger entry not found")
        return web.json_response(entry.to_dict(), dumps=_json_dumps)

    async def _yield(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "available": f"{self.session.get_yield_available():.2f}",
            "projection": self.session.get_yield_projection().to_dict(),
        }, dumps=_json_dumps)

    async def _card(self, _request: web.Request) -> web.Response:
        return web.json_response(self.session.get_card_info())

    async def _provider_balance(self, _request: web.Request) -> web.Response:
        balance = await self.session.get_provider_balance()
        return web.json_response({"balance": f"{balance:.2f}"})

    # ── commands ─────────────────────────────────────────────────

    async def _connect(self, request: web.Request) -> web.Response:
        """
        POST /connect
        Body: {"provider": "circle", "identity": "user@example.com", "existing_user": false}
        """
        from autoflow_core.session import AuthProvider

        body = await _json_body(request)
        identity = body.get("identity", "")
        try:
            provider = AuthProvider(body.get("provider", "circle"))
        except ValueError:
            raise web.HTTPBadRequest(text="provider must be 'circle' or 'metamask'")
        if not isinstance(identity, str) or not identity:
            raise web.HTTPBadRequest(text="identity required")
        session = await self.session.connect(
            provider, identity, existing_user=bool(body.get("existing_user", False))
        )
        return web.json_response(session.to_dict(), dumps=_json_dumps)

    async def _disconnect(self, _request: web.Request) -> web.Response:
        await self.session.disconnect()
        return web.json_response({"ok": True})

    async def _deposit(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        asset = body.get("asset", "USDC")
        if not isinstance(asset, str) or not asset:
            raise web.HTTPBadRequest(text="asset must be a non-empty string")
        return _result_response(await self.session.deposit(body.get("amount"), asset))

    async def _link_card(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        try:
            card = self.session.link_card(str(body.get("last_four", "")))
        except ValueError as exc:
            raise web.HTTPBadRequest(text=str(exc))
        return web.json_response(card.to_dict())

    async def _transfer(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        return _result_response(await self.session.transfer_to_card(body.get("amount")))

    async def _topup(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        return _result_response(await self.session.top_up_card(body.get("amount")))

    async def _card_spend(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        merchant = body.get("merchant")
        if merchant is not None and not isinstance(merchant, str):
            raise web.HTTPBadRequest(text="merchant must be a string")
        return _result_response(await self.session.spend_from_card(body.get("amount"), merchant))

    async def _yield_spend(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        preset = body.get("preset")
        if preset:
            return _result_response(await self.session.spend_yield_preset(str(preset)))
        label = body.get("label")
        if label is not None and not isinstance(label, str):
            raise web.HTTPBadRequest(text="label must be a string")
        return _result_response(await self.session.spend_yield_directly(body.get("amount"), label))

    async def _yield_collect(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        target = body.get("target", "card")
        if target == "card":
            result = await self.session.collect_yield_to_card(body.get("amount"))
        elif target == "wallet":
            result = await self.session.collect_yield_to_wallet(body.get("amount"))
        else:
            raise web.HTTPBadRequest(text="target must be 'card' or 'wallet'")
        return _result_response(result)

    async def _admin_log_level(self, request: web.Request) -> web.Response:
        """POST /admin/log_level: change logging level at runtime."""
        body = await _json_body(request)
        try:
            level = set_log_level(str(body.get("level", "INFO")))
        except ValueError as exc:
            raise web.HTTPBadRequest(text=str(exc))
        return web.json_response({"status": "ok", "level": level})
