"""
REST / HTTP API server for StakePot ledger nodes.

Built on ``aiohttp``.

Endpoints
---------
GET  /health                              Liveness + block height
GET  /status                              Ledger summary
GET  /periods                             Period table with weights
GET  /balance/{address}                   Token balance
GET  /stakes/{address}                    All stakes (tombstones included)
GET  /stakes/{address}/{index}/pending    Projected reward of one stake
GET  /rewards/total                       Sum of open rewards
POST /token/approve                       Allow the ledger to pull tokens
POST /token/transfer                      Move tokens between addresses
POST /tx/stake                            Lock tokens
POST /tx/unstake                          Close a stake
POST /tx/distribute                       Distribute the pot
POST /tx/fund_pot                         Top up the pot
POST /admin/periods                       Replace the period table
POST /admin/penalty                       Set the penalty rate
POST /admin/pot_address                   Set the pot address
POST /admin/stake                         Write a migrated stake
POST /admin/transfer                      Hand over the admin role

Authentication
--------------
Every POST body is signed by the caller (see ``stakepot_core.identity``):
``X-Public-Key`` and ``X-Signature`` headers, plus a strictly increasing
``nonce`` field in the body.  The caller's address is derived from the
public key; the ledger then applies its own admin / owner checks.

An optional shared ``X-API-Key`` and a per-IP token-bucket rate limiter
guard the node itself.

Amounts are integers in base units, sent as JSON integers or decimal
strings, and returned as decimal strings.
"""

from __future__ import annotations

import hmac
import json
import logging
import re
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from stakepot_core.errors import (
    AuthorizationError,
    CollaboratorError,
    ResourceStateError,
    StakingError,
    TransferFault,
    ValidationError,
)
from stakepot_core.identity import InvalidSignature, verify_signature

if TYPE_CHECKING:
    from stakepot_core.config import APIConfig

logger = logging.getLogger("stakepot_api")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

# ASCII digits only; bounded so int() stays cheap
_DECIMAL_RE = re.compile(r"-?[0-9]{1,100}")


def _parse_int(value: Any, name: str = "value") -> int:
    """Accept a JSON integer or a decimal string; reject floats and bools."""
    if isinstance(value, bool) or isinstance(value, float):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if _DECIMAL_RE.fullmatch(text):
            return int(text)
    raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _require_str(body: dict, name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value:
        raise web.HTTPBadRequest(text=f"{name} required")
    return value


def _error_status(exc: StakingError) -> int:
    if isinstance(exc, AuthorizationError):
        return 403
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, ResourceStateError):
        return 409
    if isinstance(exc, TransferFault):
        return 502
    if isinstance(exc, CollaboratorError):
        return 402
    return 500


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket refilled at ``rpm`` tokens per minute."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(
            lambda: [float(rpm), time.monotonic()]
        )

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        refill = (now - bucket[1]) * (self._rpm / 60.0)
        bucket[0] = min(float(self._rpm), bucket[0] + refill)
        bucket[1] = now
        if bucket[0] < 1.0:
            return False
        bucket[0] -= 1.0
        return True


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        if not bucket.allow(request.remote or "unknown"):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on POST requests (timing-safe comparison)."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method == "POST":
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


@web.middleware
async def _ledger_error_middleware(request: web.Request, handler):
    """Translate ledger and signature failures into JSON error responses."""
    try:
        return await handler(request)
    except StakingError as exc:
        status = _error_status(exc)
        logger.debug(f"{request.method} {request.path} -> {status} {exc.code}")
        return web.json_response(exc.to_dict(), status=status)
    except InvalidSignature as exc:
        return web.json_response(
            {"error": "InvalidSignature", "message": str(exc)}, status=401,
        )


class APIServer:
    """Thin aiohttp wrapper around a running LedgerNode."""

    def __init__(
        self,
        node: Any,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.node = node
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536
        cfg = self._api_config
        if cfg is not None:
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))
        middlewares.append(_ledger_error_middleware)

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
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/status", self._status)
        app.router.add_get("/periods", self._periods)
        app.router.add_get("/balance/{address}", self._balance)
        app.router.add_get("/stakes/{address}", self._stakes)
        app.router.add_get("/stakes/{address}/{index}/pending", self._pending)
        app.router.add_get("/rewards/total", self._total_reward)
        # Token
        app.router.add_post("/token/approve", self._approve)
        app.router.add_post("/token/transfer", self._transfer)
        # Ledger
        app.router.add_post("/tx/stake", self._add_stake)
        app.router.add_post("/tx/unstake", self._remove_stake)
        app.router.add_post("/tx/distribute", self._distribute)
        app.router.add_post("/tx/fund_pot", self._fund_pot)
        # Admin
        app.router.add_post("/admin/periods", self._set_periods)
        app.router.add_post("/admin/penalty", self._set_penalty)
        app.router.add_post("/admin/pot_address", self._set_pot_address)
        app.router.add_post("/admin/stake", self._set_stake)
        app.router.add_post("/admin/transfer", self._transfer_admin)

    async def _signed_body(self, request: web.Request) -> tuple[str, dict]:
        """Verify the request signature and nonce; return (caller, body)."""
        try:
            body = await request.json()
        except Exception as exc:
            raise web.HTTPBadRequest(text="Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="JSON object required")

        public_key = request.headers.get("X-Public-Key", "")
        signature = request.headers.get("X-Signature", "")
        if not public_key or not signature:
            raise InvalidSignature("X-Public-Key and X-Signature headers required")
        caller = verify_signature(public_key, signature, body)
        self.node.nonces.consume(caller, body.get("nonce"))
        return caller, body

    # ── read handlers ────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "block": self.node.pool.clock.now()})

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.node.status(), dumps=_json_dumps)

    async def _periods(self, _request: web.Request) -> web.Response:
        return web.json_response({"periods": self.node.pool.get_period_info()})

    async def _balance(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        balance = self.node.pool.transfers.balance_of(address)
        return web.json_response({"address": address, "balance": str(balance)})

    async def _stakes(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        now = self.node.pool.clock.now()
        stakes = []
        for i, record in enumerate(self.node.pool.get_stakes(address)):
            entry = record.to_dict(now)
            entry["index"] = i
            stakes.append(entry)
        return web.json_response({"address": address, "block": now, "stakes": stakes})

    async def _pending(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        index = _parse_int(request.match_info["index"], "index")
        pending = self.node.pool.get_pending_reward(address, index)
        return web.json_response({"address": address, "index": index, "pending": str(pending)})

    async def _total_reward(self, _request: web.Request) -> web.Response:
        return web.json_response({"total_reward": str(self.node.pool.get_total_reward())})

    # ── token handlers ───────────────────────────────────────────

    async def _approve(self, request: web.Request) -> web.Response:
        """POST /token/approve  Body: {"amount": "1000", "nonce": 1}"""
        caller, body = await self._signed_body(request)
        amount = _parse_int(body.get("amount"), "amount")
        if amount < 0:
            raise web.HTTPBadRequest(text="amount must be non-negative")
        await self.node.execute(self.node.approve, caller, amount)
        return web.json_response({"status": "approved", "owner": caller, "amount": str(amount)})

    async def _transfer(self, request: web.Request) -> web.Response:
        """POST /token/transfer  Body: {"destination": "0x..", "amount": "10", "nonce": 2}"""
        caller, body = await self._signed_body(request)
        destination = _require_str(body, "destination")
        amount = _parse_int(body.get("amount"), "amount")
        if amount <= 0:
            raise web.HTTPBadRequest(text="positive amount required")
        await self.node.execute(self.node.transfer, caller, destination, amount)
        return web.json_response({"status": "transferred", "amount": str(amount)})

    # ── ledger handlers ──────────────────────────────────────────

    async def _add_stake(self, request: web.Request) -> web.Response:
        """POST /tx/stake  Body: {"amount": "2000000000000000000000", "period": 6500, "nonce": 3}"""
        caller, body = await self._signed_body(request)
        amount = _parse_int(body.get("amount"), "amount")
        period = _parse_int(body.get("period"), "period")
        index = await self.node.execute(self.node.pool.add_stake, caller, amount, period)
        return web.json_response({"status": "staked", "account": caller, "index": index})

    async def _remove_stake(self, request: web.Request) -> web.Response:
        """POST /tx/unstake  Body: {"index": 0, "nonce": 4}"""
        caller, body = await self._signed_body(request)
        index = _parse_int(body.get("index"), "index")
        account = body.get("account") or caller
        payout = await self.node.execute(
            self.node.pool.remove_stake, caller, index, account,
        )
        return web.json_response({"status": "closed", "index": index, "payout": str(payout)})

    async def _distribute(self, request: web.Request) -> web.Response:
        caller, _body = await self._signed_body(request)
        credited = await self.node.execute(self.node.pool.distribute, caller)
        return web.json_response({"status": "distributed", "credited": str(credited)})

    async def _fund_pot(self, request: web.Request) -> web.Response:
        caller, body = await self._signed_body(request)
        amount = _parse_int(body.get("amount"), "amount")
        pot = await self.node.execute(self.node.pool.fund_pot, caller, amount)
        return web.json_response({"status": "funded", "pot": str(pot)})

    # ── admin handlers ───────────────────────────────────────────

    async def _set_periods(self, request: web.Request) -> web.Response:
        """POST /admin/periods  Body: {"periods": [1, 6500, 100000], "nonce": 5}"""
        caller, body = await self._signed_body(request)
        raw = body.get("periods")
        if not isinstance(raw, list) or not raw:
            raise web.HTTPBadRequest(text="periods must be a non-empty list")
        periods = [_parse_int(p, "period") for p in raw]
        await self.node.execute(self.node.pool.set_periods, caller, periods)
        return web.json_response({"status": "ok", "periods": periods})

    async def _set_penalty(self, request: web.Request) -> web.Response:
        caller, body = await self._signed_body(request)
        rate = _parse_int(body.get("rate"), "rate")
        await self.node.execute(self.node.pool.set_penalty_rate, caller, rate)
        return web.json_response({"status": "ok", "penalty_rate": rate})

    async def _set_pot_address(self, request: web.Request) -> web.Response:
        caller, body = await self._signed_body(request)
        address = _require_str(body, "address")
        await self.node.execute(self.node.pool.set_pot_address, caller, address)
        return web.json_response({"status": "ok", "pot_address": address})

    async def _set_stake(self, request: web.Request) -> web.Response:
        """
        POST /admin/stake
        Body: {"amount": "...", "period": 1, "account": "0x..",
               "start_block": 1, "reward": "...", "nonce": 6}
        """
        caller, body = await self._signed_body(request)
        index = await self.node.execute(
            self.node.pool.set_stake,
            caller,
            _parse_int(body.get("amount"), "amount"),
            _parse_int(body.get("period"), "period"),
            _require_str(body, "account"),
            _parse_int(body.get("start_block", 0), "start_block"),
            _parse_int(body.get("reward", 0), "reward"),
        )
        return web.json_response({"status": "ok", "index": index})

    async def _transfer_admin(self, request: web.Request) -> web.Response:
        caller, body = await self._signed_body(request)
        new_admin = _require_str(body, "admin")
        await self.node.execute(self.node.pool.transfer_admin, caller, new_admin)
        return web.json_response({"status": "ok", "admin": new_admin})


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)
