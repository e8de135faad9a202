"""
API Server

JSON REST API used by the web app, served with aiohttp on the bot's event
loop:
- /api/username/...      username <-> address cache
- /api/payment/...       payment status, storage and receipts
- /api/transactions/...  merged sent/received history
- /health
"""

import logging
from typing import Dict, Optional

from aiohttp import web

from errors import NotFound, SendCashError, ValidationError
from models import (
    PaymentRecord,
    STATUS_CONFIRMED,
    now_ts,
    parse_amount,
    validate_tx_hash,
)
from payment_store import PaymentStore
from username_cache import UsernameCache

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map the error taxonomy to HTTP; internals never reach the client."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except SendCashError as e:
        if e.status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e}")
            return web.json_response({"error": "Internal server error"}, status=500)
        return web.json_response({"error": e.message}, status=e.status)
    except Exception:
        logger.exception(f"{request.method} {request.path} crashed")
        return web.json_response({"error": "Internal server error"}, status=500)


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers.update(CORS_HEADERS)
            raise
    response.headers.update(CORS_HEADERS)
    return response


async def read_json(request: web.Request) -> Dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


class APIServer:

    def __init__(
        self,
        cache: UsernameCache,
        store: PaymentStore,
        app_url: str,
        chain=None,
        scheduler=None,
        host: str = "0.0.0.0",
        port: int = 5000,
    ):
        self.cache = cache
        self.store = store
        self.app_url = app_url
        self.chain = chain
        self.scheduler = scheduler
        self.host = host
        self.port = port
        self.app = self.build_app()
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware, error_middleware])
        app.router.add_get("/health", self.health)
        app.router.add_get("/api/username/by-address/{address}", self.get_username_by_address)
        app.router.add_post("/api/username/register", self.register_username)
        app.router.add_get("/api/username/{username}", self.get_username)
        app.router.add_post("/api/payment/receipt", self.create_receipt)
        app.router.add_post("/api/payment/store", self.store_payment)
        app.router.add_get("/api/payment/{tx_hash}", self.get_payment)
        app.router.add_get("/api/transactions/{address}", self.get_transactions)
        return app

    async def start(self):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"✓ API server running on http://{self.host}:{self.port}/api")

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("API server stopped")

    async def health(self, request: web.Request) -> web.Response:
        body = {"status": "ok"}
        if self.scheduler is not None:
            body["scheduler"] = self.scheduler.state
            last_result = getattr(self.scheduler, "last_result", None)
            if last_result is not None:
                body["lastTick"] = {"at": self.scheduler.last_tick_at, **last_result.to_dict()}
        return web.json_response(body)

    # Username routes

    async def get_username(self, request: web.Request) -> web.Response:
        try:
            record = await self.cache.resolve_username(request.match_info["username"])
        except NotFound:
            raise NotFound("Username not found")
        return web.json_response(record.to_api())

    async def get_username_by_address(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        record = await self.cache.resolve_address(address)
        if record is None:
            return web.json_response({"address": address, "username": None})
        return web.json_response({"address": address, "username": record.username, "isPremium": record.is_premium})

    async def register_username(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        record = await self.cache.register(body.get("username"), body.get("address"))
        return web.json_response({"success": True, "username": record.username, "address": record.address})

    # Payment routes

    async def get_payment(self, request: web.Request) -> web.Response:
        tx_hash = validate_tx_hash(request.match_info["tx_hash"])

        record = await self.store.find(tx_hash)
        if record:
            return web.json_response(record.to_dict())

        if self.chain is not None:
            receipt = await self.chain.get_transaction_receipt(tx_hash)
            if receipt:
                return web.json_response({"txHash": tx_hash, **receipt})

        raise NotFound("Transaction not found")

    async def create_receipt(self, request: web.Request) -> web.Response:
        body = await read_json(request)
        tx_hash = validate_tx_hash(body.get("txHash"))
        try:
            receipt, payment = await self.store.create_receipt(tx_hash, self.app_url)
        except NotFound:
            raise NotFound("Payment not found")

        return web.json_response({
            "txHash": receipt.tx_hash,
            "shareLink": receipt.share_link,
            "payment": {
                "from": payment.from_username or payment.from_address,
                "to": payment.to_username or payment.to_address,
                "amount": str(payment.amount),
                "token": payment.token_address,
            },
        })

    async def store_payment(self, request: web.Request) -> web.Response:
        """Called by the client after on-chain confirmation."""
        body = await read_json(request)
        fee = body.get("fee")

        record = PaymentRecord(
            tx_hash=body.get("txHash"),
            from_address=body.get("fromAddress"),
            to_address=body.get("toAddress"),
            from_username=body.get("fromUsername") or None,
            to_username=body.get("toUsername") or None,
            token_address=body.get("tokenAddress"),
            amount=parse_amount(body.get("amount"), "amount"),
            fee=parse_amount(fee, "fee") if fee not in (None, "") else 0,
            status=STATUS_CONFIRMED,
            memo=body.get("memo") or None,
            created_at=now_ts(),
        )
        await self.store.upsert(record)
        return web.json_response({"success": True})

    # Transactions

    async def get_transactions(self, request: web.Request) -> web.Response:
        history = await self.store.list_by_address(request.match_info["address"])
        transactions = []
        for role, record in history:
            tx = record.to_dict()
            tx["type"] = role
            tx["timestamp"] = record.created_at * 1000
            transactions.append(tx)
        return web.json_response({"transactions": transactions})
