"""
Test API Server
Exercises every REST route through aiohttp's test client.
"""
import asyncio

import pytest
from aiohttp import test_utils

from api_server import APIServer
from database import SQLiteDatabase
from errors import ExternalServiceError
from models import PaymentRecord, STATUS_PENDING
from payment_store import PaymentStore
from scheduler import TickResult
from username_cache import UsernameCache

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
USDC = "0x" + "1" * 40
APP_URL = "https://sendcash.app"


def tx(n: int) -> str:
    return "0x" + f"{n:064x}"


class FakeChain:

    def __init__(self, receipts=None, fail=False):
        self.receipts = receipts or {}
        self.fail = fail

    async def get_transaction_receipt(self, tx_hash):
        if self.fail:
            raise ExternalServiceError("All RPC endpoints failed")
        return self.receipts.get(tx_hash)


class FakeScheduler:
    state = "idle"


async def with_client(scenario, chain=None, scheduler=None):
    db = SQLiteDatabase(":memory:")
    await db.connect()
    cache = UsernameCache(db)
    store = PaymentStore(db)
    api = APIServer(cache, store, APP_URL, chain=chain, scheduler=scheduler)
    client = test_utils.TestClient(test_utils.TestServer(api.app))
    await client.start_server()
    try:
        await scenario(client, cache, store)
    finally:
        await client.close()
        await db.close()


def stored_payment(n: int, **kwargs) -> dict:
    body = {
        "txHash": tx(n),
        "fromAddress": ALICE,
        "toAddress": BOB,
        "fromUsername": "alice",
        "toUsername": "bob",
        "tokenAddress": USDC,
        "amount": "2000000",
        "fee": "10000",
    }
    body.update(kwargs)
    return body


def test_health():
    async def scenario(client, cache, store):
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "scheduler": "idle"}
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    asyncio.run(with_client(scenario, scheduler=FakeScheduler()))


def test_health_reports_last_tick():
    class TickedScheduler(FakeScheduler):
        last_tick_at = 1_700_000_000
        last_result = TickResult(sent=2, skipped=1)

    async def scenario(client, cache, store):
        body = await (await client.get("/health")).json()
        assert body["lastTick"] == {
            "at": 1_700_000_000, "sent": 2, "failed": 0, "skipped": 1, "reconciled": 0, "error": None,
        }

    asyncio.run(with_client(scenario, scheduler=TickedScheduler()))


def test_cors_preflight():
    async def scenario(client, cache, store):
        resp = await client.options("/api/payment/store")
        assert resp.status == 204
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]

    asyncio.run(with_client(scenario))


def test_username_routes():
    async def scenario(client, cache, store):
        resp = await client.post("/api/username/register", json={"username": "@Alice", "address": ALICE})
        assert resp.status == 200
        assert await resp.json() == {"success": True, "username": "alice", "address": ALICE}

        resp = await client.get("/api/username/ALICE")
        assert resp.status == 200
        assert await resp.json() == {"username": "alice", "address": ALICE, "isPremium": False}

        resp = await client.get(f"/api/username/by-address/{ALICE}")
        assert await resp.json() == {"address": ALICE, "username": "alice", "isPremium": False}

        resp = await client.get(f"/api/username/by-address/{BOB}")
        assert resp.status == 200
        assert await resp.json() == {"address": BOB, "username": None}

        resp = await client.get("/api/username/nobody")
        assert resp.status == 404
        assert await resp.json() == {"error": "Username not found"}

    asyncio.run(with_client(scenario))


def test_register_rejects_bad_input():
    async def scenario(client, cache, store):
        resp = await client.post("/api/username/register", json={"username": "a!", "address": ALICE})
        assert resp.status == 400
        assert "error" in await resp.json()

        resp = await client.post("/api/username/register", json={"username": "alice", "address": "0x12"})
        assert resp.status == 400

        resp = await client.post("/api/username/register", data="not json")
        assert resp.status == 400

        resp = await client.get("/api/username/by-address/not-an-address")
        assert resp.status == 400

    asyncio.run(with_client(scenario))


def test_store_and_get_payment():
    async def scenario(client, cache, store):
        resp = await client.post("/api/payment/store", json=stored_payment(1, memo="Lunch"))
        assert resp.status == 200
        assert await resp.json() == {"success": True}

        # Storing twice keeps one payment
        resp = await client.post("/api/payment/store", json=stored_payment(1, memo="Lunch"))
        assert resp.status == 200

        resp = await client.get(f"/api/payment/{tx(1)}")
        assert resp.status == 200
        body = await resp.json()
        assert body["tx_hash"] == tx(1)
        assert body["status"] == "confirmed"
        assert body["amount"] == "2000000"
        assert body["fee"] == "10000"
        assert body["memo"] == "Lunch"

        assert len(await store.list_by_address(ALICE)) == 1

    asyncio.run(with_client(scenario))


def test_store_payment_validation():
    async def scenario(client, cache, store):
        cases = [
            stored_payment(1, txHash="0xabc"),
            stored_payment(1, fromAddress="alice"),
            stored_payment(1, amount="1.5"),
            stored_payment(1, amount=-1),
            stored_payment(1, amount="100", fee="101"),
            stored_payment(1, memo=42),
            stored_payment(1, amount="²"),
            stored_payment(1, fee="١٠"),
            stored_payment(1, fromUsername=["evil"]),
            stored_payment(1, toUsername={"name": "bob"}),
        ]
        for body in cases:
            resp = await client.post("/api/payment/store", json=body)
            assert resp.status == 400, body

        missing = stored_payment(1)
        del missing["tokenAddress"]
        resp = await client.post("/api/payment/store", json=missing)
        assert resp.status == 400

        assert await store.find(tx(1)) is None

    asyncio.run(with_client(scenario))


def test_get_payment_falls_back_to_chain():
    chain = FakeChain({tx(7): {"status": "confirmed", "blockNumber": 123}})

    async def scenario(client, cache, store):
        resp = await client.get(f"/api/payment/{tx(7)}")
        assert resp.status == 200
        assert await resp.json() == {"txHash": tx(7), "status": "confirmed", "blockNumber": 123}

        resp = await client.get(f"/api/payment/{tx(8)}")
        assert resp.status == 404
        assert await resp.json() == {"error": "Transaction not found"}

        resp = await client.get("/api/payment/0x1234")
        assert resp.status == 400

    asyncio.run(with_client(scenario, chain=chain))


def test_chain_failure_is_500_without_details():
    async def scenario(client, cache, store):
        resp = await client.get(f"/api/payment/{tx(9)}")
        assert resp.status == 500
        assert await resp.json() == {"error": "Internal server error"}

    asyncio.run(with_client(scenario, chain=FakeChain(fail=True)))


def test_create_receipt():
    async def scenario(client, cache, store):
        await client.post("/api/payment/store", json=stored_payment(1))

        resp = await client.post("/api/payment/receipt", json={"txHash": tx(1)})
        assert resp.status == 200
        assert await resp.json() == {
            "txHash": tx(1),
            "shareLink": f"{APP_URL}/receipt/{tx(1)}",
            "payment": {"from": "alice", "to": "bob", "amount": "2000000", "token": USDC},
        }

        resp = await client.post("/api/payment/receipt", json={"txHash": tx(2)})
        assert resp.status == 404
        assert await resp.json() == {"error": "Payment not found"}

        resp = await client.post("/api/payment/receipt", json={})
        assert resp.status == 400

    asyncio.run(with_client(scenario))


def test_transactions():
    async def scenario(client, cache, store):
        await store.upsert(PaymentRecord(
            tx_hash=tx(1), from_address=ALICE, to_address=BOB, token_address=USDC,
            amount=1_000_000, created_at=1_000,
        ))
        await store.upsert(PaymentRecord(
            tx_hash=tx(2), from_address=BOB, to_address=ALICE, token_address=USDC,
            amount=3_000_000, status=STATUS_PENDING, created_at=2_000,
        ))

        resp = await client.get(f"/api/transactions/{ALICE}")
        assert resp.status == 200
        transactions = (await resp.json())["transactions"]
        assert [(t["tx_hash"], t["type"]) for t in transactions] == [(tx(2), "received"), (tx(1), "sent")]
        assert transactions[0]["timestamp"] == 2_000_000

        resp = await client.get(f"/api/transactions/{BOB.upper().replace('0X', '0x')}")
        assert len((await resp.json())["transactions"]) == 2

        resp = await client.get("/api/transactions/nope")
        assert resp.status == 400

    asyncio.run(with_client(scenario))


def test_unknown_route_is_404():
    async def scenario(client, cache, store):
        resp = await client.get("/api/nothing-here")
        assert resp.status == 404

    asyncio.run(with_client(scenario))


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
