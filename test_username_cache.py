"""
Test Username Cache
Normalization, read-through to the registry and registration.
"""
import asyncio

import pytest

from database import SQLiteDatabase
from errors import ExternalServiceError, NotFound, ValidationError
from models import normalize_username
from username_cache import UsernameCache

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40


class FakeRegistry:
    """Stands in for chain.ChainClient; counts every lookup."""

    def __init__(self, names=None, fail=False):
        self.names = names or {}
        self.fail = fail
        self.forward_calls = 0
        self.reverse_calls = 0

    async def username_to_address(self, username):
        self.forward_calls += 1
        if self.fail:
            raise ConnectionError("rpc down")
        return self.names.get(username)

    async def get_username(self, address):
        self.reverse_calls += 1
        if self.fail:
            raise ConnectionError("rpc down")
        for name, addr in self.names.items():
            if addr.lower() == address.lower():
                return name
        return None


async def with_cache(scenario, registry=None):
    db = SQLiteDatabase(":memory:")
    await db.connect()
    try:
        await scenario(UsernameCache(db, registry=registry))
    finally:
        await db.close()


def test_normalize_username():
    assert normalize_username("@Alice") == "alice"
    assert normalize_username("  alice ") == "alice"
    assert normalize_username("ALICE") == "alice"
    with pytest.raises(ValidationError):
        normalize_username("@")
    with pytest.raises(ValidationError):
        normalize_username("   ")
    with pytest.raises(ValidationError):
        normalize_username(None)


def test_at_prefix_and_case_resolve_the_same_record():
    async def scenario(cache):
        await cache.register("alice", ALICE)
        a = await cache.resolve("@Alice")
        b = await cache.resolve("alice")
        assert a == b
        assert a.address == ALICE

    asyncio.run(with_cache(scenario))


def test_resolve_address_input():
    async def scenario(cache):
        await cache.register("alice", ALICE)
        record = await cache.resolve(ALICE.upper().replace("0X", "0x"))
        assert record.username == "alice"

        with pytest.raises(NotFound):
            await cache.resolve(BOB)

    asyncio.run(with_cache(scenario))


def test_miss_without_registry_is_not_found():
    async def scenario(cache):
        with pytest.raises(NotFound):
            await cache.resolve("nobody")
        assert await cache.resolve_address(BOB) is None

    asyncio.run(with_cache(scenario))


def test_read_through_caches_registry_answer():
    registry = FakeRegistry({"bob": BOB})

    async def scenario(cache):
        first = await cache.resolve("@Bob")
        second = await cache.resolve("bob")
        assert first.address == second.address == BOB
        # Second lookup served from the cache
        assert registry.forward_calls == 1

    asyncio.run(with_cache(scenario, registry))


def test_read_through_reverse_lookup():
    registry = FakeRegistry({"bob": BOB})

    async def scenario(cache):
        record = await cache.resolve_address(BOB)
        assert record.username == "bob"
        assert (await cache.resolve_address(BOB)).username == "bob"
        assert registry.reverse_calls == 1

        # Forward lookup now hits the cache too
        await cache.resolve("bob")
        assert registry.forward_calls == 0

    asyncio.run(with_cache(scenario, registry))


def test_read_through_keeps_premium_flag():
    class PremiumRegistry(FakeRegistry):
        async def is_premium(self, username):
            return username == "bob"

    registry = PremiumRegistry({"bob": BOB})

    async def scenario(cache):
        assert (await cache.resolve("bob")).is_premium is True
        assert (await cache.db.get_username("bob")).is_premium is True

    asyncio.run(with_cache(scenario, registry))


def test_unregistered_name_is_not_cached():
    registry = FakeRegistry({})

    async def scenario(cache):
        for _ in range(2):
            with pytest.raises(NotFound):
                await cache.resolve("ghost")
        assert registry.forward_calls == 2

    asyncio.run(with_cache(scenario, registry))


def test_registry_failure_is_external_service_error():
    registry = FakeRegistry({"bob": BOB}, fail=True)

    async def scenario(cache):
        with pytest.raises(ExternalServiceError):
            await cache.resolve("bob")
        with pytest.raises(ExternalServiceError):
            await cache.resolve_address(BOB)

    asyncio.run(with_cache(scenario, registry))


def test_register_validates_and_overwrites():
    async def scenario(cache):
        with pytest.raises(ValidationError):
            await cache.register("al", ALICE)
        with pytest.raises(ValidationError):
            await cache.register("alice!", ALICE)
        with pytest.raises(ValidationError):
            await cache.register("alice", "0x123")
        with pytest.raises(ValidationError):
            await cache.register(None, ALICE)

        await cache.register("@Alice", ALICE)
        await cache.register("alice", BOB)
        assert (await cache.resolve("alice")).address == BOB

    asyncio.run(with_cache(scenario))


def test_invalid_address_lookup():
    async def scenario(cache):
        with pytest.raises(ValidationError):
            await cache.resolve_address("0xnope")

    asyncio.run(with_cache(scenario))


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
