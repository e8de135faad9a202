"""
Username / Address Cache

Read-through cache in front of the on-chain UsernameRegistry:
- resolve() answers from the database when it can and only asks the
  registry on a miss, caching whatever the chain returns
- register() writes straight to the cache (insert-or-replace)

The chain stays the source of truth. The cache may briefly run ahead of a
registration that is not mined yet, or behind a change made elsewhere.
"""

import logging
from typing import Optional

from database import Database
from errors import ExternalServiceError, NotFound
from models import (
    UsernameRecord,
    is_address,
    normalize_username,
    validate_address,
    validate_username,
)

logger = logging.getLogger(__name__)


class UsernameCache:

    def __init__(self, db: Database, registry=None):
        """
        Args:
            db: backing store
            registry: object with async username_to_address(name) and
                get_username(address) (chain.ChainClient); None disables
                the read-through and every miss is a NotFound
        """
        self.db = db
        self.registry = registry

    @property
    def _registry_enabled(self) -> bool:
        if self.registry is None:
            return False
        return getattr(self.registry, "registry_configured", True)

    async def resolve(self, username_or_address: str) -> UsernameRecord:
        """
        Resolve '@Alice', 'alice' or '0xabc...' to a cached record.

        Raises NotFound when neither the cache nor the registry knows it.
        """
        value = (username_or_address or "").strip()
        if is_address(value):
            record = await self.resolve_address(value)
            if record is None:
                raise NotFound(f"No username registered for {value}")
            return record
        return await self.resolve_username(value)

    async def resolve_username(self, raw_username: str) -> UsernameRecord:
        username = normalize_username(raw_username)

        cached = await self.db.get_username(username)
        if cached:
            logger.debug(f"Cache hit for @{username}")
            return cached

        if not self._registry_enabled:
            raise NotFound(f"Username @{username} not found")

        logger.info(f"Cache miss for @{username}, querying registry")
        try:
            address = await self.registry.username_to_address(username)
            is_premium = bool(address) and await self._lookup_premium(username)
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(f"Registry lookup failed for @{username}: {e}") from e

        if not address:
            raise NotFound(f"Username @{username} not found")

        record = UsernameRecord(username=username, address=address, is_premium=is_premium)
        await self.db.upsert_username(record)
        logger.info(f"✓ Cached @{username} -> {address}")
        return record

    async def _lookup_premium(self, username: str) -> bool:
        if not hasattr(self.registry, "is_premium"):
            return False
        return bool(await self.registry.is_premium(username))

    async def resolve_address(self, address: str) -> Optional[UsernameRecord]:
        """Reverse lookup. None when the address has no registered name."""
        validate_address(address)

        cached = await self.db.get_username_by_address(address)
        if cached:
            return cached

        if not self._registry_enabled:
            return None

        try:
            username = await self.registry.get_username(address)
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(f"Registry reverse lookup failed for {address}: {e}") from e

        if not username:
            return None

        record = UsernameRecord(username=username.lower(), address=address)
        await self.db.upsert_username(record)
        logger.info(f"✓ Cached {address} -> @{record.username}")
        return record

    async def register(self, username: str, address: str, is_premium: bool = False) -> UsernameRecord:
        """Insert-or-replace keyed by the normalized username."""
        clean = validate_username(username)
        validate_address(address)

        record = UsernameRecord(username=clean, address=address, is_premium=is_premium)
        await self.db.upsert_username(record)
        logger.info(f"Registered @{clean} -> {address}")
        return record
