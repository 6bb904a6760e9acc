"""Early revocation of TURN credentials through a Redis blocklist.

Credentials carry their own expiry, so revocation only makes them die sooner.
Every failure here is logged and swallowed: a missing or flaky Redis never
breaks signaling or connection teardown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Iterable, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .config import Settings

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "turn:revoked:"


class RevocationStore:
    """Interface for credential blocklists; the base methods do nothing."""

    async def connect(self) -> None:
        return None

    def is_available(self) -> bool:
        return False

    async def revoke(self, username: str, expires_at: int) -> None:
        return None

    async def revoke_batch(self, entries: Iterable[Tuple[str, int]]) -> None:
        await asyncio.gather(*(self.revoke(username, expires_at) for username, expires_at in entries))

    async def close(self) -> None:
        return None


class NullRevocationStore(RevocationStore):
    """Used when Redis is not configured or not reachable."""


class RedisRevocationStore(RevocationStore):
    """Blocklist revoked usernames in Redis until their natural expiry."""

    def __init__(
        self,
        url: str,
        timeout: float = 2.0,
        client=None,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._available = client is not None
        self._clock = clock

    async def connect(self) -> None:
        client = self._client or aioredis.from_url(self.url)
        try:
            await asyncio.wait_for(client.ping(), self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Redis unavailable at %s, credential revocation disabled: %s", self.url, exc)
            try:
                await client.aclose()
            except (RedisError, OSError) as close_exc:
                logger.debug("Error while closing Redis client: %s", close_exc)
            self._client = None
            self._available = False
            return
        self._client = client
        self._available = True
        logger.info("Connected to Redis for TURN credential revocation")

    def is_available(self) -> bool:
        return self._client is not None and self._available

    async def revoke(self, username: str, expires_at: int) -> None:
        if self._client is None:
            return
        remaining = expires_at - int(self._clock())
        if remaining <= 0:
            # Already expired; nothing to blocklist.
            return
        try:
            await asyncio.wait_for(
                self._client.set(f"{REDIS_KEY_PREFIX}{username}", "1", ex=remaining),
                self.timeout,
            )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            self._available = False
            logger.warning("Failed to revoke credentials for %s: %s", username, exc)
            return
        self._available = True
        logger.info("Revoked credentials for %s, TTL: %ss", username, remaining)

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("Error while closing Redis connection: %s", exc)
        self._client = None
        self._available = False
        logger.info("Redis connection closed")


async def create_revocation_store(settings: Settings, client=None) -> RevocationStore:
    """Pick the store implementation for this process.

    Without TURN there is nothing to revoke; with TURN but no reachable Redis
    the no-op store is returned so callers never branch on availability.
    """

    if not settings.turn_configured:
        logger.info("TURN not configured, skipping Redis initialization")
        return NullRevocationStore()
    store = RedisRevocationStore(settings.redis_url, timeout=settings.revocation_timeout, client=client)
    await store.connect()
    if not store.is_available():
        return NullRevocationStore()
    return store


__all__ = [
    "REDIS_KEY_PREFIX",
    "RevocationStore",
    "NullRevocationStore",
    "RedisRevocationStore",
    "create_revocation_store",
]
