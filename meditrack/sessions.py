"""
Server-side session stores.

The session cookie only carries an opaque id; the store maps it to a user id.
Supports an in-memory store for tests/local runs and a Redis-backed
implementation for production.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis.asyncio as redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionStore(Protocol):
    """Minimal session interface used by the auth routes."""

    async def create(self, user_id: str) -> str:
        ...

    async def get_user_id(self, session_id: str) -> Optional[str]:
        ...

    async def destroy(self, session_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


@dataclass
class InMemorySessionStore:
    """Dict-backed sessions with expiry, for testing/dev."""

    ttl_seconds: int = DEFAULT_TTL_SECONDS
    sessions: dict[str, tuple[str, float]] = field(default_factory=dict)

    def _purge_expired(self, now: float) -> None:
        expired = [sid for sid, (_, expires_at) in self.sessions.items() if now >= expires_at]
        for session_id in expired:
            del self.sessions[session_id]

    async def create(self, user_id: str) -> str:
        now = time.time()
        self._purge_expired(now)
        session_id = new_session_id()
        self.sessions[session_id] = (user_id, now + self.ttl_seconds)
        return session_id

    async def get_user_id(self, session_id: str) -> Optional[str]:
        entry = self.sessions.get(session_id)
        if entry is None:
            return None
        user_id, expires_at = entry
        if time.time() >= expires_at:
            del self.sessions[session_id]
            return None
        return user_id

    async def destroy(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)

    async def close(self) -> None:
        self.sessions.clear()


@dataclass
class RedisSessionStore:
    """Redis-backed sessions stored as plain keys with a TTL."""

    url: str
    key_prefix: str = "meditrack:session:"
    ttl_seconds: int = DEFAULT_TTL_SECONDS

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url, decode_responses=True)

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    async def create(self, user_id: str) -> str:
        session_id = new_session_id()
        await self.client.set(self._key(session_id), user_id, ex=self.ttl_seconds)
        return session_id

    async def get_user_id(self, session_id: str) -> Optional[str]:
        try:
            return await self.client.get(self._key(session_id))
        except redis_exceptions.ConnectionError:
            # Connection resets can happen on managed Redis. Treat the session
            # as missing and reconnect for the next request.
            logger.warning("Redis connection lost while reading session, reconnecting")
            self.client = redis.Redis.from_url(self.url, decode_responses=True)
            return None

    async def destroy(self, session_id: str) -> None:
        await self.client.delete(self._key(session_id))

    async def close(self) -> None:
        await self.client.aclose()
