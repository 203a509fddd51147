"""
Dependency wiring for the FastAPI app.

The store context owns the database engine, the hybrid store, the session
store and the health-check task. It is built by ``create_app``, opened and
closed by the app lifespan, and handed to routes through ``app.state``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import Depends, Request

from meditrack.config import Settings
from meditrack.db import InMemoryStorage, SqlStorage
from meditrack.errors import AuthError
from meditrack.hybrid import HybridStorage
from meditrack.sessions import InMemorySessionStore, RedisSessionStore, SessionStore

logger = logging.getLogger(__name__)


class StoreContext:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.memory = InMemoryStorage()
        self.database: Optional[SqlStorage] = None
        self.storage: Optional[HybridStorage] = None
        self.sessions: Optional[SessionStore] = None
        self._health_task: Optional[asyncio.Task] = None

    def _build_session_store(self) -> SessionStore:
        settings = self.settings
        if settings.redis_url and not settings.use_in_memory_backends:
            return RedisSessionStore(
                url=settings.redis_url,
                key_prefix=settings.session_key_prefix,
                ttl_seconds=settings.session_ttl_seconds,
            )
        return InMemorySessionStore(ttl_seconds=settings.session_ttl_seconds)

    async def open(self) -> None:
        settings = self.settings
        connected = False
        if settings.use_in_memory_backends or not settings.database_url:
            logger.warning("DATABASE_URL not set, using memory storage only")
        else:
            self.database = SqlStorage(
                settings.database_url, timeout_seconds=settings.database_timeout_seconds
            )
            connected = await self.database.connect()
            if not connected:
                logger.warning("Database unreachable at startup, starting in memory mode")

        self.storage = HybridStorage(
            self.database,
            self.memory,
            use_database=connected,
            mirror_writes=settings.storage_mirror_writes,
            replay_on_promotion=settings.storage_replay_on_promotion,
        )
        self.sessions = self._build_session_store()

        if self.database is not None:
            self._health_task = asyncio.create_task(
                self.storage.run_health_checks(settings.health_check_interval_seconds)
            )
        logger.info("Storage ready in %s mode", self.storage.mode.value)

    async def close(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        if self.sessions is not None:
            await self.sessions.close()
        if self.database is not None:
            await self.database.dispose()


def get_context(request: Request) -> StoreContext:
    return request.app.state.context


def get_storage(context: StoreContext = Depends(get_context)) -> HybridStorage:
    return context.storage


def get_session_store(context: StoreContext = Depends(get_context)) -> SessionStore:
    return context.sessions


def get_session_id(
    request: Request, context: StoreContext = Depends(get_context)
) -> Optional[str]:
    return request.cookies.get(context.settings.session_cookie_name)


async def require_user_id(
    session_id: Optional[str] = Depends(get_session_id),
    sessions: SessionStore = Depends(get_session_store),
) -> str:
    """Resolve the session cookie to a user id or fail with 401."""
    if session_id:
        user_id = await sessions.get_user_id(session_id)
        if user_id:
            return user_id
    raise AuthError("Not authenticated")
