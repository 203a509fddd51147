"""
FastAPI application entry point for the MediTrack backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from meditrack import oauth
from meditrack.config import Settings, get_settings
from meditrack.dependencies import StoreContext
from meditrack.errors import register_exception_handlers
from meditrack.routes import health_router, router


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    context = StoreContext(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await context.open()
        yield
        await context.close()

    app = FastAPI(title="MediTrack Backend", version="0.1.0", lifespan=lifespan)
    app.state.context = context
    register_exception_handlers(app)
    app.include_router(router, prefix=f"{settings.api_prefix}/auth", tags=["Auth"])
    app.include_router(health_router, prefix=settings.api_prefix, tags=["Health"])
    app.include_router(oauth.router)
    return app


app = create_app()
