"""
FastAPI application entry point for the storefront media service.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from storefront_media.config import get_settings
from storefront_media.dependencies import get_maintenance_scheduler
from storefront_media.routes import router


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    scheduler = get_maintenance_scheduler() if settings.scheduler_enabled else None
    if scheduler:
        scheduler.start()
    try:
        yield
    finally:
        if scheduler:
            scheduler.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Storefront Media Service", version="0.1.0", lifespan=lifespan)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
