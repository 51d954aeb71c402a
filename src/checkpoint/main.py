"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from checkpoint.attendance.router import router as attendance_router
from checkpoint.config import get_settings
from checkpoint.database import close_db, init_db
from checkpoint.events.router import router as events_router
from checkpoint.health.router import router as health_router
from checkpoint.middleware import setup_middleware
from checkpoint.militant.router import router as militant_router
from checkpoint.points.router import router as points_router
from checkpoint.qr.router import router as qr_router
from checkpoint.redis_client import close_redis, init_redis
from checkpoint.workers.queue import close_queue, init_queue


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url, settings.redis_max_connections)
    await init_queue(settings.redis_url)

    yield

    await close_queue()
    await close_redis()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Checkpoint API",
        description="Event attendance tracking with QR codes and loyalty points",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(qr_router)
    app.include_router(attendance_router)
    app.include_router(events_router)
    app.include_router(points_router)
    app.include_router(militant_router)

    return app


app = create_app()
