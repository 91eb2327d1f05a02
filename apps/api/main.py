"""
Photo Enhancement API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import health, photos, billing
from services.context import ServiceContext, build_services
from services.enhancement_queue import (
    LocalTaskDispatcher,
    make_dispatcher,
    purge_expired_photos,
    recover_stalled_enhancements,
)
from services.errors import InvalidReservationStateError, PhotoServiceError

logger = logging.getLogger(__name__)


async def _periodic_expired_photo_purge(services: ServiceContext) -> None:
    interval_minutes = max(int(settings.EXPIRED_PHOTO_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            purged = await purge_expired_photos(services)
            if purged:
                print(f"🧹 Expired photo purge: removed={purged}")
        except Exception as exc:
            print(f"⚠️ Expired photo purge tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logging.basicConfig(level=settings.LOG_LEVEL)
    print("🚀 Starting Photo Enhancement API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    services = build_services(settings, async_session_maker)
    services.dispatcher = make_dispatcher(services)
    app.state.services = services
    print(f"🎨 Enhancement provider: {services.provider.name} (dispatch={settings.ENHANCEMENT_DISPATCH_MODE})")

    try:
        recovered = await recover_stalled_enhancements(services, settings.STALLED_ENHANCEMENT_MINUTES)
        if recovered:
            print(f"♻️ Recovered {recovered} stalled enhancements after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled enhancement recovery skipped: {exc}")

    purge_task = None
    if int(settings.EXPIRED_PHOTO_SWEEP_INTERVAL_MINUTES) > 0:
        purge_task = asyncio.create_task(_periodic_expired_photo_purge(services))
        print(
            "📅 Expired photo purge loop enabled "
            f"(every {int(settings.EXPIRED_PHOTO_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if purge_task is not None:
        purge_task.cancel()
        try:
            await purge_task
        except asyncio.CancelledError:
            pass
    if isinstance(services.dispatcher, LocalTaskDispatcher):
        await services.dispatcher.drain()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Photo Enhancement API",
    description="Upload photos, enhance them with AI and pay with credits",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PhotoServiceError)
async def photo_service_error_handler(request: Request, exc: PhotoServiceError):
    if isinstance(exc, InvalidReservationStateError):
        logger.error("Ledger integrity violation on %s %s: %s", request.method, request.url.path, exc.message)
        detail = "Internal accounting error. The request was not applied; please contact support."
    elif exc.client_facing:
        detail = exc.message
    else:
        logger.error("Unhandled %s on %s %s: %s", exc.kind.value, request.method, request.url.path, exc.message)
        detail = "Internal server error."
    return JSONResponse(status_code=exc.status_code, content={"detail": detail, "code": exc.kind.value})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(photos.router, prefix="/photos", tags=["Photos"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Photo Enhancement API",
        "version": "0.1.0",
        "status": "running"
    }
