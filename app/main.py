"""
Tallymark — self-hosted web analytics.
Ingestion service entry point.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.api.admin import router as admin_router
from app.api.ingest import router as ingest_router
from app.api.pixel import router as pixel_router
from app.api.tracking import router as tracking_router
from app.config import get_settings
from app.core.background import drain
from app.core.geoip import close_geoip, init_geoip
from app.core.maintenance import maintenance_loop
from app.middleware.security import SecurityHeadersMiddleware
from app.models.database import dispose_engine

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("tallymark_starting", base_url=settings.base_url)

    init_geoip(settings.geoip_path)

    maintenance_task = None
    if settings.maintenance_enabled:
        maintenance_task = asyncio.create_task(
            maintenance_loop(settings.maintenance_interval_seconds)
        )

    yield

    logger.info("tallymark_shutting_down")
    if maintenance_task is not None:
        maintenance_task.cancel()
        try:
            await maintenance_task
        except asyncio.CancelledError:
            pass
    await drain()
    close_geoip()
    await dispose_engine()


app = FastAPI(
    title="Tallymark",
    description="Self-hosted web analytics: event ingestion.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(RequestValidationError)
async def invalid_payload(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_payload", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error(request: Request, exc: SQLAlchemyError):
    logger.error("storage_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"error": "storage_error", "message": "Storage unavailable"},
    )


# --- Routes ---
app.include_router(tracking_router)
app.include_router(pixel_router)
app.include_router(ingest_router)
app.include_router(admin_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "tallymark", "version": VERSION}
