"""Matchpoint: FastAPI application entry point."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from matchpoint.api.v1.courts import maintenance_router
from matchpoint.api.v1.courts import router as courts_router
from matchpoint.api.v1.reservations import ledger_router
from matchpoint.api.v1.reservations import router as reservations_router
from matchpoint.api.v1.tariffs import enrollments_router
from matchpoint.api.v1.tariffs import router as tariffs_router
from matchpoint.api.v1.webhooks import router as webhooks_router
from matchpoint.config import settings
from matchpoint.errors import MatchpointError

# Configure root logger so all matchpoint.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    from matchpoint.database import async_session_factory, engine
    from matchpoint.services.sweeper import DEFAULT_OUTBOX_HANDLERS, sweeper_loop

    # Startup
    sweeper = None
    if settings.sweeper_enabled:
        sweeper = asyncio.create_task(sweeper_loop(async_session_factory, DEFAULT_OUTBOX_HANDLERS))
    yield
    # Shutdown: stop the sweeper, then dispose engine connections
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Court reservations, regulated tariffs and payment settlement for sports clubs.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.exception_handler(MatchpointError)
async def matchpoint_error_handler(request: Request, exc: MatchpointError) -> JSONResponse:
    """Map domain errors to their HTTP status with a stable error code."""
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Routers
app.include_router(courts_router)
app.include_router(maintenance_router)
app.include_router(reservations_router)
app.include_router(ledger_router)
app.include_router(tariffs_router)
app.include_router(enrollments_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
