"""
ShiftTrack API — FastAPI Application Entry Point
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from core.errors import (
    AlreadyArchived,
    ClockAmbiguity,
    ImmutableArchive,
    NotFound,
    OperationConflict,
    ShiftTrackError,
    StaleWrite,
)
from realtime.broadcast import RedisBroadcaster
from realtime.connections import ConnectionRegistry

settings = get_settings()
logger = structlog.get_logger()

ERROR_STATUS = {
    NotFound: 404,
    AlreadyArchived: 409,
    OperationConflict: 409,
    ImmutableArchive: 409,
    ClockAmbiguity: 422,
    StaleWrite: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    from realtime.websocket import relay_production_channel

    logger.info("ShiftTrack API starting up", version=settings.app_version)
    app.state.connections = ConnectionRegistry()
    app.state.broadcaster = RedisBroadcaster()
    relay = asyncio.create_task(relay_production_channel(app.state.connections))
    yield
    relay.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await relay
    await app.state.broadcaster.aclose()
    logger.info("ShiftTrack API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Per-shift production tracking and archival for machine operations",
    lifespan=lifespan,
)
app.state.connections = ConnectionRegistry()


@app.exception_handler(ShiftTrackError)
async def shifttrack_error_handler(request: Request, exc: ShiftTrackError):
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.warning("api.request_failed", path=request.url.path, error_type=exc.code, error=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import machines, shifts
from realtime.websocket import router as ws_router

app.include_router(shifts.router)
app.include_router(machines.router)
app.include_router(ws_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
