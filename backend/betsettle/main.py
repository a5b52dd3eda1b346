"""
backend/betsettle/main.py

Purpose:
    FastAPI application bootstrap: middleware/router wiring, exception
    mapping, settlement scheduler lifecycle and the startup recovery sweep.

Dependencies:
    - betsettle.database
    - betsettle.workers.settlement_scheduler
    - betsettle.workers.recovery_sweep
"""

import logging
from contextlib import asynccontextmanager

from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ServerSelectionTimeoutError

from betsettle.config import settings
import betsettle.database as _db
from betsettle.database import close_db, connect_db
from betsettle.middleware.logging import StructuredLoggingMiddleware, setup_logging
from betsettle.services.errors import WagerError

logger = logging.getLogger("betsettle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from betsettle.services.fixture_result_service import get_gateway
    from betsettle.workers.recovery_sweep import run_recovery_sweep
    from betsettle.workers.settlement_scheduler import start_scheduler, stop_scheduler

    setup_logging()
    await connect_db()

    summary = await run_recovery_sweep(force=True)
    logger.info("Startup recovery sweep: %s", summary)

    start_scheduler()

    yield

    stop_scheduler()
    await get_gateway().aclose()
    await close_db()


app = FastAPI(
    title="betsettle",
    description="Wager admission and settlement engine",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-Id"],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware)

# Routers
from betsettle.routers.balance import router as balance_router
from betsettle.routers.wagers import router as wagers_router

app.include_router(wagers_router)
app.include_router(balance_router)


@app.exception_handler(WagerError)
async def wager_error_handler(request: Request, exc: WagerError):
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(InvalidId)
async def invalid_object_id_handler(request: Request, exc: InvalidId):
    return JSONResponse(status_code=400, content={"detail": "Invalid ID."})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(part) for part in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"detail": "Duplicate entry."})


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check: DB connection, result provider circuit and last recovery sweep."""
    from betsettle.services.fixture_result_service import get_gateway
    from betsettle.workers._state import get_synced_at
    from betsettle.workers.settlement_scheduler import scheduler

    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    last_sweep = None
    if db_ok:
        synced_at = await get_synced_at("recovery_sweep")
        last_sweep = synced_at.isoformat() if synced_at else None

    return {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "scheduler_running": scheduler.running,
        "result_provider": {"circuit_open": get_gateway().circuit_open},
        "last_recovery_sweep": last_sweep,
    }
