"""
main.py: Travel cost engine FastAPI application entry point.

Start with: uvicorn travelcost.main:app --reload --port 8000
(run from the repository root)
"""
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException

from travelcost.config import settings
from travelcost.calculation.exceptions import CalculationError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations (skipped when RUN_MIGRATIONS=false)
      2. Build the cache backend (Redis, or in-process when Redis is down / disabled)
      3. Wire lookups, audit ledger and TravelCostService onto app.state
      4. Start the cache janitor
    Shutdown:
      1. Stop the janitor
      2. Close the Redis pool
    """
    # --- 1. Database: run Alembic migrations ---
    if settings.run_migrations:
        package_dir = os.path.dirname(os.path.abspath(__file__))
        result = subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            capture_output=True,
            text=True,
            cwd=package_dir,
        )
        if result.returncode != 0:
            logger.error("Alembic migration failed:\n%s", result.stderr)
            raise RuntimeError(f"Alembic migration failed: {result.stderr}")
        msg = result.stdout.strip() or "No pending migrations"
        logger.info("Alembic: %s", msg)

    # --- 2. Calculation cache backend ---
    from travelcost.cache import InMemoryCacheBackend, RedisCacheBackend, create_redis_pool
    from travelcost.calculation.calculation_cache import CalculationCache

    app.state.redis = None
    if settings.cache_backend == "redis":
        try:
            app.state.redis = await create_redis_pool()
            backend = RedisCacheBackend(
                app.state.redis,
                lock_timeout=settings.cache_lock_timeout_seconds,
                lock_wait=settings.cache_lock_wait_seconds,
            )
        except (RedisError, OSError) as exc:
            logger.warning(
                "Redis unavailable at startup, using in-process calculation cache: %s", exc
            )
            backend = InMemoryCacheBackend()
    else:
        backend = InMemoryCacheBackend()
        logger.info("Using in-process calculation cache (CACHE_BACKEND=memory)")

    cache = CalculationCache(
        backend,
        ttl_seconds=settings.cache_ttl_seconds,
        read_retries=settings.cache_read_retries,
        retry_backoff_seconds=settings.cache_retry_backoff_seconds,
    )

    # --- 3. Collaborators + service ---
    from travelcost.calculation.audit import SqlAuditLedger
    from travelcost.calculation.lookups import SqlEmployeeLookup, SqlSubprojectLookup
    from travelcost.calculation.service import TravelCostService
    from travelcost.database import AsyncSessionLocal

    service = TravelCostService(
        employees=SqlEmployeeLookup(AsyncSessionLocal),
        subprojects=SqlSubprojectLookup(AsyncSessionLocal),
        cache=cache,
        ledger=SqlAuditLedger(AsyncSessionLocal),
        lookup_timeout=settings.lookup_timeout_seconds,
        janitor_interval_seconds=settings.janitor_interval_seconds,
    )
    app.state.travel_cost_service = service

    # --- 4. Janitor ---
    service.janitor.start()

    logger.info("Travel cost engine v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    await service.janitor.stop()
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")
    logger.info("Travel cost engine shutting down")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Travel Cost API",
    version=settings.app_version,
    description=(
        "Distance and travel allowance calculation for employee travel requests, "
        "with a fingerprint-keyed result cache and an append-only audit ledger."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS (origins from CORS_ORIGINS)
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Wrap an error as {"error": {code, message, details}}."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Request body / query validation failures. Every violation is reported,
    keyed by its dotted field path.
    """
    details = []
    for error in exc.errors():
        # drop the leading 'body' / 'query' segment
        field = ".".join(str(loc) for loc in error["loc"][1:])
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """HTTPException raised by routes (404 trail, 503 before startup)."""
    code_map = {
        400: "BAD_REQUEST",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        503: "SERVICE_UNAVAILABLE",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(CalculationError)
async def calculation_error_handler(
    request: Request, exc: CalculationError
) -> JSONResponse:
    """
    Engine errors carry their own code and status.
    details echo the offending identifiers/values, one {field, issue} per key.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    details = [{"field": key, "issue": str(value)} for key, value in exc.details.items()]
    return _make_error_response(
        code=exc.code,
        message=exc.message,
        details=details,
        status_code=exc.status_code,
    )


@app.exception_handler(ValueError)
async def value_error_handler(
    request: Request, exc: ValueError
) -> JSONResponse:
    """
    ValueError raised inside model validators that pydantic did not wrap.
    Reported as 422 VALIDATION_ERROR.
    """
    return _make_error_response(
        code="VALIDATION_ERROR",
        message=str(exc),
        status_code=422,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    """Liveness check for load balancers."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from travelcost.calculation.routes import events_router, router as calculation_router

app.include_router(calculation_router)
app.include_router(events_router)
