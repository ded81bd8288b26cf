from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.config import settings
from app.api.v1.router import api_router
from app.database import init_db, async_session_factory
from app.services.distribution_errors import (
    DistributionError,
    ValidationError,
    NotFoundError,
    ConcurrentRequestError,
    InvalidTransitionError,
    ConservationViolationError,
    InconsistentLedgerError,
    SettlementFailure,
)


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


# HTTP status for each engine error; first match wins
ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConcurrentRequestError, 409),
    (InvalidTransitionError, 409),
    (ConservationViolationError, 422),
    (InconsistentLedgerError, 422),
    (SettlementFailure, 503),
)


def status_code_for(exc: DistributionError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_class):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create ledger tables if missing
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()
    yield
    logger.info(f"Shutting down {settings.APP_NAME}")


API_DESCRIPTION = """
Profit & capital distribution engine for deal investments.

- **Partners** submit PARTIAL or FINAL distribution requests
- **Admins** preview, approve or reject them
- **Settlement** credits investor wallets and the platform ledger atomically

Callers identify themselves with the `X-User-Id` header set by the gateway.
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(DistributionError)
async def distribution_exception_handler(request: Request, exc: DistributionError):
    """Map engine errors to HTTP responses."""
    status_code = status_code_for(exc)
    if status_code >= 500 or isinstance(exc, (ConservationViolationError, InconsistentLedgerError)):
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {type(exc).__name__}: {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.message,
            "type": type(exc).__name__,
            "details": exc.details,
            "retryable": exc.retryable,
            "path": str(request.url.path),
            "method": request.method,
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness plus a round trip to the ledger store."""
    checks = {"ledger_store": "unknown"}
    healthy = True

    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["ledger_store"] = "connected"
    except Exception as e:
        healthy = False
        checks["ledger_store"] = f"error: {type(e).__name__}: {e}"
        logger.error(f"Health check failed: {checks['ledger_store']}")

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "settlement_max_retries": settings.SETTLEMENT_MAX_RETRIES,
        "checks": checks,
    }
    return body if healthy else JSONResponse(status_code=503, content=body)


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"{settings.APP_NAME} v{settings.APP_VERSION}",
        "api": api_router.prefix,
        "docs": "/docs",
    }
