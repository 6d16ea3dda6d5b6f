"""
BuzzSync Backend — FastAPI Application Factory
================================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() builds the pool and identity client (or accepts injected
       ones), stores them on app.state, registers middleware, exception
       handlers and routers. uvicorn serves `buzzsync.main:app`.

Application Architecture:
    ┌───────────────────────────────────────────────────────────┐
    │                      FastAPI App                          │
    │                                                           │
    │  Middleware:  Request ID → Access Log → GZip → CORS       │
    │                                                           │
    │  Routes:                                                  │
    │   GET  /resources/{kind}/updates   GET  /venues/search    │
    │   POST /transaction                POST /query            │
    │   GET  /health                     GET  /health/database  │
    │                                                           │
    │  app.state:  pool (ConnectionPoolManager)                 │
    │              identity_service (IdentityService)           │
    └───────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:   logging → settings validation → pool.init()
    Shutdown:  pool.shutdown() (drain + close) → identity client close
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from buzzsync import __version__
from buzzsync.config import settings
from buzzsync.database import ConnectionPoolManager
from buzzsync.exceptions import (
    BuzzSyncError,
    CircuitBreakerOpenError,
    DeadlineExceeded,
    ForbiddenOperation,
    IdentityServiceError,
    NotFoundError,
    PermissionDenied,
    PoolExhausted,
    StorageError,
    Unauthorized,
    ValidationError,
)
from buzzsync.middleware.logging import RequestLoggingMiddleware
from buzzsync.middleware.request_id import RequestIDMiddleware, request_id_var
from buzzsync.routes import feeds, health, transaction, venues
from buzzsync.services.identity_service import IdentityService

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging once, before anything else logs.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Statement text and parameter values are never logged by this service;
    SQLAlchemy's engine logger is kept at WARNING so echo can't leak them
    outside DEBUG.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("BuzzSync Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")

    await app.state.pool.init()

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("BuzzSync Backend shutting down...")
    await app.state.pool.shutdown()
    await app.state.identity_service.aclose()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _request_id(request: Request) -> str:
    return request_id_var.get("") or getattr(request.state, "request_id", "")


def _error_response(
    request: Request,
    status_code: int,
    exc: BuzzSyncError,
    headers: Optional[dict] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.kind,
            "message": exc.message,
            "details": exc.context or None,
            "request_id": _request_id(request),
        },
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception hierarchy to HTTP responses.

    Handler hierarchy:
        ValidationError / RequestValidationError → 400
        Unauthorized                             → 401
        PermissionDenied / ForbiddenOperation    → 403
        NotFoundError                            → 404
        DeadlineExceeded                         → 504
        StorageError                             → 500 (failed_index, rolled_back only)
        PoolExhausted                            → 503 + Retry-After
        IdentityServiceError                     → 503
        CircuitBreakerOpenError                  → 503 + Retry-After
        BuzzSyncError (base)                     → 500
        Exception (fallback)                     → 500, stack trace logged only

    Security: driver messages and statement text never reach the response.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", _request_id(request), exc.message)
        return _error_response(request, 400, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        """Pydantic/FastAPI input errors use the same envelope as ours."""
        rid = _request_id(request)
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())),
                "message": err.get("msg", ""),
            }
            for err in exc.errors()
        ]
        logger.warning("[%s] Request validation failed: %d error(s)", rid, len(errors))
        return JSONResponse(
            status_code=400,
            content={
                "error": ValidationError.kind,
                "message": "Request validation failed",
                "details": {"errors": errors},
                "request_id": rid,
            },
        )

    @app.exception_handler(Unauthorized)
    async def handle_unauthorized(request: Request, exc: Unauthorized):
        return _error_response(request, 401, exc)

    @app.exception_handler(PermissionDenied)
    async def handle_permission_denied(request: Request, exc: PermissionDenied):
        return _error_response(request, 403, exc)

    @app.exception_handler(ForbiddenOperation)
    async def handle_forbidden_operation(request: Request, exc: ForbiddenOperation):
        logger.warning(
            "[%s] Rejected batch: operation %s is %s",
            _request_id(request),
            exc.operation_index,
            exc.keyword or "unrecognised",
        )
        return _error_response(request, 403, exc)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(request, 404, exc)

    @app.exception_handler(DeadlineExceeded)
    async def handle_deadline(request: Request, exc: DeadlineExceeded):
        return _error_response(request, 504, exc)

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        """Generic message to the user; the failing index is the only detail exposed."""
        rid = _request_id(request)
        logger.error("[%s] Storage error: %s | Context: %s", rid, exc.message, exc.context)
        details = {}
        if exc.failed_index is not None:
            details["failed_index"] = exc.failed_index
        if exc.rolled_back is not None:
            details["rolled_back"] = exc.rolled_back
        if "reason" in exc.context:
            details["reason"] = exc.context["reason"]
        return JSONResponse(
            status_code=500,
            content={
                "error": exc.kind,
                "message": exc.message,
                "details": details or None,
                "request_id": rid,
            },
        )

    @app.exception_handler(PoolExhausted)
    async def handle_pool_exhausted(request: Request, exc: PoolExhausted):
        logger.warning("[%s] Pool exhausted", _request_id(request))
        return _error_response(request, 503, exc, headers={"Retry-After": str(exc.retry_after)})

    @app.exception_handler(IdentityServiceError)
    async def handle_identity_error(request: Request, exc: IdentityServiceError):
        logger.error("[%s] Identity service error: %s", _request_id(request), exc.message)
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return _error_response(request, 503, exc, headers=headers)

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", _request_id(request), exc.message)
        return _error_response(request, 503, exc, headers={"Retry-After": str(exc.recovery_time)})

    @app.exception_handler(BuzzSyncError)
    async def handle_app_error(request: Request, exc: BuzzSyncError):
        logger.error("[%s] Unhandled application error: %s", _request_id(request), exc.message)
        return _error_response(request, 500, exc)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = _request_id(request)
        logger.error("[%s] Unexpected error: %s", rid, type(exc).__name__, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again or contact support.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    pool: Optional[ConnectionPoolManager] = None,
    identity_service: Optional[IdentityService] = None,
) -> FastAPI:
    """
    Assemble the application.

    Args:
        pool:             Connection pool to use; built from settings when omitted
        identity_service: Auth provider client; built from settings when omitted
    """
    app = FastAPI(
        title="BuzzSync API",
        description=(
            "Data synchronization and transactional access layer for the venue "
            "discovery app: change feeds, venue search, atomic statement batches."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.state.pool = pool or ConnectionPoolManager.from_settings(settings)
    app.state.identity_service = identity_service or IdentityService(
        base_url=settings.auth_base_url,
        session_path=settings.auth_session_path,
        timeout_seconds=settings.auth_timeout_seconds,
        max_attempts=settings.retry_max_attempts,
        min_wait=settings.retry_min_wait,
        max_wait=settings.retry_max_wait,
        failure_threshold=settings.cb_failure_threshold,
        recovery_timeout=settings.cb_recovery_timeout,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added runs first: RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Total-Count", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(feeds.router)
    app.include_router(venues.router)
    app.include_router(transaction.router)
    app.include_router(health.router)

    return app


app = create_app()
