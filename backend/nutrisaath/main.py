"""
NutriSaath Backend: FastAPI Application Factory
=================================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() registers middleware, exception handlers and routers.
Who:   uvicorn imports `nutrisaath.main:app`.
When:  Once at server startup.

Request pipeline:
    ┌────────────────────────────────────────────────────────────┐
    │ RequestID → Logging → GZip → CORS      (every request)     │
    │                                                            │
    │ Gate dependencies                      (per route)         │
    │   auth ──▶ throttle ──▶ handler ──▶ service                │
    │     │          │                                           │
    │     ▼          ▼                                           │
    │    401        429 + Retry-After                            │
    │                                                            │
    │ Exception handlers → {"error": {message, code, request_id}}│
    └────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging, configuration check, sweep of expired products
    Shutdown: dispose DB engine, close throttle store and upstream client
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from nutrisaath import __version__
from nutrisaath.config import settings
from nutrisaath.database import async_session_factory, dispose_engine
from nutrisaath.exceptions import (
    CircuitBreakerOpenError,
    NutriSaathError,
    RateLimited,
)
from nutrisaath.middleware.logging import RequestLoggingMiddleware
from nutrisaath.middleware.request_id import RequestIDMiddleware, request_id_var
from nutrisaath.routes import barcode, chat, health, poshan, products
from nutrisaath.services.off_client import off_client
from nutrisaath.services.product_store import ProductStore
from nutrisaath.services.throttle import throttle_store

logger = logging.getLogger(__name__)

# 401 and 429 come from the gate, which has already logged them
GATE_STATUSES = {401, 429}


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """Configure the root logger once; Docker captures stdout."""
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
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

async def purge_expired_products() -> int:
    """
    Startup sweep of products past the retention window.

    A database outage here is logged and skipped; the process still starts
    and reads keep filtering expired rows.
    """
    try:
        async with async_session_factory() as session:
            removed = await ProductStore(session).purge_expired()
            await session.commit()
    except (NutriSaathError, SQLAlchemyError, OSError) as e:
        logger.warning("Expired product sweep skipped: %s", str(e))
        return 0
    logger.info("Expired product sweep removed %d records", removed)
    return removed


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("NutriSaath Backend %s (%s) starting up...", __version__, settings.release_sha)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: health checks and unauthenticated routes still work
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")

    logger.info(
        "Throttle backend: %s | product retention: %d days | stale after: %s",
        settings.throttle_backend,
        settings.product_retention_days,
        settings.product_stale_after_seconds if settings.product_stale_after_seconds is not None else "never",
    )
    await purge_expired_products()

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("NutriSaath Backend shutting down...")
    await off_client.aclose()
    await throttle_store.close()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def error_response(
    status_code: int,
    message: str,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build the error envelope shared by every failure response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "code": status_code,
                "request_id": request_id_var.get(""),
            }
        },
        headers=headers,
    )


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Validation failed"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    detail = first.get("msg", "invalid value")
    return f"{location}: {detail}" if location else detail


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exceptions to the error envelope.

        NutriSaathError subclasses → their status_code
                                     (429 and circuit-open 503 add Retry-After)
        RequestValidationError     → 400
        Starlette HTTPException    → its status (404 unknown route, 405, ...)
        Exception                  → 500

    `context` is logged for 4xx, never returned; 5xx bodies carry only a
    generic message.
    """

    @app.exception_handler(NutriSaathError)
    async def handle_app_error(request: Request, exc: NutriSaathError):
        rid = request_id_var.get("")
        status_code = exc.status_code
        headers: Dict[str, str] = {}

        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(exc.retry_after)
        elif isinstance(exc, CircuitBreakerOpenError):
            headers["Retry-After"] = str(exc.recovery_time)
        elif exc.context.get("retry_after"):
            headers["Retry-After"] = str(exc.context["retry_after"])

        if status_code >= 500:
            logger.error(
                "[%s] %s %s failed: %s (%s) | Context: %s",
                rid, request.method, request.url.path, exc.kind, exc.message, exc.context,
            )
        elif status_code not in GATE_STATUSES:
            logger.warning(
                "[%s] %s %s rejected: %s (%s)",
                rid, request.method, request.url.path, exc.kind, exc.message,
            )

        message = exc.message
        if status_code == 500:
            message = "An internal error occurred. Please try again later."
        return error_response(status_code, message, headers or None)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        logger.warning(
            "[%s] %s %s rejected: invalid_input (%s)",
            request_id_var.get(""), request.method, request.url.path, message,
        )
        return error_response(400, message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code == 404:
            message = "The requested resource was not found"
        return error_response(exc.status_code, message, getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return error_response(
            500, "An unexpected error occurred. Please try again or contact support."
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="NutriSaath API",
        description=(
            "Food-label scanning backend: barcode and product lookup backed by "
            "Open Food Facts, and a nutrition assistant chat."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware runs in reverse order of addition: RequestID is outermost
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(products.router)
    app.include_router(barcode.router)
    app.include_router(chat.router)
    app.include_router(poshan.router)
    app.include_router(health.router)

    return app


app = create_app()
