"""
FastAPI Application

Main application entry point for the PayNearMe callback receiver.
Provides the /authorize and /confirm callbacks plus health endpoints.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pnm_callbacks import __version__
from pnm_callbacks.config import settings
from pnm_callbacks.dependencies import get_idempotency_ledger, get_request_timer
from pnm_callbacks.routes import callbacks, health
from pnm_callbacks.utils.exceptions import CallbackException
from pnm_callbacks.utils.logging_config import (
    get_logger,
    set_correlation_id,
    setup_logging,
)

# Setup logging
setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.
    Handles startup and shutdown events.
    """
    logger.info(
        f"pnm_callbacks version {__version__}",
        extra={"environment": settings.environment},
    )

    ledger = get_idempotency_ledger()
    try:
        await ledger.connect()
        logger.info(f"Idempotency ledger ready ({ledger.backend_name})")
    except CallbackException as e:
        # Confirm callbacks fail with 503 until the backend is reachable
        logger.error(f"Failed to connect idempotency ledger: {e.message}")

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application...")

    try:
        await ledger.disconnect()
    except CallbackException as e:
        logger.warning(f"Error closing idempotency ledger: {e.message}")

    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Receiver for PayNearMe /authorize and /confirm callbacks",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)


# Request timing. Registered before the correlation ID middleware, which
# therefore runs outside it and tags the timing log lines.
app.middleware("http")(get_request_timer())


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    """Add correlation ID to all requests for tracing"""
    correlation_id = request.headers.get("X-Correlation-ID")
    if not correlation_id:
        correlation_id = set_correlation_id()
    else:
        set_correlation_id(correlation_id)

    response = await call_next(request)

    response.headers["X-Correlation-ID"] = correlation_id

    return response


@app.exception_handler(CallbackException)
async def callback_exception_handler(request: Request, exc: CallbackException):
    """Handle callback receiver exceptions"""
    logger.error(
        f"Callback exception: {exc.message}",
        extra={"error": exc.to_dict(), "path": request.url.path},
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(
        f"Unexpected exception: {exc}",
        extra={"error": str(exc), "type": type(exc).__name__},
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
        },
    )


app.include_router(callbacks.router, prefix=settings.callback_path_prefix)
app.include_router(health.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "docs_url": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pnm_callbacks.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
