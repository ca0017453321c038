"""
Health Check Endpoints

Provides liveness and readiness status for the callback receiver.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from pnm_callbacks.config import settings
from pnm_callbacks.dependencies import get_idempotency_ledger
from pnm_callbacks.services.idempotency_ledger import IdempotencyLedger
from pnm_callbacks.utils.exceptions import TransientStorageException
from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])

# Never written, only read to prove the ledger answers
PROBE_KEY = "__health_probe__"


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if application is running.
    """
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.app_version,
        },
    )


@router.get("/health/ready")
async def readiness_check(ledger: IdempotencyLedger = Depends(get_idempotency_ledger)):
    """
    Readiness check endpoint.
    Verifies that the idempotency ledger backend answers in time.
    """
    dependencies: Dict[str, Any] = {}
    overall_healthy = True

    try:
        await ledger.get_state(PROBE_KEY)
        dependencies["idempotency_ledger"] = {
            "status": "healthy",
            "backend": ledger.backend_name,
        }
    except TransientStorageException as e:
        logger.warning(f"Readiness probe failed: {e.message}")
        dependencies["idempotency_ledger"] = {
            "status": "unhealthy",
            "backend": ledger.backend_name,
            "error": e.message,
        }
        overall_healthy = False

    return JSONResponse(
        status_code=200 if overall_healthy else 503,
        content={
            "status": "ready" if overall_healthy else "not_ready",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dependencies": dependencies,
        },
    )
