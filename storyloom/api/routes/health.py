"""Health check endpoint for the Storyloom API.

Provides a liveness probe for Cloud Run monitoring.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from storyloom.config import APP_VERSION
from storyloom.infrastructure.database import get_db_connection, get_pool_stats
from storyloom.infrastructure.database_schema import validate_schema
from storyloom.llm.gemini import provider_configured
from storyloom.observability.logging import get_logger

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint.

    Reports provider credential readiness (presence only, no API call) and
    whether image jobs run on the queue or synchronously.
    """
    orchestrator = request.app.state.orchestrator
    return {
        "status": "healthy",
        "service": "Storyloom API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "llm": {"ready": provider_configured()},
        "jobs": {"mode": "queue" if orchestrator.queue_available else "sync"},
        "quota_enabled": request.app.state.quota_service is not None,
    }


@router.get("/health/db")
def database_health() -> Any:
    """Schema check plus connection pool stats."""
    try:
        with get_db_connection() as conn:
            validate_schema(conn)
    except (ValueError, sqlite3.Error, FileNotFoundError) as e:
        logger.error("Database health check failed: %s", e)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "detail": "Database schema check failed"},
        )
    return {"status": "healthy", "pool": get_pool_stats()}
