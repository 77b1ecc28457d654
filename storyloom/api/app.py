"""FastAPI server for the Storyloom generation pipeline"""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storyloom.api.middleware.rate_limit import RateLimitMiddleware
from storyloom.api.routes.ai import router as ai_router
from storyloom.api.routes.characters import router as characters_router
from storyloom.api.routes.health import router as health_router
from storyloom.api.routes.jobs import router as jobs_router
from storyloom.config import ALLOWED_ORIGINS, API_HOST, API_PORT, APP_VERSION, QUOTA_ENABLED
from storyloom.errors import StoryloomError
from storyloom.governance.quota import QuotaService
from storyloom.governance.rate_limit import EndpointClass, SlidingWindowRateLimiter
from storyloom.governance.usage import UsageRecorder
from storyloom.infrastructure.database import init_database
from storyloom.infrastructure.queue import JobQueue, get_job_queue
from storyloom.infrastructure.settings import is_development
from storyloom.jobs.executor import ImageJobExecutor
from storyloom.jobs.orchestrator import ImageJobOrchestrator
from storyloom.jobs.throttle import ThroughputLimiter
from storyloom.llm.invoker import GeminiInvoker
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter, log_event
from storyloom.storage.graph import GraphStore, SQLiteGraphStore

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)

DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


def _init_schema() -> None:
    try:
        logger.info("Initializing database schema...")
        init_database()
        logger.info("Database initialization complete")
    except sqlite3.OperationalError as e:
        logger.critical("Database schema error: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e
    except OSError as e:
        logger.critical("Database file not accessible: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StoryloomError)
    async def storyloom_error_handler(request: Request, exc: StoryloomError) -> JSONResponse:
        counter(f"api.errors.{exc.error_type}")
        if exc.http_status >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(status_code=exc.http_status, content=exc.to_payload())

    # Custom validation error handler to prevent information leakage
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
        counter("api.validation_errors")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": "Invalid request format. Please check your request and try again.",
                "error_count": len(exc.errors()),
                "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
            },
        )


def create_app(
    store: GraphStore | None = None,
    invoker: GeminiInvoker | None = None,
    job_queue_factory: Callable[[], JobQueue | None] = get_job_queue,
    usage_recorder: UsageRecorder | None = None,
    quota_service: QuotaService | None = None,
    quota_enabled: bool = QUOTA_ENABLED,
    limiters: dict[EndpointClass, SlidingWindowRateLimiter] | None = None,
    init_db: bool = True,
) -> FastAPI:
    """
    Build the API with its services.

    Every service can be injected; anything not given is built from the
    environment. With quota_enabled False every caller is unlimited.
    """
    if init_db:
        _init_schema()

    store = store or SQLiteGraphStore()
    invoker = invoker or GeminiInvoker()
    usage_recorder = usage_recorder or UsageRecorder()
    queue = job_queue_factory()

    executor = ImageJobExecutor(
        store=store,
        invoker=invoker,
        usage_recorder=usage_recorder,
        throughput=ThroughputLimiter(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        usage_recorder.stop()

    app = FastAPI(title="Storyloom API", version=APP_VERSION, lifespan=lifespan)
    app.state.store = store
    app.state.invoker = invoker
    app.state.usage_recorder = usage_recorder
    app.state.orchestrator = ImageJobOrchestrator(store, executor, queue=queue)
    app.state.quota_service = (quota_service or QuotaService()) if quota_enabled else None

    _register_error_handlers(app)

    app.add_middleware(RateLimitMiddleware, limiters=limiters)

    # Added last so CORS headers are also set on rate limit rejections
    origins = list(ALLOWED_ORIGINS)
    if is_development():
        origins.extend(DEV_ORIGINS)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-User-Id"],
        expose_headers=[
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Limit-Daily",
            "X-RateLimit-Remaining-Daily",
            "X-RateLimit-Reset-Daily",
            "X-RateLimit-Limit-Monthly",
            "X-RateLimit-Remaining-Monthly",
            "X-RateLimit-Reset-Monthly",
        ],
    )
    app.include_router(health_router)
    app.include_router(ai_router)
    app.include_router(jobs_router)
    app.include_router(characters_router)

    @app.get("/")
    def root() -> dict[str, Any]:
        return {
            "service": "Storyloom API",
            "version": APP_VERSION,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "ai": "/api/ai",
                "image_generate": "/api/jobs/images/generate",
                "image_job_status": "/api/jobs/images/jobs/{job_id}",
                "portrait": "/api/timelines/{timeline_id}/characters/{character_id}/generate-portrait",
            },
        }

    log_event(
        "api.startup",
        service="storyloom-api",
        version=APP_VERSION,
        job_mode="queue" if queue is not None else "sync",
        quota_enabled=quota_enabled,
    )
    return app


def main() -> None:
    """Console entry point: serve the API with uvicorn."""
    uvicorn.run("storyloom.api.app:create_app", factory=True, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    main()
