"""Centralized configuration for the Storyloom backend.

Re-exports everything from storyloom.infrastructure.settings so callers have one
import location, then adds typed constants for the database, context assembly,
the image job queue, the client poll loop, and request governance. Every value
has a safe default so the app starts without extra env configuration.
"""

from __future__ import annotations

import os

from storyloom.infrastructure.settings import *  # noqa: F401, F403  re-export


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _env_float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


# --- App ---
APP_VERSION: str = "0.1.0"

# --- Database ---
DB_POOL_SIZE: int = _env_int("STORYLOOM_DB_POOL_SIZE", 5)
DB_POOL_TIMEOUT: float = _env_float("STORYLOOM_DB_POOL_TIMEOUT", 5.0)
DB_CONNECT_TIMEOUT: float = _env_float("STORYLOOM_DB_CONNECT_TIMEOUT", 30.0)
DB_TEMP_CONN_MAX: int = _env_int("STORYLOOM_DB_TEMP_CONN_MAX", 10)
DB_RETRY_MAX: int = _env_int("STORYLOOM_DB_RETRY_MAX", 5)
DB_RETRY_BASE_DELAY: float = _env_float("STORYLOOM_DB_RETRY_BASE_DELAY", 0.1)
DB_RETRY_MAX_DELAY: float = _env_float("STORYLOOM_DB_RETRY_MAX_DELAY", 2.0)
DB_RETRY_JITTER: float = _env_float("STORYLOOM_DB_RETRY_JITTER", 0.1)

# --- Context Assembly ---
CONTEXT_MAX_DEPTH: int = 200
DEFAULT_EXPLORATION_RATIO: float = 0.3

# --- Request Validation ---
MAX_SYSTEM_PROMPT_CHARS: int = 5000
MAX_CONTENT_CHARS: int = 10000
MAX_IMAGE_PROMPT_CHARS: int = 10000
MAX_AI_BODY_BYTES: int = 50 * 1024
MAX_SUGGESTIONS: int = 10
MAX_VARIANTS: int = 5
MAX_STRUCTURE_NODES: int = 10

# --- Image Job Queue ---
JOB_QUEUE_NAME: str = os.getenv("STORYLOOM_JOB_QUEUE", "image-generation")
JOB_MAX_ATTEMPTS: int = 3
JOB_BACKOFF_BASE_SECONDS: int = 2
JOB_TIMEOUT_SECONDS: int = _env_int("STORYLOOM_JOB_TIMEOUT", 180)
JOB_RESULT_TTL_SECONDS: int = 3600  # completed jobs kept 1h
JOB_FAILURE_TTL_SECONDS: int = 86400  # failed jobs kept 24h
JOB_WORKER_CONCURRENCY: int = _env_int("STORYLOOM_WORKER_CONCURRENCY", 2)
JOB_THROUGHPUT_MAX: int = _env_int("STORYLOOM_JOB_THROUGHPUT_MAX", 5)
JOB_THROUGHPUT_WINDOW_SECONDS: float = _env_float("STORYLOOM_JOB_THROUGHPUT_WINDOW", 60.0)
ALLOWED_IMAGE_MIME_TYPES: frozenset[str] = frozenset({"image/png", "image/jpeg", "image/webp"})

# --- Poll Loop (client) ---
POLL_INTERVAL_SECONDS: float = 3.0
POLL_TIMEOUT_SECONDS: float = 120.0

# --- Rate Limiting ---
RATE_LIMIT_WINDOW_SECONDS: float = 60.0
RATE_LIMIT_AUTH_PER_MINUTE: int = _env_int("STORYLOOM_RATE_LIMIT_AUTH", 5)
RATE_LIMIT_AI_PER_MINUTE: int = _env_int("STORYLOOM_RATE_LIMIT_AI", 30)
RATE_LIMIT_MEDIA_PER_MINUTE: int = _env_int("STORYLOOM_RATE_LIMIT_MEDIA", 10)
RATE_LIMIT_SWEEP_INTERVAL_SECONDS: float = 60.0
RATE_LIMIT_MAX_KEYS: int = 10000

# --- Quotas ---
QUOTA_DAILY_DEFAULT: int = _env_int("STORYLOOM_QUOTA_DAILY", 100)
QUOTA_MONTHLY_DEFAULT: int = _env_int("STORYLOOM_QUOTA_MONTHLY", 2000)

# --- Usage Recording ---
USAGE_QUEUE_MAX: int = 1000

# --- CORS ---
ALLOWED_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.getenv("STORYLOOM_ALLOWED_ORIGINS", "").split(",")
    if origin.strip()
]
