"""Rate limiting middleware for the Storyloom API

Each endpoint class has its own sliding window:
- auth: keyed by client IP
- ai: keyed by user id, falling back to IP
- media: keyed by user id, falling back to IP (image and portrait generation)

Security features:
- IP spoofing protection (only trusts X-Forwarded-For from Cloud Run)
- Idle keys are swept on a fixed interval so windows don't accumulate
"""

from __future__ import annotations

import ipaddress
import os
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from storyloom.api.middleware.user_auth import resolve_user
from storyloom.config import RATE_LIMIT_SWEEP_INTERVAL_SECONDS
from storyloom.errors import RateLimitExceededError
from storyloom.governance.rate_limit import (
    EndpointClass,
    SlidingWindowRateLimiter,
    build_limiters,
)
from storyloom.observability.telemetry import counter, log_event

_MEDIA_SUFFIXES = ("/generate-portrait",)
_MEDIA_PATHS = ("/api/jobs/images/generate",)


def classify_request(method: str, path: str) -> EndpointClass | None:
    """Endpoint class for a request, or None if it isn't rate limited.

    Job status polls and image fetches are not limited: the client polls
    every few seconds by design.
    """
    if path.startswith("/api/auth/"):
        return EndpointClass.AUTH
    if path.startswith("/api/ai/"):
        return EndpointClass.AI
    if method == "POST" and (path in _MEDIA_PATHS or path.endswith(_MEDIA_SUFFIXES)):
        return EndpointClass.MEDIA
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        limiters: dict[EndpointClass, SlidingWindowRateLimiter] | None = None,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = RATE_LIMIT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        super().__init__(app)
        self.limiters = limiters if limiters is not None else build_limiters(clock=clock)
        self._clock = clock
        self.sweep_interval = sweep_interval
        self._last_sweep = clock()

        # Cloud Run sets this header - only trust X-Forwarded-For when present
        self._trusted_proxy_header = "X-Cloud-Trace-Context"

    def _is_valid_ip(self, ip_str: str) -> bool:
        try:
            ipaddress.ip_address(ip_str)
            return True
        except ValueError:
            return False

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP with spoofing protection.

        Only trusts X-Forwarded-For when the request came through Cloud Run
        (X-Cloud-Trace-Context present), or in development.
        """
        if self._trusted_proxy_header in request.headers:
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                ip = forwarded.split(",")[0].strip()
                if self._is_valid_ip(ip):
                    return ip

        if os.getenv("STORYLOOM_ENV", "development") == "development":
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                ip = forwarded.split(",")[0].strip()
                if self._is_valid_ip(ip):
                    return ip

            real_ip = request.headers.get("X-Real-IP")
            if real_ip and self._is_valid_ip(real_ip):
                return real_ip

        return request.client.host if request.client else "unknown"

    def _key(self, endpoint_class: EndpointClass, request: Request) -> str:
        if endpoint_class is EndpointClass.AUTH:
            return f"auth:{self._get_client_ip(request)}"
        user = resolve_user(request)
        identity = user.id if user is not None else self._get_client_ip(request)
        return f"{endpoint_class.value}:{identity}"

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        removed = sum(limiter.sweep() for limiter in self.limiters.values())
        if removed:
            counter("governance.rate_limit.swept", removed)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint_class = classify_request(request.method, request.url.path)
        if endpoint_class is None or request.method == "OPTIONS":
            return await call_next(request)

        self._maybe_sweep()

        limiter = self.limiters[endpoint_class]
        key = self._key(endpoint_class, request)
        decision = limiter.hit(key)

        if not decision.allowed:
            counter(f"governance.rate_limit.{endpoint_class.value}.rejected")
            log_event(
                "governance.rate_limit.exceeded",
                endpoint_class=endpoint_class.value,
                key=key,
                retry_after=decision.retry_after,
            )
            reset_at = datetime.fromtimestamp(decision.reset_at, tz=UTC).isoformat()
            error = RateLimitExceededError(
                retry_after=decision.retry_after, limit=decision.limit, reset_at=reset_at
            )
            return JSONResponse(
                status_code=error.http_status,
                content=error.to_payload(),
                headers={
                    "Retry-After": str(decision.retry_after),
                    "X-RateLimit-Limit": str(decision.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response
