"""
Caller identity for Storyloom API routes.

Authentication happens upstream (gateway or session layer). By the time a
request reaches these routes the caller is either attached to
request.state.user or forwarded in the X-User-Id header.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, Request, status

from storyloom.observability.logging import get_logger

logger = get_logger(__name__)

USER_ID_HEADER = "X-User-Id"
_MAX_USER_ID_LENGTH = 200


@dataclass
class AuthenticatedUser:
    """The caller as resolved from the upstream auth layer."""

    id: str
    email: str | None = None

    def __str__(self) -> str:
        return f"User({self.id})"


def _from_state(value: Any) -> AuthenticatedUser | None:
    if isinstance(value, AuthenticatedUser):
        return value
    if isinstance(value, dict) and value.get("id"):
        return AuthenticatedUser(id=str(value["id"]), email=value.get("email"))
    return None


def resolve_user(request: Request) -> AuthenticatedUser | None:
    """Caller identity if present, without raising."""
    user = _from_state(getattr(request.state, "user", None))
    if user is not None:
        return user

    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if user_id and len(user_id) <= _MAX_USER_ID_LENGTH:
        return AuthenticatedUser(id=user_id)
    return None


async def get_current_user(request: Request) -> AuthenticatedUser:
    """
    FastAPI dependency to get the current user.

    Usage:
        @router.post("/endpoint")
        async def endpoint(user: AuthenticatedUser = Depends(get_current_user)):
            ...
    """
    user = resolve_user(request)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user
