"""FastAPI dependency injection for authentication and the request clock.

These dependencies are used in endpoint function signatures to inject the
authenticated caller and the current time. Tests override both through
app.dependency_overrides.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from fastapi import HTTPException, Request, status

from src.crm.core.security import verify_token


@dataclass(frozen=True)
class AuthenticatedUser:
    """Caller identity taken from a verified access token."""

    user_id: str
    claims: dict = field(default_factory=dict)


async def get_current_user(request: Request) -> AuthenticatedUser:
    """Validate the Authorization: Bearer token and return the caller.

    Raises:
        HTTPException(401): If no valid token is provided.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(auth_header[7:], token_type="access")
    return AuthenticatedUser(user_id=str(payload["sub"]), claims=payload)


def get_clock() -> datetime:
    """Current time for stage timestamps and statistics windows."""
    return datetime.now(timezone.utc)
