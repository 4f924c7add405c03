"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers (and at the
include_router level) to run the AuthGate and publish the identity:
- request.state.identity for handlers that take the Request
- structlog contextvars (user_id) so every log line is attributable
"""

from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from reps.auth.gate import AuthGate, CurrentIdentity
from reps.config import settings
from reps.db.engine import get_db


async def get_current_user_optional(
    request: Request,
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Optional[CurrentIdentity]:
    """Extract current identity (optional — returns None if no auth).

    Learn: This is the "soft" auth dependency. It can still raise
    AccountBlockedError, which the app turns into a 403 that also
    clears the session cookie.
    """
    gate = AuthGate(db)
    identity = await gate.authenticate(
        cookie_token=request.cookies.get(settings.session_cookie_name),
        authorization=authorization,
    )
    if identity:
        request.state.identity = identity
        structlog.contextvars.bind_contextvars(user_id=identity.user_id)
    return identity


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if no auth)."""
    if not identity:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


async def require_admin(
    identity: CurrentIdentity = Depends(get_current_user),
) -> CurrentIdentity:
    """Admin-only routes."""
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return identity
