"""Auth API — magic-link sign-in, device authorization, logout.

Learn: Routes for getting a credential and giving it back:
- POST /auth/magic-link → email a sign-in link (always 200)
- GET /auth/verify → redeem the link, set the session cookie, redirect
- POST /auth/device/initiate → CLI starts the device flow
- POST /auth/device/poll → CLI asks "approved yet?"
- POST /auth/device/approve|deny → signed-in browser answers the CLI
- POST /auth/logout → revoke whatever credential was presented
- GET /auth/me → current user info

This router is mounted open; routes that need a principal declare
get_current_user themselves.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from reps.auth.crypto import looks_like_secret
from reps.auth.dependencies import get_current_user
from reps.auth.device_flow import DeviceAuthService
from reps.auth.gate import CurrentIdentity, bearer_token
from reps.auth.magic_link import MagicLinkService
from reps.auth.sessions import SessionManager
from reps.auth.users import UserService
from reps.config import settings
from reps.db.engine import get_db
from reps.mail import Mailer, get_mailer
from reps.schemas.auth import (
    DeviceInitiateResponse,
    DevicePollRequest,
    DevicePollResponse,
    MagicLinkRequest,
    MessageResponse,
    UserCodeRequest,
)
from reps.schemas.user import UserRead

logger = structlog.get_logger()

router = APIRouter(prefix="/auth")


def client_ip(request: Request) -> Optional[str]:
    """Best guess at the caller's address, proxy headers first."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def set_session_cookie(response, token: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


# ─── Magic link ──────────────────────────────────────────


@router.post("/magic-link", response_model=MessageResponse)
async def request_magic_link(
    body: MagicLinkRequest,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    """Send a sign-in link. Same answer whether or not the account exists."""
    await MagicLinkService(db, mailer).request_sign_in(body.email)
    return {"message": "If an account exists, a magic link has been sent."}


@router.get("/verify")
async def verify_magic_link(
    request: Request,
    token: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    """Redeem a magic link: set the session cookie and go to the app."""
    if not token:
        raise HTTPException(status_code=400, detail="Missing token")

    app_url = settings.app_url.rstrip("/")
    result = await MagicLinkService(db, mailer).redeem(
        token,
        user_agent=request.headers.get("User-Agent"),
        ip_address=client_ip(request),
    )
    if result is None:
        return RedirectResponse(f"{app_url}/#login?error=invalid", status_code=302)

    response = RedirectResponse(f"{app_url}/", status_code=302)
    set_session_cookie(response, result.session_token)
    return response


# ─── Device flow ─────────────────────────────────────────


def _require_session_identity(identity: CurrentIdentity) -> None:
    """Device approval mints a session; the legacy shared key may not."""
    if identity.identity_type == "legacy_api_key":
        raise HTTPException(status_code=403, detail="Session required")


@router.post("/device/initiate", response_model=DeviceInitiateResponse)
async def device_initiate(db: AsyncSession = Depends(get_db)):
    """CLI starts a device authorization."""
    initiation = await DeviceAuthService(db).initiate()
    return DeviceInitiateResponse(
        user_code=initiation.user_code,
        device_code=initiation.device_code,
        verification_uri=initiation.verification_uri,
        expires_in=initiation.expires_in,
        interval=initiation.interval,
    )


@router.post(
    "/device/poll",
    response_model=DevicePollResponse,
    response_model_exclude_none=True,
)
async def device_poll(body: DevicePollRequest, db: AsyncSession = Depends(get_db)):
    """CLI polls. The token is in the response exactly once."""
    result = await DeviceAuthService(db).poll(body.device_code)
    return DevicePollResponse(status=result.status, session_token=result.session_token)


@router.post("/device/approve", response_model=MessageResponse)
async def device_approve(
    body: UserCodeRequest,
    request: Request,
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The signed-in user vouches for the CLI showing `user_code`."""
    _require_session_identity(identity)
    approved = await DeviceAuthService(db).approve(
        body.user_code,
        identity.user_uuid,
        ip_address=client_ip(request),
    )
    if not approved:
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    return {"message": "Device approved"}


@router.post("/device/deny", response_model=MessageResponse)
async def device_deny(
    body: UserCodeRequest,
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Refuse a pending code. The CLI will see "denied"."""
    _require_session_identity(identity)
    denied = await DeviceAuthService(db).deny(body.user_code)
    if not denied:
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    return {"message": "Device denied"}


# ─── Logout ──────────────────────────────────────────────


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
):
    """Revoke the presented cookie and/or bearer session, clear the cookie.

    Learn: No auth dependency here. Logging out with a dead credential is
    still a successful logout. A bearer that is not shaped like a session
    token (e.g. the legacy shared key) is ignored.
    """
    sessions = SessionManager(db)

    cookie_token = request.cookies.get(settings.session_cookie_name)
    if cookie_token:
        await sessions.delete_by_token(cookie_token)

    bearer = bearer_token(authorization)
    if bearer and looks_like_secret(bearer):
        await sessions.delete_by_token(bearer)

    response = JSONResponse({"message": "Logged out"})
    clear_session_cookie(response)
    return response


# ─── Current user ───────────────────────────────────────


@router.get("/me", response_model=UserRead)
async def get_me(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the current authenticated user's info."""
    user = await UserService(db).get_user(identity.user_uuid)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user
