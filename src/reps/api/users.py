"""Users API — profile, own sessions, and admin controls.

Learn: Everything here sits behind get_current_user (applied when the
router is included). Admin routes additionally depend on require_admin.
Session listings never expose tokens; `current` marks the session the
request itself arrived on.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from reps.api.auth import clear_session_cookie
from reps.auth.dependencies import get_current_user, require_admin
from reps.auth.gate import CurrentIdentity
from reps.auth.sessions import SessionManager
from reps.auth.users import UserNotFoundError, UserService
from reps.db.engine import get_db
from reps.schemas.user import (
    AdminStats,
    AdminUserRead,
    AdminUserUpdate,
    ProfileUpdate,
    SessionRead,
    UserRead,
)

router = APIRouter(prefix="/users")


# ─── Profile ────────────────────────────────────────────


@router.get("/me", response_model=UserRead)
async def get_profile(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user = await UserService(db).get_user(identity.user_uuid)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.patch("/me", response_model=UserRead)
async def update_profile(
    body: ProfileUpdate,
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Partial update: only fields present in the body change."""
    try:
        return await UserService(db).update_profile(
            identity.user_uuid, **body.changes()
        )
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")


# ─── Sessions ───────────────────────────────────────────


@router.get("/me/sessions", response_model=list[SessionRead])
async def list_my_sessions(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    sessions = await SessionManager(db).list_sessions(identity.user_uuid)
    return [
        SessionRead(
            id=s.id,
            created_at=s.created_at,
            last_used_at=s.last_used_at,
            expires_at=s.expires_at,
            user_agent=s.user_agent,
            ip_address=s.ip_address,
            current=str(s.id) == identity.session_id,
        )
        for s in sessions
    ]


@router.delete("/me/sessions/{session_id}")
async def revoke_my_session(
    session_id: uuid.UUID,
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Sign out one device. Only the owner's sessions match."""
    deleted = await SessionManager(db).delete_by_id(
        session_id, user_id=identity.user_uuid
    )
    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"deleted": True, "id": str(session_id)}


@router.delete("/me/sessions")
async def revoke_all_my_sessions(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Sign out everywhere, including this browser."""
    count = await SessionManager(db).delete_all_for_user(identity.user_uuid)
    response = JSONResponse({"deleted": count})
    clear_session_cookie(response)
    return response


# ─── Admin ──────────────────────────────────────────────


@router.get("/admin/users", response_model=list[AdminUserRead])
async def admin_list_users(
    identity: CurrentIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    users = await UserService(db).list_users()
    last_active = await SessionManager(db).last_active_by_user()
    return [
        AdminUserRead.model_validate(u).model_copy(
            update={"last_active_at": last_active.get(u.id)}
        )
        for u in users
    ]


@router.patch("/admin/users/{user_id}", response_model=AdminUserRead)
async def admin_update_user(
    user_id: uuid.UUID,
    body: AdminUserUpdate,
    identity: CurrentIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Toggle another user's admin / blocked flags."""
    if user_id == identity.user_uuid:
        raise HTTPException(status_code=400, detail="Cannot modify your own account")
    try:
        return await UserService(db).admin_update(
            user_id, **body.model_dump(exclude_none=True)
        )
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")


@router.get("/admin/stats", response_model=AdminStats)
async def admin_stats(
    identity: CurrentIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return AdminStats(
        total_users=await UserService(db).count_users(),
        active_sessions=await SessionManager(db).count_active(),
    )
