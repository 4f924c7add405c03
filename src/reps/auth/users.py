"""User service — the account lookups the auth core depends on.

Learn: The auth core only owns two user facts: whether the email has
been verified and whether the account is blocked. Everything else
(display name, timezone, theme) is profile data that rides along.
"""

import uuid
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reps.db.models import User, utcnow
from reps.events.store import EventStore
from reps.events.types import (
    USER_ADMIN_UPDATED,
    USER_EMAIL_VERIFIED,
    USER_REGISTERED,
    USER_UPDATED,
)

PROFILE_FIELDS = ("display_name", "timezone", "theme")
ADMIN_FIELDS = ("is_admin", "is_blocked")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserNotFoundError(Exception):
    """Raised when a user id does not exist."""


class UserService:
    """Account lookups and updates."""

    def __init__(self, db: AsyncSession, events: Optional[EventStore] = None):
        self.db = db
        self.events = events or EventStore(db)

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.db.get(User, user_id, populate_existing=True)

    async def find_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.email == normalize_email(email))
        )
        return result.scalars().first()

    async def create_user(
        self, email: str, display_name: Optional[str] = None
    ) -> User:
        """Insert a new user. Flushes; the caller commits."""
        user = User(email=normalize_email(email), display_name=display_name)
        self.db.add(user)
        await self.db.flush()

        await self.events.append(
            stream_id=f"user:{user.id}",
            event_type=USER_REGISTERED,
            data={"user_id": str(user.id)},
        )
        return user

    async def get_or_create(self, email: str) -> tuple[User, bool]:
        """Find a user by email or create one. Returns (user, created).

        Learn: Two first-time sign-ins for the same address can race.
        The insert runs in a SAVEPOINT so a unique-violation only undoes
        the insert, not the caller's transaction; we then read the row
        the other request created.
        """
        user = await self.find_by_email(email)
        if user:
            return user, False

        try:
            async with self.db.begin_nested():
                user = await self.create_user(email)
            return user, True
        except IntegrityError:
            user = await self.find_by_email(email)
            if user is None:
                raise
            return user, False

    async def mark_email_verified(self, user_id: uuid.UUID) -> None:
        """Set email_verified. No-op if already verified. Flushes only."""
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id, User.email_verified.is_(False))
            .values(email_verified=True, updated_at=utcnow())
        )
        if result.rowcount:
            await self.events.append(
                stream_id=f"user:{user_id}",
                event_type=USER_EMAIL_VERIFIED,
                data={"user_id": str(user_id)},
            )

    async def is_blocked(self, user_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(User.is_blocked).where(User.id == user_id)
        )
        return bool(result.scalar())

    # ─── Profile ─────────────────────────────────────────

    async def update_profile(self, user_id: uuid.UUID, **changes) -> User:
        """Apply profile changes (display_name, timezone, theme)."""
        return await self._apply(user_id, PROFILE_FIELDS, USER_UPDATED, changes)

    # ─── Admin ───────────────────────────────────────────

    async def list_users(self, limit: int = 200) -> list[User]:
        result = await self.db.execute(
            select(User).order_by(User.created_at.asc()).limit(limit)
        )
        return list(result.scalars().all())

    async def count_users(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(User))
        return int(result.scalar() or 0)

    async def admin_update(self, user_id: uuid.UUID, **changes) -> User:
        """Toggle is_admin / is_blocked.

        Learn: Blocking does not delete sessions here. The AuthGate
        revokes each blocked session the next time it is presented,
        which also lets the client see a distinct "blocked" response.
        """
        return await self._apply(user_id, ADMIN_FIELDS, USER_ADMIN_UPDATED, changes)

    async def _apply(
        self,
        user_id: uuid.UUID,
        allowed: tuple[str, ...],
        event_type: str,
        changes: dict,
    ) -> User:
        user = await self.get_user(user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")

        applied = {k: v for k, v in changes.items() if k in allowed}
        if not applied:
            return user

        for field, value in applied.items():
            setattr(user, field, value)
        user.updated_at = utcnow()

        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=event_type,
            data={"user_id": str(user_id), "fields": sorted(applied)},
        )
        await self.db.commit()
        await self.db.refresh(user)
        return user
