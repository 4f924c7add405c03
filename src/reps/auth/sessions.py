"""Session manager — opaque, DB-backed login sessions.

Learn: A session is a random 256-bit token handed to the client once.
The server keeps only its SHA-256 hash, so validating a token is a
lookup by hash, and a leaked table leaks nothing usable.

Sliding window:
- A new session lives for 30 days.
- Each successful validation touches last_used_at.
- If fewer than 15 days remain, the expiry is pushed back to a fresh
  30 days. Most validations therefore write one timestamp, an active
  session never expires mid-use, and an abandoned one dies within
  30-45 days of last activity.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reps.auth.crypto import generate_secret, hash_secret
from reps.config import settings
from reps.db.models import Session, utcnow
from reps.events.store import EventStore
from reps.events.types import (
    SESSION_CREATED,
    SESSION_REVOKED,
    SESSIONS_REVOKED_ALL,
)

logger = structlog.get_logger()


@dataclass
class SessionInfo:
    """What a validated session tells the caller (never the token)."""
    id: uuid.UUID
    user_id: uuid.UUID
    expires_at: datetime
    created_at: datetime
    last_used_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def from_row(cls, row: Session) -> "SessionInfo":
        return cls(
            id=row.id,
            user_id=row.user_id,
            expires_at=row.expires_at,
            created_at=row.created_at,
            last_used_at=row.last_used_at,
            user_agent=row.user_agent,
            ip_address=row.ip_address,
        )


@dataclass
class IssuedSession:
    """A freshly created session. `token` is the only copy of the secret."""
    token: str
    session: SessionInfo

    def __repr__(self) -> str:
        return f"IssuedSession(session={self.session!r})"


class SessionManager:
    """Creates, validates, renews and revokes sessions."""

    def __init__(
        self,
        db: AsyncSession,
        events: Optional[EventStore] = None,
        *,
        ttl: Optional[timedelta] = None,
        renew_threshold: Optional[timedelta] = None,
    ):
        self.db = db
        self.events = events or EventStore(db)
        self.ttl = ttl or timedelta(days=settings.session_ttl_days)
        self.renew_threshold = renew_threshold or timedelta(
            days=settings.session_renew_threshold_days
        )

    # ─── Create ───────────────────────────────────────────

    async def create(
        self,
        user_id: uuid.UUID,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedSession:
        """Create a session and return the raw token once.

        Learn: Only flushes. Both callers (magic-link redemption and
        device approval) must make the new session atomic with their own
        one-time state change, so they own the commit.
        """
        token = generate_secret()
        now = utcnow()
        row = Session(
            user_id=user_id,
            token_hash=hash_secret(token),
            expires_at=now + self.ttl,
            created_at=now,
            last_used_at=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        self.db.add(row)
        await self.db.flush()

        await self.events.append(
            stream_id=f"session:{row.id}",
            event_type=SESSION_CREATED,
            data={"session_id": str(row.id), "user_id": str(user_id)},
        )
        logger.info("auth.session_created", session_id=str(row.id), user_id=str(user_id))
        return IssuedSession(token=token, session=SessionInfo.from_row(row))

    # ─── Validate ─────────────────────────────────────────

    async def validate(self, token: str) -> Optional[SessionInfo]:
        """Resolve a raw token to its session, renewing the window.

        Returns None for unknown, expired or tampered tokens alike.
        """
        if not token:
            return None

        now = utcnow()
        result = await self.db.execute(
            select(Session).where(
                Session.token_hash == hash_secret(token),
                Session.expires_at > now,
            ).execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        if not row:
            return None

        info = SessionInfo.from_row(row)
        values: dict = {"last_used_at": now}
        if row.expires_at - now < self.renew_threshold:
            values["expires_at"] = now + self.ttl

        # Best-effort: a lost race or transient error here must not
        # turn a valid credential into a 401.
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    update(Session)
                    .where(Session.id == row.id)
                    .values(**values)
                )
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.warning("auth.session_touch_failed", session_id=str(row.id), error=str(e))
            return info

        info.last_used_at = values["last_used_at"]
        info.expires_at = values.get("expires_at", info.expires_at)
        return info

    # ─── Revoke ───────────────────────────────────────────

    async def delete_by_id(
        self,
        session_id: uuid.UUID,
        *,
        user_id: Optional[uuid.UUID] = None,
        reason: str = "revoked",
    ) -> bool:
        """Delete one session. With user_id, only if that user owns it."""
        q = delete(Session).where(Session.id == session_id)
        if user_id is not None:
            q = q.where(Session.user_id == user_id)
        result = await self.db.execute(q)
        deleted = bool(result.rowcount)
        if deleted:
            await self.events.append(
                stream_id=f"session:{session_id}",
                event_type=SESSION_REVOKED,
                data={"session_id": str(session_id), "reason": reason},
            )
        await self.db.commit()
        return deleted

    async def delete_by_token(self, token: str) -> bool:
        """Delete the session a raw token belongs to (logout)."""
        result = await self.db.execute(
            delete(Session)
            .where(Session.token_hash == hash_secret(token))
            .returning(Session.id)
        )
        session_id = result.scalar()
        if session_id is not None:
            await self.events.append(
                stream_id=f"session:{session_id}",
                event_type=SESSION_REVOKED,
                data={"session_id": str(session_id), "reason": "logout"},
            )
        await self.db.commit()
        return session_id is not None

    async def delete_all_for_user(self, user_id: uuid.UUID) -> int:
        """Sign a user out everywhere. Returns the number removed."""
        result = await self.db.execute(
            delete(Session).where(Session.user_id == user_id)
        )
        count = result.rowcount or 0
        if count:
            await self.events.append(
                stream_id=f"user:{user_id}",
                event_type=SESSIONS_REVOKED_ALL,
                data={"user_id": str(user_id), "count": count},
            )
        await self.db.commit()
        return count

    # ─── Queries ──────────────────────────────────────────

    async def list_sessions(
        self,
        user_id: uuid.UUID,
        *,
        include_expired: bool = False,
        user_agent: Optional[str] = None,
        limit: int = 50,
    ) -> list[SessionInfo]:
        """List a user's sessions, most recently used first."""
        q = (
            select(Session)
            .where(Session.user_id == user_id)
            .order_by(Session.last_used_at.desc())
            .limit(limit)
        )
        if not include_expired:
            q = q.where(Session.expires_at > utcnow())
        if user_agent:
            q = q.where(Session.user_agent == user_agent)

        result = await self.db.execute(q)
        return [SessionInfo.from_row(row) for row in result.scalars().all()]

    async def last_active_by_user(self) -> dict[uuid.UUID, datetime]:
        """Most recent last_used_at per user, for the admin listing."""
        result = await self.db.execute(
            select(Session.user_id, func.max(Session.last_used_at)).group_by(
                Session.user_id
            )
        )
        return {user_id: last_used for user_id, last_used in result.all()}

    async def count_active(self) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Session)
            .where(Session.expires_at > utcnow())
        )
        return int(result.scalar() or 0)

    # ─── Sweep ────────────────────────────────────────────

    async def sweep_expired(self) -> int:
        """Delete every session past its expiry. Returns count removed.

        Learn: One conditional DELETE, not select-then-delete, so it is
        safe to run alongside validations (a session renewed a moment
        ago no longer matches the predicate).
        """
        result = await self.db.execute(
            delete(Session).where(Session.expires_at <= utcnow())
        )
        await self.db.commit()
        return result.rowcount or 0
