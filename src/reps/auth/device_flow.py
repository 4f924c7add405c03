"""Device authorization — signing in a CLI through the browser.

Learn: The CLI has no browser and no cookie jar, so it borrows one:

    CLI                         server                        browser
    ── initiate() ────────────▶ user_code + device_code
    shows user_code, URL                                      user signs in,
    ── poll(device_code) ─────▶ "pending"                     types user_code
                                ◀──────────────────────────── approve(user_code)
                                creates session, parks the
                                raw token on the record
    ── poll(device_code) ─────▶ "approved" + token, record deleted
    ── poll(device_code) ─────▶ "expired" (record is gone)

States are derived from (approved, denied, expires_at), and every
one-way transition is a single conditional UPDATE/DELETE. Two browsers
approving the same code, or two CLIs polling the same device code, can
never both win.
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reps.auth.crypto import (
    generate_secret,
    generate_user_code,
    hash_secret,
    normalize_user_code,
)
from reps.auth.sessions import SessionManager
from reps.config import settings
from reps.db.models import DeviceAuthCode, utcnow
from reps.events.store import EventStore
from reps.events.types import (
    DEVICE_AUTH_APPROVED,
    DEVICE_AUTH_DELIVERED,
    DEVICE_AUTH_DENIED,
    DEVICE_AUTH_INITIATED,
)

logger = structlog.get_logger()

DeviceAuthStatus = Literal["pending", "approved", "denied", "expired"]

MAX_USER_CODE_ATTEMPTS = 5


@dataclass
class DeviceAuthInitiation:
    user_code: str
    device_code: str
    verification_uri: str
    expires_in: int
    interval: int

    def __repr__(self) -> str:
        return (
            f"DeviceAuthInitiation(user_code={self.user_code!r}, "
            f"expires_in={self.expires_in!r})"
        )


@dataclass
class DevicePollResult:
    status: DeviceAuthStatus
    session_token: Optional[str] = None

    def __repr__(self) -> str:
        return f"DevicePollResult(status={self.status!r})"


class DeviceAuthService:
    """initiate / poll / approve / deny for CLI sign-in."""

    def __init__(
        self,
        db: AsyncSession,
        events: Optional[EventStore] = None,
        *,
        sessions: Optional[SessionManager] = None,
        ttl: Optional[timedelta] = None,
    ):
        self.db = db
        self.events = events or EventStore(db)
        self.sessions = sessions or SessionManager(db, self.events)
        self.ttl = ttl or timedelta(minutes=settings.device_code_ttl_minutes)

    @property
    def verification_uri(self) -> str:
        return f"{settings.app_url.rstrip('/')}/#device-approve"

    # ─── Initiate ─────────────────────────────────────────

    async def initiate(self) -> DeviceAuthInitiation:
        """Start a handshake. Returns both raw codes to the CLI.

        The user code is stored in clear (it is shown on screen anyway);
        the device code only as a hash.
        """
        device_code = generate_secret()
        expires_at = utcnow() + self.ttl

        for attempt in range(1, MAX_USER_CODE_ATTEMPTS + 1):
            user_code = generate_user_code()
            try:
                async with self.db.begin_nested():
                    row = DeviceAuthCode(
                        user_code=user_code,
                        device_code_hash=hash_secret(device_code),
                        expires_at=expires_at,
                    )
                    self.db.add(row)
                    await self.db.flush()
                break
            except IntegrityError:
                # user_code collision with a live record; draw again.
                logger.warning("auth.device_code_collision", attempt=attempt)
                if attempt == MAX_USER_CODE_ATTEMPTS:
                    raise

        await self.events.append(
            stream_id=f"device_auth:{row.id}",
            event_type=DEVICE_AUTH_INITIATED,
            data={"device_auth_id": str(row.id)},
        )
        await self.db.commit()

        return DeviceAuthInitiation(
            user_code=user_code,
            device_code=device_code,
            verification_uri=self.verification_uri,
            expires_in=int(self.ttl.total_seconds()),
            interval=settings.device_poll_interval_seconds,
        )

    # ─── Poll ─────────────────────────────────────────────

    async def poll(self, device_code: str) -> DevicePollResult:
        """Report the handshake state; hand the token over exactly once.

        Learn: The approved path is a DELETE ... RETURNING. Whichever
        poll deletes the row gets the token; every later poll finds
        nothing and reports "expired".
        """
        if not device_code:
            return DevicePollResult(status="expired")

        code_hash = hash_secret(device_code)
        now = utcnow()

        result = await self.db.execute(
            delete(DeviceAuthCode)
            .where(
                DeviceAuthCode.device_code_hash == code_hash,
                DeviceAuthCode.approved.is_(True),
                DeviceAuthCode.denied.is_(False),
                DeviceAuthCode.expires_at > now,
            )
            .returning(DeviceAuthCode.id, DeviceAuthCode.pending_session_token)
            .execution_options(synchronize_session=False)
        )
        handoff = result.first()
        if handoff is not None and handoff.pending_session_token:
            await self.events.append(
                stream_id=f"device_auth:{handoff.id}",
                event_type=DEVICE_AUTH_DELIVERED,
                data={"device_auth_id": str(handoff.id)},
            )
            await self.db.commit()
            return DevicePollResult(
                status="approved", session_token=handoff.pending_session_token
            )
        if handoff is not None:
            # Approved without a token cannot be delivered; treat as gone.
            await self.db.commit()
            return DevicePollResult(status="expired")

        # Column select, not an entity: always the stored values, never a
        # stale object from this session's identity map.
        row = (
            await self.db.execute(
                select(DeviceAuthCode.expires_at, DeviceAuthCode.denied).where(
                    DeviceAuthCode.device_code_hash == code_hash
                )
            )
        ).first()
        await self.db.commit()

        if row is None or row.expires_at <= now:
            return DevicePollResult(status="expired")
        if row.denied:
            return DevicePollResult(status="denied")
        return DevicePollResult(status="pending")

    # ─── Approve / deny ───────────────────────────────────

    async def approve(
        self,
        user_code: str,
        user_id: uuid.UUID,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        """Approve a pending code on behalf of `user_id`.

        Learn: The session is created first (flushed, not committed), then
        one conditional UPDATE claims the pending record. If the claim
        matches nothing — unknown, expired, already approved or denied,
        or a concurrent approval won — the savepoint is rolled back and
        the session never existed.
        """
        code = normalize_user_code(user_code)
        if not code:
            return False

        async with self.db.begin_nested() as savepoint:
            issued = await self.sessions.create(
                user_id,
                user_agent=user_agent or "CLI",
                ip_address=ip_address,
            )
            result = await self.db.execute(
                update(DeviceAuthCode)
                .where(
                    DeviceAuthCode.user_code == code,
                    DeviceAuthCode.approved.is_(False),
                    DeviceAuthCode.denied.is_(False),
                    DeviceAuthCode.expires_at > utcnow(),
                )
                .values(
                    approved=True,
                    user_id=user_id,
                    pending_session_token=issued.token,
                )
                .returning(DeviceAuthCode.id)
                .execution_options(synchronize_session=False)
            )
            device_auth_id = result.scalar()
            if device_auth_id is None:
                await savepoint.rollback()

        if device_auth_id is None:
            await self.db.commit()
            return False

        await self.events.append(
            stream_id=f"device_auth:{device_auth_id}",
            event_type=DEVICE_AUTH_APPROVED,
            data={
                "device_auth_id": str(device_auth_id),
                "user_id": str(user_id),
                "session_id": str(issued.session.id),
            },
        )
        await self.db.commit()
        logger.info("auth.device_approved", device_auth_id=str(device_auth_id), user_id=str(user_id))
        return True

    async def deny(self, user_code: str) -> bool:
        """Deny a pending code. Permanent; a denied code cannot be approved."""
        code = normalize_user_code(user_code)
        if not code:
            return False

        result = await self.db.execute(
            update(DeviceAuthCode)
            .where(
                DeviceAuthCode.user_code == code,
                DeviceAuthCode.approved.is_(False),
                DeviceAuthCode.denied.is_(False),
                DeviceAuthCode.expires_at > utcnow(),
            )
            .values(denied=True)
            .returning(DeviceAuthCode.id)
            .execution_options(synchronize_session=False)
        )
        device_auth_id = result.scalar()
        if device_auth_id is None:
            await self.db.commit()
            return False

        await self.events.append(
            stream_id=f"device_auth:{device_auth_id}",
            event_type=DEVICE_AUTH_DENIED,
            data={"device_auth_id": str(device_auth_id)},
        )
        await self.db.commit()
        return True

    # ─── Sweep ────────────────────────────────────────────

    async def sweep_expired(self) -> int:
        """Delete records past their deadline. Returns count removed."""
        result = await self.db.execute(
            delete(DeviceAuthCode).where(DeviceAuthCode.expires_at <= utcnow())
        )
        await self.db.commit()
        return result.rowcount or 0
