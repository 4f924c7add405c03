"""Magic-link sign-in — single-use tokens delivered by email.

Learn: The flow is:
1. request_sign_in(email) stores hash(token) with a 15-minute expiry
   and emails a link containing the raw token.
2. redeem(token) flips used=false → true in ONE conditional UPDATE that
   also returns the email. Two concurrent clicks on the same link both
   run that UPDATE, but only one of them can match `used = false`, so
   only one session is ever minted per link.

Enumeration defense: request_sign_in behaves identically for known and
unknown addresses, and redeem collapses unknown/expired/used into one
outcome (None).
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

import structlog
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from reps.auth.crypto import generate_secret, hash_secret
from reps.auth.sessions import SessionManager
from reps.auth.users import UserService, normalize_email
from reps.config import settings
from reps.db.models import MagicLinkToken, utcnow
from reps.events.store import EventStore
from reps.events.types import MAGIC_LINK_REDEEMED, MAGIC_LINK_REQUESTED
from reps.mail import LogMailer, MailDeliveryError, Mailer, render_sign_in_email

logger = structlog.get_logger()

SIGN_IN_SUBJECT = "Sign in to reps"


@dataclass
class RedeemResult:
    session_token: str
    user_id: uuid.UUID
    is_new_user: bool

    def __repr__(self) -> str:
        return f"RedeemResult(user_id={self.user_id!r}, is_new_user={self.is_new_user!r})"


class MagicLinkService:
    """Issues and redeems magic-link tokens."""

    def __init__(
        self,
        db: AsyncSession,
        mailer: Mailer,
        *,
        events: Optional[EventStore] = None,
        sessions: Optional[SessionManager] = None,
        users: Optional[UserService] = None,
        fallback_mailer: Optional[Mailer] = None,
        ttl: Optional[timedelta] = None,
    ):
        self.db = db
        self.mailer = mailer
        self.events = events or EventStore(db)
        self.sessions = sessions or SessionManager(db, self.events)
        self.users = users or UserService(db, self.events)
        self.fallback_mailer = fallback_mailer or LogMailer()
        self.ttl = ttl or timedelta(minutes=settings.magic_link_ttl_minutes)

    def build_link(self, token: str) -> str:
        base = settings.app_url.rstrip("/")
        return f"{base}/api/v1/auth/verify?{urlencode({'token': token})}"

    # ─── Request ──────────────────────────────────────────

    async def request_sign_in(self, email: str) -> None:
        """Store a fresh token for `email` and send the link.

        Always returns normally whether or not an account exists.
        Store errors propagate; mail errors fall back to the log.
        """
        email = normalize_email(email)
        token = generate_secret()
        row = MagicLinkToken(
            email=email,
            token_hash=hash_secret(token),
            expires_at=utcnow() + self.ttl,
        )
        self.db.add(row)
        await self.db.flush()
        await self.events.append(
            stream_id=f"magic_link:{row.id}",
            event_type=MAGIC_LINK_REQUESTED,
            data={"token_id": str(row.id)},
        )
        await self.db.commit()

        link = self.build_link(token)
        html = render_sign_in_email(link, int(self.ttl.total_seconds() // 60))
        try:
            await self.mailer.send(email, SIGN_IN_SUBJECT, html, link=link)
        except MailDeliveryError as e:
            logger.error("auth.magic_link_send_failed", token_id=str(row.id), error=str(e))
            await self.fallback_mailer.send(email, SIGN_IN_SUBJECT, html, link=link)

    # ─── Redeem ───────────────────────────────────────────

    async def redeem(
        self,
        token: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[RedeemResult]:
        """Consume a token and sign the owner in.

        Returns None when the token is unknown, expired or already used
        (indistinguishable on purpose).
        """
        if not token:
            return None

        result = await self.db.execute(
            update(MagicLinkToken)
            .where(
                MagicLinkToken.token_hash == hash_secret(token),
                MagicLinkToken.used.is_(False),
                MagicLinkToken.expires_at > utcnow(),
            )
            .values(used=True)
            .returning(MagicLinkToken.id, MagicLinkToken.email)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await self.db.commit()
            return None

        token_id, email = row
        user, is_new_user = await self.users.get_or_create(email)
        # Redeeming the link proves control of the mailbox.
        await self.users.mark_email_verified(user.id)

        issued = await self.sessions.create(
            user.id, user_agent=user_agent, ip_address=ip_address
        )
        await self.events.append(
            stream_id=f"magic_link:{token_id}",
            event_type=MAGIC_LINK_REDEEMED,
            data={
                "token_id": str(token_id),
                "user_id": str(user.id),
                "session_id": str(issued.session.id),
                "is_new_user": is_new_user,
            },
        )
        await self.db.commit()

        logger.info("auth.magic_link_redeemed", user_id=str(user.id), is_new_user=is_new_user)
        return RedeemResult(
            session_token=issued.token,
            user_id=user.id,
            is_new_user=is_new_user,
        )

    # ─── Sweep ────────────────────────────────────────────

    async def sweep_expired(self) -> int:
        """Delete tokens past expiry. Purely housekeeping."""
        result = await self.db.execute(
            delete(MagicLinkToken).where(MagicLinkToken.expires_at <= utcnow())
        )
        await self.db.commit()
        return result.rowcount or 0
