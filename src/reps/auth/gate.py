"""AuthGate — the single place a request becomes an identity.

Learn: Resolution order, first match wins:
1. Session cookie → SessionManager.validate
2. Authorization: Bearer <token> → SessionManager.validate
3. For a validated session, load the user. A blocked user's session is
   deleted on the spot and AccountBlockedError is raised, a signal
   distinct from "not authenticated". Block status is only revealed to
   someone already holding a valid credential.
4. Deprecated: a bearer equal to REPS_LEGACY_API_KEY (constant-time
   compare) maps to REPS_LEGACY_API_KEY_USER_ID. No session, no block
   check. Kept only so old scripts keep working.
5. Nothing matched → None.
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from reps.auth.crypto import secrets_equal
from reps.auth.sessions import SessionInfo, SessionManager
from reps.auth.users import UserService
from reps.config import settings

logger = structlog.get_logger()


class AccountBlockedError(Exception):
    """A valid credential belonging to a blocked account."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} is blocked")
        self.user_id = user_id


class CurrentIdentity:
    """Represents the authenticated identity making the request.

    Learn: This is the principal downstream handlers see. It is built
    either from a session (the normal case) or from the legacy shared
    key, which has no session_id.
    """

    def __init__(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        identity_type: str = "session",  # "session" or "legacy_api_key"
        is_admin: bool = False,
    ):
        self.user_id = user_id
        self.session_id = session_id
        self.identity_type = identity_type
        self.is_admin = is_admin

    @property
    def user_uuid(self) -> uuid.UUID:
        return uuid.UUID(self.user_id)

    def __repr__(self) -> str:
        return (
            f"CurrentIdentity(user_id={self.user_id!r}, "
            f"identity_type={self.identity_type!r})"
        )


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer ...` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthGate:
    """Turns request credentials into a CurrentIdentity."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        sessions: Optional[SessionManager] = None,
        users: Optional[UserService] = None,
    ):
        self.db = db
        self.sessions = sessions or SessionManager(db)
        self.users = users or UserService(db, self.sessions.events)

    async def authenticate(
        self,
        *,
        cookie_token: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> Optional[CurrentIdentity]:
        bearer = bearer_token(authorization)

        for token in (cookie_token, bearer):
            if not token:
                continue
            info = await self.sessions.validate(token)
            if info:
                return await self._resolve(info)

        if bearer and self._matches_legacy_key(bearer):
            logger.warning(
                "auth.legacy_api_key_used",
                user_id=settings.legacy_api_key_user_id,
            )
            return CurrentIdentity(
                user_id=str(settings.legacy_api_key_user_id),
                identity_type="legacy_api_key",
            )

        return None

    async def _resolve(self, info: SessionInfo) -> Optional[CurrentIdentity]:
        user = await self.users.get_user(info.user_id)
        if user is None:
            return None

        if user.is_blocked:
            await self.sessions.delete_by_id(info.id, reason="blocked")
            logger.warning("auth.blocked_user_rejected", user_id=str(user.id))
            raise AccountBlockedError(str(user.id))

        return CurrentIdentity(
            user_id=str(user.id),
            session_id=str(info.id),
            is_admin=user.is_admin,
        )

    @staticmethod
    def _matches_legacy_key(token: str) -> bool:
        if not settings.legacy_api_key or not settings.legacy_api_key_user_id:
            return False
        return secrets_equal(token, settings.legacy_api_key)
