"""AuthGate — credential resolution order, without HTTP in the way."""

import pytest
from sqlalchemy import delete, func, select

from reps.auth.gate import AccountBlockedError, AuthGate, bearer_token
from reps.config import settings
from reps.db.models import Event, Session, User


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer abc") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("Bearer ") is None
    assert bearer_token(None) is None


@pytest.mark.asyncio
async def test_cookie_wins_over_bearer(db_session, user, user_token, make_user, make_session_token):
    other = await make_user("other@example.com")
    other_token = await make_session_token(other)

    identity = await AuthGate(db_session).authenticate(
        cookie_token=user_token, authorization=f"Bearer {other_token}"
    )
    assert identity.user_id == str(user.id)
    assert identity.identity_type == "session"
    assert identity.session_id is not None


@pytest.mark.asyncio
async def test_no_credentials(db_session):
    assert await AuthGate(db_session).authenticate() is None


@pytest.mark.asyncio
async def test_deleted_user_is_unauthenticated(db_session, user, user_token):
    await db_session.execute(delete(User).where(User.id == user.id))
    await db_session.commit()
    identity = await AuthGate(db_session).authenticate(cookie_token=user_token)
    assert identity is None


@pytest.mark.asyncio
async def test_blocked_user_raises_and_session_deleted(db_session, user, user_token):
    user.is_blocked = True
    await db_session.commit()

    with pytest.raises(AccountBlockedError):
        await AuthGate(db_session).authenticate(authorization=f"Bearer {user_token}")

    count = (await db_session.execute(select(func.count()).select_from(Session))).scalar()
    assert count == 0

    revoked = (
        await db_session.execute(select(Event).where(Event.type == "session.revoked"))
    ).scalars().all()
    assert [e.data["reason"] for e in revoked] == ["blocked"]


@pytest.mark.asyncio
async def test_legacy_key_skips_sessions(db_session, monkeypatch, user):
    monkeypatch.setattr(settings, "legacy_api_key", "legacy-shared-key")
    monkeypatch.setattr(settings, "legacy_api_key_user_id", str(user.id))

    identity = await AuthGate(db_session).authenticate(
        authorization="Bearer legacy-shared-key"
    )
    assert identity.identity_type == "legacy_api_key"
    assert identity.session_id is None
    assert identity.user_id == str(user.id)
