"""SessionManager — creation, sliding-window validation, revocation, sweeps.

Learn: These tests drive the service directly against the per-test
SQLite database. Expiry is simulated by rewriting expires_at with a
plain UPDATE rather than by waiting.
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from reps.auth.crypto import hash_secret
from reps.auth.sessions import SessionManager
from reps.db.models import Event, Session, utcnow


async def _set_expiry(db, token: str, delta: timedelta) -> None:
    await db.execute(
        update(Session)
        .where(Session.token_hash == hash_secret(token))
        .values(expires_at=utcnow() + delta)
    )
    await db.commit()


# ═══════════════════════════════════════════════════════════
# Create
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_stores_only_the_hash(db_session, user):
    manager = SessionManager(db_session)
    issued = await manager.create(user.id, user_agent="pytest", ip_address="10.0.0.1")
    await db_session.commit()

    rows = (await db_session.execute(select(Session.token_hash))).scalars().all()
    assert rows == [hash_secret(issued.token)]
    assert issued.token not in repr(issued)
    assert issued.session.user_agent == "pytest"
    assert issued.session.expires_at > utcnow() + timedelta(days=29)


@pytest.mark.asyncio
async def test_create_records_event_without_token(db_session, user):
    issued = await SessionManager(db_session).create(user.id)
    await db_session.commit()

    events = (await db_session.execute(select(Event))).scalars().all()
    created = [e for e in events if e.type == "session.created"]
    assert len(created) == 1
    assert created[0].data["session_id"] == str(issued.session.id)
    assert issued.token not in str(created[0].data)


# ═══════════════════════════════════════════════════════════
# Validate
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_validate_valid_token(db_session, user, user_token):
    info = await SessionManager(db_session).validate(user_token)
    assert info is not None
    assert info.user_id == user.id


@pytest.mark.asyncio
async def test_validate_unknown_or_empty_token(db_session, user_token):
    manager = SessionManager(db_session)
    assert await manager.validate("f" * 64) is None
    assert await manager.validate("") is None
    assert await manager.validate(user_token[:-1]) is None


@pytest.mark.asyncio
async def test_expired_token_fails_even_though_hash_matches(db_session, user_token):
    await _set_expiry(db_session, user_token, timedelta(seconds=-1))
    assert await SessionManager(db_session).validate(user_token) is None


@pytest.mark.asyncio
async def test_validate_touches_last_used(db_session, user_token):
    before = (
        await db_session.execute(select(Session.last_used_at))
    ).scalar_one()

    info = await SessionManager(db_session).validate(user_token)
    assert info.last_used_at >= before


@pytest.mark.asyncio
async def test_renews_when_less_than_threshold_remains(db_session, user_token):
    await _set_expiry(db_session, user_token, timedelta(days=10))

    info = await SessionManager(db_session).validate(user_token)
    assert info.expires_at > utcnow() + timedelta(days=29)

    stored = (await db_session.execute(select(Session.expires_at))).scalar_one()
    assert stored > utcnow() + timedelta(days=29)


@pytest.mark.asyncio
async def test_no_renewal_above_threshold(db_session, user_token):
    await _set_expiry(db_session, user_token, timedelta(days=20))

    info = await SessionManager(db_session).validate(user_token)
    assert utcnow() + timedelta(days=19) < info.expires_at < utcnow() + timedelta(days=21)


# ═══════════════════════════════════════════════════════════
# Revoke
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_delete_by_token(db_session, user_token):
    manager = SessionManager(db_session)
    assert await manager.delete_by_token(user_token) is True
    assert await manager.validate(user_token) is None
    assert await manager.delete_by_token(user_token) is False


@pytest.mark.asyncio
async def test_delete_by_id_respects_owner(db_session, user, user_token):
    manager = SessionManager(db_session)
    info = await manager.validate(user_token)

    assert await manager.delete_by_id(info.id, user_id=uuid.uuid4()) is False
    assert await manager.validate(user_token) is not None

    assert await manager.delete_by_id(info.id, user_id=user.id) is True
    assert await manager.validate(user_token) is None


@pytest.mark.asyncio
async def test_delete_all_for_user_leaves_others(db_session, user, user_token, make_user, make_session_token):
    other = await make_user("other@example.com")
    other_token = await make_session_token(other)
    await make_session_token(user)

    manager = SessionManager(db_session)
    assert await manager.delete_all_for_user(user.id) == 2
    assert await manager.validate(user_token) is None
    assert await manager.validate(other_token) is not None


# ═══════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_list_sessions_filters_and_orders(db_session, user, user_token, make_session_token):
    manager = SessionManager(db_session)
    cli_token = await make_session_token(user, user_agent="CLI")
    stale_token = await make_session_token(user)
    await _set_expiry(db_session, stale_token, timedelta(seconds=-1))

    # Most recently used first.
    await manager.validate(cli_token)

    sessions = await manager.list_sessions(user.id)
    assert len(sessions) == 2
    assert sessions[0].user_agent == "CLI"

    assert len(await manager.list_sessions(user.id, include_expired=True)) == 3
    only_cli = await manager.list_sessions(user.id, user_agent="CLI")
    assert [s.user_agent for s in only_cli] == ["CLI"]


@pytest.mark.asyncio
async def test_count_active(db_session, user, user_token, make_session_token):
    stale = await make_session_token(user)
    await _set_expiry(db_session, stale, timedelta(seconds=-1))
    assert await SessionManager(db_session).count_active() == 1


# ═══════════════════════════════════════════════════════════
# Sweep
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_sweep_removes_only_expired(db_session, user, user_token, make_session_token):
    stale = await make_session_token(user)
    await _set_expiry(db_session, stale, timedelta(seconds=-1))

    manager = SessionManager(db_session)
    assert await manager.sweep_expired() == 1
    assert await manager.sweep_expired() == 0
    assert await manager.validate(user_token) is not None
