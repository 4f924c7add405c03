"""Audit log — one row per auth state change.

Learn: Services append here inside the same transaction as the change
itself, so the trail can never disagree with the tables. Payloads are
ids only; append() refuses anything shaped like a raw token, and stamps
the request id (bound by RequestIdMiddleware) into the row's metadata so
an event can be matched to its log lines.
"""

from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reps.auth.crypto import looks_like_secret
from reps.db.models import Event


class EventStore:
    """Append-only audit events for users, sessions, links and device codes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, stream_id: str, event_type: str, data: dict) -> Event:
        """Record an event. Flushes; the caller's commit makes it durable.

        Raises ValueError if a payload value looks like a raw secret.
        """
        for key, value in data.items():
            if isinstance(value, str) and looks_like_secret(value):
                raise ValueError(f"Refusing to record secret-shaped value for {key!r}")

        request_id = structlog.contextvars.get_contextvars().get("request_id")
        event = Event(
            stream_id=stream_id,
            type=event_type,
            data=data,
            meta={"request_id": request_id} if request_id else {},
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def history(
        self,
        stream_id: str,
        event_types: Optional[list[str]] = None,
    ) -> list[Event]:
        """Everything recorded for one user/session/link/device code, oldest first."""
        query = select(Event).where(Event.stream_id == stream_id).order_by(Event.id)
        if event_types:
            query = query.where(Event.type.in_(event_types))
        result = await self.db.execute(query)
        return list(result.scalars().all())
