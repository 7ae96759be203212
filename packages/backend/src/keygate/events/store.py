"""Event store — append-only audit log.

Learn: Every authentication state change (user minted, credential stored,
counter advanced, credential revoked) is recorded as an immutable event.
The store only flushes; the caller's unit of work commits, so an event is
durable exactly when the change it describes is.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.db.models import Event


class EventStore:
    """Append-only event store backed by the relational store."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        stream_id: str,
        event_type: str,
        data: dict,
        metadata: dict | None = None,
    ) -> Event:
        """Append an event to a stream. Returns the created event."""
        event = Event(
            stream_id=stream_id,
            type=event_type,
            data=data,
            meta=metadata or {},
        )
        self.db.add(event)
        await self.db.flush()  # get the auto-generated id
        return event

    async def read_stream(
        self,
        stream_id: str,
        after_id: int = 0,
        limit: int = 100,
    ) -> list[Event]:
        """Read events for a specific stream, optionally after a given position."""
        result = await self.db.execute(
            select(Event)
            .where(Event.stream_id == stream_id, Event.id > after_id)
            .order_by(Event.id)
            .limit(limit)
        )
        return list(result.scalars().all())
