# model/events.py
from __future__ import annotations
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import EventNotFound, InvalidOrder
from ..helpers import new_id, now_ts
from ..infra.sql import atomic
from ..schemas import EventCreate
from .db import Event, EventType, TicketType

logger = logging.getLogger(__name__)


async def create_event(session: AsyncSession, data: EventCreate) -> Event:
    """
    Create an event with its ticket types. FREE events only carry price-0
    ticket types, PAID events need at least one priced one.
    """
    prices = [tt.price for tt in data.ticket_types]
    if data.event_type == EventType.FREE and any(prices):
        raise InvalidOrder(
            "Free events cannot have paid ticket types",
            errors=[
                f"ticketTypes.{i}.price: must be 0 for a free event"
                for i, p in enumerate(prices) if p
            ],
        )
    if data.event_type == EventType.PAID and not any(prices):
        raise InvalidOrder(
            "Paid events need at least one ticket type with a price"
        )
    if data.end_date is not None and data.end_date < data.date:
        raise InvalidOrder("End date cannot be before the start date")

    ts = now_ts()
    ev = Event(
        id=new_id(),
        organizer_id=data.organizer_id,
        title=data.title,
        description=data.description,
        event_type=data.event_type,
        date=data.date.timestamp(),
        end_date=data.end_date.timestamp() if data.end_date else None,
        start_time=data.start_time,
        location=data.location,
        venue=data.venue,
        status=data.status,
        created_at=ts,
    )
    async with atomic(session):
        session.add(ev)
        # parent row first, sqlite enforces the foreign key
        await session.flush()
        for i, tt in enumerate(data.ticket_types):
            session.add(TicketType(
                id=new_id(),
                event_id=ev.id,
                name=tt.name,
                price=tt.price,
                capacity=tt.capacity,
                # keep declaration order for listings
                created_at=ts + i * 1e-3,
            ))
        await session.flush()
    logger.info(
        "event created: id=%s type=%s ticket_types=%d",
        ev.id, ev.event_type, len(data.ticket_types),
    )
    return ev


async def get_event(
    session: AsyncSession, event_id: str, *, for_update: bool = False
) -> Event:
    stmt = select(Event).where(Event.id == event_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(
            populate_existing=True
        )
    ev: Optional[Event] = (await session.execute(stmt)).scalars().first()
    if ev is None:
        raise EventNotFound(f"Event not found: {event_id}")
    return ev


async def ticket_types_for_event(session: AsyncSession, event_id: str):
    return list((await session.execute(
        select(TicketType)
        .where(TicketType.event_id == event_id)
        .order_by(TicketType.created_at, TicketType.id)
    )).scalars().all())
