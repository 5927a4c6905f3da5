"""
Free event booking.

No gateway and no payment reference, so there is no natural idempotency
key. The one-live-ticket-per-email-per-event rule plays that role: booking
twice is DuplicateAttendee, never a second ticket.
"""
from __future__ import annotations
import logging
from typing import Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import EventNotBookable, InvalidOrder, NotAFreeEvent
from .infra.sql import atomic
from .infra.timings import timeit
from .model.db import EventStatus, EventType, Ticket
from .model.events import get_event
from .model.inventory import check_attendees, lock_ticket_types
from .model.tickets import issue
from .schemas import OrderLine, quantity_errors

logger = logging.getLogger(__name__)

MAX_FREE_QUANTITY = 1


async def book_free(
    session: AsyncSession,
    event_id: str,
    lines: Iterable[OrderLine],
    *,
    user_id: Optional[str] = None,
) -> List[Ticket]:
    lines = list(lines)
    if not lines:
        raise InvalidOrder("Order must contain at least one ticket")
    bad = quantity_errors(lines)
    if bad:
        raise InvalidOrder("Invalid ticket quantity", errors=bad)
    over = [
        f"tickets.{i}.quantity: free events allow one ticket per attendee"
        for i, line in enumerate(lines) if line.quantity > MAX_FREE_QUANTITY
    ]
    if over:
        raise InvalidOrder("Invalid ticket quantity", errors=over)

    async with timeit("freebook.book"):
        async with atomic(session):
            # serializes bookings per event, so the email check below and
            # the insert in issue() cannot interleave with another booking
            ev = await get_event(session, event_id, for_update=True)
            if ev.event_type != EventType.FREE:
                raise NotAFreeEvent("This event requires payment")
            if ev.status != EventStatus.ACTIVE:
                raise EventNotBookable(
                    f"Event is not open for booking ({ev.status})"
                )

            types = await lock_ticket_types(
                session, {line.ticket_type_id for line in lines}
            )
            paid = [
                tid for tid, tt in types.items()
                if tt.event_id == event_id and tt.price != 0
            ]
            if paid:
                raise NotAFreeEvent(
                    "Paid ticket types cannot be booked for free"
                )

            await check_attendees(
                session, event_id, [line.attendee_email for line in lines]
            )
            tickets = await issue(
                session, event_id, lines,
                unit_prices={tid: 0 for tid in types},
                user_id=user_id,
            )

    logger.info(
        "free booking: event=%s tickets=%d", event_id, len(tickets)
    )
    return tickets
