import asyncio

import pytest
from sqlalchemy import select, update

from comforeve.errors import (
    DuplicateAttendee, EventNotBookable, InvalidOrder, NotAFreeEvent, SoldOut,
)
from comforeve.freebook import book_free
from comforeve.model.db import Ticket, TicketStatus

from helpers import line

FREE_TYPES = (("General", 0, None), ("Backstage", 0, 2))


@pytest.fixture
def free_event(make_event):
    async def _make(**kw):
        kw.setdefault("ticket_types", FREE_TYPES)
        return await make_event(event_type="FREE", **kw)
    return _make


async def _live_tickets(db, event_id):
    async with db() as s:
        async with s.begin():
            return list((await s.execute(
                select(Ticket).where(
                    Ticket.event_id == event_id,
                    Ticket.status == TicketStatus.ACTIVE,
                )
            )).scalars().all())


async def test_books_one_ticket_per_attendee(db, free_event):
    ev, (general, _) = await free_event()
    async with db() as s:
        tickets = await book_free(s, ev.id, [
            line(general.id, "ada@example.com"),
            line(general.id, "bo@example.com", name="Bo Eze"),
        ], user_id="user-1")

    assert len(tickets) == 2
    assert all(t.price == 0 and t.payment_id is None for t in tickets)
    assert {t.attendee_email for t in tickets} == {
        "ada@example.com", "bo@example.com"
    }
    assert len(await _live_tickets(db, ev.id)) == 2


async def test_second_booking_is_duplicate(db, free_event):
    ev, (general, backstage) = await free_event()
    async with db() as s:
        await book_free(s, ev.id, [line(general.id, "ada@example.com")])

    # different ticket type, different case: still the same attendee
    async with db() as s:
        with pytest.raises(DuplicateAttendee):
            await book_free(s, ev.id, [line(backstage.id, "ADA@Example.com")])
    assert len(await _live_tickets(db, ev.id)) == 1


async def test_same_attendee_twice_in_one_order(db, free_event):
    ev, (general, backstage) = await free_event()
    async with db() as s:
        with pytest.raises(DuplicateAttendee):
            await book_free(s, ev.id, [
                line(general.id, "ada@example.com"),
                line(backstage.id, "ada@example.com"),
            ])
    assert await _live_tickets(db, ev.id) == []


async def test_cancelled_ticket_allows_rebooking(db, free_event):
    ev, (general, _) = await free_event()
    async with db() as s:
        (t,) = await book_free(s, ev.id, [line(general.id, "ada@example.com")])
    async with db() as s:
        async with s.begin():
            await s.execute(
                update(Ticket).where(Ticket.id == t.id)
                .values(status=TicketStatus.CANCELLED)
            )

    async with db() as s:
        (again,) = await book_free(
            s, ev.id, [line(general.id, "ada@example.com")]
        )
    assert again.id != t.id


async def test_paid_event_is_refused(db, make_event):
    ev, (tt,) = await make_event()
    async with db() as s:
        with pytest.raises(NotAFreeEvent):
            await book_free(s, ev.id, [line(tt.id, "ada@example.com")])


async def test_one_ticket_per_line(db, free_event):
    ev, (general, _) = await free_event()
    async with db() as s:
        with pytest.raises(InvalidOrder) as exc:
            await book_free(
                s, ev.id, [line(general.id, "ada@example.com", quantity=2)]
            )
    assert exc.value.errors


async def test_empty_order(db, free_event):
    ev, _ = await free_event()
    async with db() as s:
        with pytest.raises(InvalidOrder):
            await book_free(s, ev.id, [])


async def test_event_must_be_active(db, free_event):
    ev, (general, _) = await free_event(status="DRAFT")
    async with db() as s:
        with pytest.raises(EventNotBookable):
            await book_free(s, ev.id, [line(general.id, "ada@example.com")])


async def test_capacity_applies_to_free_tickets(db, free_event):
    ev, (_, backstage) = await free_event()
    async with db() as s:
        await book_free(s, ev.id, [
            line(backstage.id, "a@example.com"),
            line(backstage.id, "b@example.com"),
        ])
    async with db() as s:
        with pytest.raises(SoldOut):
            await book_free(s, ev.id, [line(backstage.id, "c@example.com")])


async def test_concurrent_duplicates_book_once(db, free_event):
    ev, (general, _) = await free_event()

    async def attempt():
        async with db() as s:
            try:
                await book_free(
                    s, ev.id, [line(general.id, "ada@example.com")]
                )
            except DuplicateAttendee:
                return False
            return True

    results = await asyncio.gather(*(attempt() for _ in range(6)))
    assert results.count(True) == 1
    assert len(await _live_tickets(db, ev.id)) == 1
