import asyncio
import re

import pytest
from sqlalchemy import select

from comforeve.errors import (
    InvalidOrder, PriceMismatch, SoldOut, TicketNotCheckable, TicketNotFound,
    TicketTypeNotFound,
)
from comforeve.model.db import Ticket, TicketStatus
from comforeve.model.inventory import issued_count, update_ticket_type
from comforeve.model.tickets import check_in, get_by_confirmation, issue

from helpers import line

CODE = re.compile(r"^[A-Z0-9]{8}$")


async def _all_tickets(db):
    async with db() as s:
        async with s.begin():
            return list((await s.execute(select(Ticket))).scalars().all())


async def test_one_row_per_unit(db, make_event):
    ev, (regular,) = await make_event(
        ticket_types=(("Regular", 500_000, 10),)
    )
    async with db() as s:
        tickets = await issue(
            s, ev.id,
            [line(regular.id, "ada@example.com", quantity=3)],
            unit_prices={regular.id: 500_000},
            user_id="user-1",
        )

    assert len(tickets) == 3
    codes = {t.confirmation_id for t in tickets}
    assert len(codes) == 3
    assert all(CODE.match(c) for c in codes)
    for t in tickets:
        assert t.quantity == 1
        assert t.price == 500_000
        assert t.status == TicketStatus.ACTIVE
        assert t.user_id == "user-1"
        assert t.attendee_email == "ada@example.com"
    assert len(await _all_tickets(db)) == 3


async def test_empty_order_is_invalid(db, make_event):
    ev, _ = await make_event()
    async with db() as s:
        with pytest.raises(InvalidOrder):
            await issue(s, ev.id, [])


async def test_non_positive_quantity_is_invalid(db, make_event):
    ev, (regular,) = await make_event()
    async with db() as s:
        with pytest.raises(InvalidOrder) as exc:
            await issue(
                s, ev.id, [line(regular.id, "ada@example.com", quantity=0)]
            )
    assert exc.value.errors == [
        "tickets.0.quantity: must be a positive integer"
    ]


async def test_ticket_type_of_another_event(db, make_event):
    ev, _ = await make_event(title="Main event")
    _, (foreign,) = await make_event(title="Other event")
    async with db() as s:
        with pytest.raises(TicketTypeNotFound) as exc:
            await issue(s, ev.id, [line(foreign.id, "ada@example.com")])
    assert exc.value.ticket_type_id == foreign.id
    assert await _all_tickets(db) == []


async def test_unknown_ticket_type(db, make_event):
    ev, _ = await make_event()
    async with db() as s:
        with pytest.raises(TicketTypeNotFound):
            await issue(s, ev.id, [line("no-such-type", "ada@example.com")])


async def test_price_changed_since_order(db, make_event):
    ev, (regular,) = await make_event()
    async with db() as s:
        with pytest.raises(PriceMismatch) as exc:
            await issue(
                s, ev.id, [line(regular.id, "ada@example.com")],
                unit_prices={regular.id: 400_000},
            )
    assert exc.value.expected == 400_000
    assert exc.value.actual == 500_000


async def test_missing_recorded_price(db, make_event):
    ev, (regular, vip) = await make_event(ticket_types=(
        ("Regular", 500_000, None), ("VIP", 1_500_000, None),
    ))
    async with db() as s:
        with pytest.raises(InvalidOrder):
            await issue(
                s, ev.id,
                [line(regular.id, "a@example.com"),
                 line(vip.id, "b@example.com")],
                unit_prices={regular.id: 500_000},
            )


async def test_all_or_nothing(db, make_event):
    ev, (regular, vip) = await make_event(ticket_types=(
        ("Regular", 500_000, None), ("VIP", 1_500_000, 2),
    ))
    async with db() as s:
        with pytest.raises(SoldOut) as exc:
            await issue(s, ev.id, [
                line(regular.id, "a@example.com"),
                line(vip.id, "b@example.com", quantity=3),
            ])
    assert exc.value.ticket_type_id == vip.id
    assert exc.value.remaining == 2
    # the regular line was fine but nothing was written
    assert await _all_tickets(db) == []


async def test_no_oversell_under_concurrency(db, make_event):
    ev, (tt,) = await make_event(ticket_types=(("Regular", 500_000, 3),))

    async def attempt(i):
        async with db() as s:
            try:
                await issue(
                    s, ev.id, [line(tt.id, f"guest{i}@example.com")],
                    unit_prices={tt.id: 500_000},
                )
            except SoldOut:
                return False
            return True

    results = await asyncio.gather(*(attempt(i) for i in range(8)))
    assert sum(results) == 3
    async with db() as s:
        async with s.begin():
            assert await issued_count(s, tt.id) == 3


async def test_issued_tickets_keep_their_price(db, make_event):
    ev, (tt,) = await make_event()
    async with db() as s:
        (ticket,) = await issue(
            s, ev.id, [line(tt.id, "ada@example.com")],
            unit_prices={tt.id: 500_000},
        )
    async with db() as s:
        async with s.begin():
            await update_ticket_type(s, tt.id, price=750_000)

    (stored,) = await _all_tickets(db)
    assert stored.id == ticket.id
    assert stored.price == 500_000

    async with db() as s:
        (later,) = await issue(
            s, ev.id, [line(tt.id, "bo@example.com")],
            unit_prices={tt.id: 750_000},
        )
    assert later.price == 750_000


async def test_check_in_once(db, make_event):
    ev, (tt,) = await make_event()
    async with db() as s:
        (ticket,) = await issue(s, ev.id, [line(tt.id, "ada@example.com")])
    code = ticket.confirmation_id

    async with db() as s:
        used = await check_in(s, code.lower())
    assert used.status == TicketStatus.USED
    assert used.used_at is not None

    async with db() as s:
        with pytest.raises(TicketNotCheckable):
            await check_in(s, code)
    async with db() as s:
        with pytest.raises(TicketNotFound):
            await check_in(s, "ZZZZZZZZ")

    async with db() as s:
        async with s.begin():
            found = await get_by_confirmation(s, f" {code} ")
    assert found.id == ticket.id
