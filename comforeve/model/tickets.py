# model/tickets.py
"""
Ticket issuer.

`issue()` is the only code path that creates Ticket rows. One call is one
all-or-nothing unit: ticket types are re-validated and row-locked, capacity
is checked under that lock, and one row per admitted person is inserted.
Any error leaves nothing behind.
"""
from __future__ import annotations
import logging
from collections import Counter
from typing import Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    AmountMismatch, ConfirmationIdExhausted, InvalidOrder, PriceMismatch,
    TicketNotCheckable, TicketNotFound, TicketTypeNotFound,
)
from ..helpers import generate_confirmation_id, new_id, now_ts
from ..infra.sql import atomic
from ..infra.timings import timeit
from ..schemas import OrderLine
from .db import Ticket, TicketStatus
from .inventory import check_capacity, lock_ticket_types

logger = logging.getLogger(__name__)

CONFIRMATION_ATTEMPTS = 5


def _validate_lines(lines: Sequence[OrderLine]) -> None:
    if not lines:
        raise InvalidOrder("Order must contain at least one ticket")
    bad = [
        f"tickets.{i}.quantity: must be a positive integer"
        for i, line in enumerate(lines) if line.quantity < 1
    ]
    if bad:
        raise InvalidOrder("Invalid ticket quantity", errors=bad)


async def _fresh_confirmation_ids(session: AsyncSession, n: int) -> List[str]:
    """
    n distinct codes not yet present in the tickets table. The unique
    constraint on confirmation_id still backs this up at insert time.
    """
    for _ in range(CONFIRMATION_ATTEMPTS):
        codes = set()
        while len(codes) < n:
            codes.add(generate_confirmation_id())
        taken = (await session.execute(
            select(Ticket.confirmation_id)
            .where(Ticket.confirmation_id.in_(codes))
        )).scalars().all()
        if not taken:
            return list(codes)
        logger.info("confirmation id collision, retrying: %s", taken)
    raise ConfirmationIdExhausted(
        "Could not generate unique confirmation ids"
    )


async def issue(
    session: AsyncSession,
    event_id: str,
    lines: Iterable[OrderLine],
    *,
    payment_id: Optional[str] = None,
    unit_prices: Optional[Mapping[str, int]] = None,
    expected_subtotal: Optional[int] = None,
    user_id: Optional[str] = None,
) -> List[Ticket]:
    """
    Create one ACTIVE ticket per unit of every order line.

    `unit_prices` is the price per ticket type recorded when the order was
    taken; any ticket type whose current price differs raises PriceMismatch.
    Orders recorded without per-type prices pass `expected_subtotal` instead,
    checked against the current prices as a whole.

    Raises InvalidOrder, TicketTypeNotFound, PriceMismatch, AmountMismatch or
    SoldOut. Runs inside the caller's transaction as a SAVEPOINT when there
    is one.
    """
    lines = list(lines)
    _validate_lines(lines)
    requested = Counter()
    for line in lines:
        requested[line.ticket_type_id] += line.quantity

    async with timeit("tickets.issue"):
        async with atomic(session):
            types = await lock_ticket_types(session, requested)
            for tid in requested:
                tt = types.get(tid)
                if tt is None or tt.event_id != event_id:
                    raise TicketTypeNotFound(tid)

            if unit_prices is not None:
                for tid in requested:
                    if tid not in unit_prices:
                        raise InvalidOrder(
                            f"No recorded price for ticket type {tid}"
                        )
                    if int(unit_prices[tid]) != types[tid].price:
                        raise PriceMismatch(
                            tid, int(unit_prices[tid]), types[tid].price
                        )
            elif expected_subtotal is not None:
                subtotal = sum(
                    types[tid].price * qty for tid, qty in requested.items()
                )
                if subtotal != expected_subtotal:
                    raise AmountMismatch(
                        f"Ticket prices changed since checkout "
                        f"(expected {expected_subtotal}, now {subtotal})"
                    )

            await check_capacity(session, types, requested)

            total = sum(requested.values())
            codes = await _fresh_confirmation_ids(session, total)
            ts = now_ts()
            tickets: List[Ticket] = []
            for line in lines:
                tt = types[line.ticket_type_id]
                for _ in range(line.quantity):
                    tickets.append(Ticket(
                        id=new_id(),
                        event_id=event_id,
                        ticket_type_id=tt.id,
                        payment_id=payment_id,
                        user_id=user_id,
                        price=tt.price,
                        quantity=1,
                        attendee_name=line.attendee_name,
                        attendee_email=line.attendee_email,
                        attendee_phone=line.attendee_phone,
                        confirmation_id=codes.pop(),
                        status=TicketStatus.ACTIVE,
                        created_at=ts,
                    ))
            session.add_all(tickets)
            await session.flush()

    logger.info(
        "issued %d tickets: event=%s payment=%s",
        len(tickets), event_id, payment_id,
    )
    return tickets


async def tickets_for_payment(
    session: AsyncSession, payment_id: str
) -> List[Ticket]:
    return list((await session.execute(
        select(Ticket)
        .where(Ticket.payment_id == payment_id)
        .order_by(Ticket.created_at, Ticket.id)
    )).scalars().all())


async def get_by_confirmation(
    session: AsyncSession, confirmation_id: str
) -> Optional[Ticket]:
    return (await session.execute(
        select(Ticket).where(
            Ticket.confirmation_id == confirmation_id.strip().upper()
        )
    )).scalars().first()


async def check_in(session: AsyncSession, confirmation_id: str) -> Ticket:
    """ACTIVE -> USED. A ticket can be checked in exactly once."""
    code = confirmation_id.strip().upper()
    async with atomic(session):
        row = (await session.execute(
            update(Ticket)
            .where(
                Ticket.confirmation_id == code,
                Ticket.status == TicketStatus.ACTIVE,
            )
            .values(status=TicketStatus.USED, used_at=now_ts())
            .returning(Ticket.id)
            .execution_options(synchronize_session=False)
        )).first()
        if row is None:
            ticket = await get_by_confirmation(session, code)
            if ticket is None:
                raise TicketNotFound(f"No ticket with confirmation {code}")
            raise TicketNotCheckable(
                f"Ticket {code} cannot be checked in (status {ticket.status})"
            )
        ticket = await session.get(Ticket, row[0], populate_existing=True)
    logger.info("checked in: %s", code)
    return ticket
