# model/inventory.py
"""
Inventory ledger: how many tickets of a type are out versus its capacity.

There is no counter column. `issued_count` is always derived from the
tickets table (ACTIVE + USED), so cancelling or refunding a ticket frees its
seat without any bookkeeping. Callers that act on the answer must hold the
ticket type lock (`lock_ticket_types`) inside the same transaction that
inserts the tickets.
"""
from __future__ import annotations
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    CapacityBelowIssued, DuplicateAttendee, SoldOut, TicketTypeInUse,
    TicketTypeNotFound,
)
from ..helpers import normalize_email
from .db import HOLDING_STATUSES, Ticket, TicketStatus, TicketType

logger = logging.getLogger(__name__)

_RELEASED_STATUSES = (TicketStatus.CANCELLED, TicketStatus.REFUNDED)

# sentinel for "argument not given" where None is meaningful
UNCHANGED: Any = object()


async def issued_count(session: AsyncSession, ticket_type_id: str) -> int:
    n = (await session.execute(
        select(func.count(Ticket.id)).where(
            Ticket.ticket_type_id == ticket_type_id,
            Ticket.status.in_(HOLDING_STATUSES),
        )
    )).scalar_one()
    return int(n)


async def issued_counts(
    session: AsyncSession, ticket_type_ids: Iterable[str]
) -> Dict[str, int]:
    ids = list(ticket_type_ids)
    if not ids:
        return {}
    rows = (await session.execute(
        select(Ticket.ticket_type_id, func.count(Ticket.id))
        .where(
            Ticket.ticket_type_id.in_(ids),
            Ticket.status.in_(HOLDING_STATUSES),
        )
        .group_by(Ticket.ticket_type_id)
    )).all()
    counts = {tid: 0 for tid in ids}
    counts.update({tid: int(n) for tid, n in rows})
    return counts


async def has_capacity(
    session: AsyncSession, ticket_type: TicketType, requested_qty: int
) -> bool:
    if ticket_type.capacity is None:
        return True
    issued = await issued_count(session, ticket_type.id)
    return issued + requested_qty <= ticket_type.capacity


async def lock_ticket_types(
    session: AsyncSession, ticket_type_ids: Iterable[str]
) -> Dict[str, TicketType]:
    """
    Load and row-lock ticket types. Ordered by id so two orders touching the
    same types always lock in the same order.
    """
    ids = sorted(set(ticket_type_ids))
    if not ids:
        return {}
    rows = (await session.execute(
        select(TicketType)
        .where(TicketType.id.in_(ids))
        .order_by(TicketType.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalars().all()
    return {tt.id: tt for tt in rows}


async def check_capacity(
    session: AsyncSession,
    ticket_types: Mapping[str, TicketType],
    requested: Mapping[str, int],
) -> None:
    """Raise SoldOut if any ticket type cannot take its requested quantity."""
    limited = [
        tid for tid in requested
        if ticket_types[tid].capacity is not None
    ]
    counts = await issued_counts(session, limited)
    for tid in limited:
        tt = ticket_types[tid]
        remaining = max(0, tt.capacity - counts[tid])
        if requested[tid] > remaining:
            logger.warning(
                "sold out: ticket_type=%s requested=%s remaining=%s",
                tid, requested[tid], remaining,
            )
            raise SoldOut(tid, tt.name, remaining)


async def attendee_has_ticket(
    session: AsyncSession, event_id: str, email: str
) -> bool:
    row = (await session.execute(
        select(Ticket.id).where(
            Ticket.event_id == event_id,
            func.lower(Ticket.attendee_email) == normalize_email(email),
            Ticket.status.not_in(_RELEASED_STATUSES),
        ).limit(1)
    )).first()
    return row is not None


async def check_attendees(
    session: AsyncSession, event_id: str, emails: Iterable[str]
) -> None:
    """
    At most one live ticket per attendee email per event. Also rejects an
    order that names the same attendee twice.
    """
    seen = set()
    for email in emails:
        key = normalize_email(email)
        if key in seen:
            raise DuplicateAttendee(email)
        seen.add(key)
        if await attendee_has_ticket(session, event_id, key):
            logger.warning(
                "duplicate attendee: event=%s email=%s", event_id, key
            )
            raise DuplicateAttendee(email)


# ----------------------------
# Read model
# ----------------------------
async def compute_inventory(
    session: AsyncSession, event_id: str
) -> List[Dict[str, Any]]:
    types = (await session.execute(
        select(TicketType)
        .where(TicketType.event_id == event_id)
        .order_by(TicketType.created_at, TicketType.id)
    )).scalars().all()
    counts = await issued_counts(session, [tt.id for tt in types])
    out = []
    for tt in types:
        issued = counts[tt.id]
        available: Optional[int] = (
            None if tt.capacity is None else max(0, tt.capacity - issued)
        )
        out.append({
            "ticket_type_id": tt.id,
            "name": tt.name,
            "price": tt.price,
            "capacity": tt.capacity,
            "issued": issued,
            "available": available,
            "sold_out": available is not None and available <= 0,
        })
    return out


# ----------------------------
# Lifecycle guards for ticket type edits
# ----------------------------
async def update_ticket_type(
    session: AsyncSession,
    ticket_type_id: str,
    *,
    name: Optional[str] = None,
    price: Optional[int] = None,
    capacity: Optional[int] = UNCHANGED,
) -> TicketType:
    """
    Edit a ticket type. Capacity may only go down to the number of tickets
    already issued; `capacity=None` makes it unlimited. A price change only
    affects tickets issued afterwards.
    """
    locked = await lock_ticket_types(session, [ticket_type_id])
    tt = locked.get(ticket_type_id)
    if tt is None:
        raise TicketTypeNotFound(ticket_type_id)

    if capacity is not UNCHANGED and capacity is not None:
        issued = await issued_count(session, ticket_type_id)
        if capacity < issued:
            raise CapacityBelowIssued(
                f"Capacity of {tt.name} cannot go below the {issued} "
                "tickets already issued"
            )
    if capacity is not UNCHANGED:
        tt.capacity = capacity
    if name is not None:
        tt.name = name
    if price is not None:
        tt.price = price
    await session.flush()
    return tt


async def delete_ticket_type(
    session: AsyncSession, ticket_type_id: str
) -> None:
    locked = await lock_ticket_types(session, [ticket_type_id])
    tt = locked.get(ticket_type_id)
    if tt is None:
        raise TicketTypeNotFound(ticket_type_id)
    any_ticket = (await session.execute(
        select(Ticket.id).where(Ticket.ticket_type_id == ticket_type_id)
        .limit(1)
    )).first()
    if any_ticket is not None:
        raise TicketTypeInUse(
            f"{tt.name} already has tickets and cannot be removed"
        )
    await session.delete(tt)
    await session.flush()
