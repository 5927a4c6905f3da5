"""
Checkout initialization for paid events.

Prices the order, records a PENDING payment together with the order
snapshot, then asks the gateway for a checkout URL. Capacity is only
checked as a hint here; the binding check happens at issuance.
"""
from __future__ import annotations
import logging
from collections import Counter
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    AmountMismatch, EventNotBookable, GatewayError, GatewayUnavailable,
    InvalidOrder, TicketTypeNotFound,
)
from .gateway import PaymentGateway
from .helpers import new_payment_reference, to_iso
from .infra.sql import atomic
from .infra.timings import timeit
from .model.db import EventStatus, EventType, PaymentStatus
from .model.events import get_event, ticket_types_for_event
from .model.inventory import check_capacity
from .model.payments import create_payment, mark_failed
from .pricing import amount_matches, payment_breakdown
from .schemas import (
    CheckoutRequest, EventSummary, OrderSnapshot, quantity_errors,
)

logger = logging.getLogger(__name__)


async def initialize_checkout(
    session: AsyncSession,
    gateway: PaymentGateway,
    req: CheckoutRequest,
    *,
    callback_url: str,
    currency: str = "NGN",
) -> Dict[str, Any]:
    bad = quantity_errors(req.tickets)
    if bad:
        raise InvalidOrder("Invalid ticket quantity", errors=bad)

    async with atomic(session):
        ev = await get_event(session, req.event_id)
        if ev.status != EventStatus.ACTIVE:
            raise EventNotBookable(
                f"Event is not open for booking ({ev.status})"
            )
        if ev.event_type != EventType.PAID:
            raise InvalidOrder("Free events are booked without payment")

        types = {
            tt.id: tt for tt in await ticket_types_for_event(session, ev.id)
        }
        requested = Counter()
        for line in req.tickets:
            if line.ticket_type_id not in types:
                raise TicketTypeNotFound(line.ticket_type_id)
            requested[line.ticket_type_id] += line.quantity

        # advisory only, nothing is held
        await check_capacity(session, types, requested)

        subtotal = sum(types[tid].price * q for tid, q in requested.items())
        if subtotal <= 0:
            raise InvalidOrder("Order total must be greater than zero")
        breakdown = payment_breakdown(subtotal)
        if not amount_matches(req.amount, breakdown.total_amount):
            logger.warning(
                "amount mismatch: event=%s client=%s calculated=%s",
                ev.id, req.amount, breakdown.total_amount,
            )
            raise AmountMismatch(
                "Payment amount does not match the ticket prices"
            )

        reference = new_payment_reference()
        snapshot = OrderSnapshot(
            event_id=ev.id,
            user_id=req.user_id,
            tickets=req.tickets,
            unit_prices={tid: types[tid].price for tid in requested},
            event=EventSummary(
                title=ev.title, date=to_iso(ev.date), location=ev.location
            ),
            breakdown=breakdown,
        )
        payment = await create_payment(
            session,
            reference=reference,
            event_id=ev.id,
            breakdown=breakdown,
            customer_email=req.customer_email,
            snapshot=snapshot,
            currency=currency,
        )

    # payment row is committed before the customer can pay
    try:
        async with timeit("checkout.gateway_init"):
            init = await gateway.initialize(
                reference=reference,
                amount=payment.amount,
                email=req.customer_email,
                currency=currency,
                callback_url=callback_url,
                metadata={"eventId": ev.id, "paymentId": payment.id},
            )
    except (GatewayError, GatewayUnavailable) as e:
        logger.warning(
            "gateway initialization failed: ref=%s err=%s", reference, e
        )
        await mark_failed(
            session, reference, PaymentStatus.FAILED,
            reason=f"initialization failed: {e.message}",
        )
        raise

    logger.info(
        "checkout initialized: ref=%s event=%s total=%s",
        reference, ev.id, payment.amount,
    )
    return {
        "success": True,
        "reference": reference,
        "authorizationUrl": init["authorization_url"],
        "accessCode": init["access_code"],
        "breakdown": breakdown.model_dump(by_alias=True),
    }
