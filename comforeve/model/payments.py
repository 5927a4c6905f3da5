# model/payments.py
"""
Payment record and its lifecycle.

Stored status is one of PaymentStatus. The reconciler works on a finer
state that also looks at whether tickets exist:

    PENDING --(CAS)--> COMPLETED_NO_TICKETS --(issue)--> COMPLETED_WITH_TICKETS
    PENDING --(CAS)--> FAILED | CANCELLED

Every status change out of PENDING is a conditional UPDATE keyed on the
current status, so exactly one caller wins it no matter how many race.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts
from ..infra.sql import atomic
from ..pricing import PaymentBreakdown
from ..schemas import OrderSnapshot
from .db import Payment, PaymentStatus, Ticket

logger = logging.getLogger(__name__)


class PaymentState:
    PENDING = "PENDING"
    COMPLETED_NO_TICKETS = "COMPLETED_NO_TICKETS"
    COMPLETED_WITH_TICKETS = "COMPLETED_WITH_TICKETS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


def payment_state(payment: Payment, ticket_count: int) -> str:
    if payment.status == PaymentStatus.COMPLETED:
        if ticket_count > 0:
            return PaymentState.COMPLETED_WITH_TICKETS
        return PaymentState.COMPLETED_NO_TICKETS
    return payment.status


async def create_payment(
    session: AsyncSession,
    *,
    reference: str,
    event_id: str,
    breakdown: PaymentBreakdown,
    customer_email: str,
    snapshot: OrderSnapshot,
    currency: str = "NGN",
) -> Payment:
    p = Payment(
        id=new_id(),
        reference=reference,
        event_id=event_id,
        amount=breakdown.total_amount,
        currency=currency,
        status=PaymentStatus.PENDING,
        platform_fee=breakdown.platform_amount,
        gateway_fee=breakdown.gateway_fee,
        organizer_amount=breakdown.organizer_amount,
        customer_email=customer_email,
        order_snapshot=snapshot.to_json(),
        created_at=now_ts(),
    )
    async with atomic(session):
        session.add(p)
        await session.flush()
    logger.info(
        "payment created: ref=%s event=%s amount=%s",
        reference, event_id, p.amount,
    )
    return p


async def get_by_reference(
    session: AsyncSession, reference: str
) -> Optional[Payment]:
    return (await session.execute(
        select(Payment)
        .where(Payment.reference == reference)
        .execution_options(populate_existing=True)
    )).scalars().first()


async def ticket_count(session: AsyncSession, payment_id: str) -> int:
    n = (await session.execute(
        select(func.count(Ticket.id)).where(Ticket.payment_id == payment_id)
    )).scalar_one()
    return int(n)


async def mark_completed(
    session: AsyncSession,
    reference: str,
    webhook_data: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    The issuance gate. True only for the single caller that moved the
    payment out of PENDING.
    """
    async with atomic(session):
        row = (await session.execute(
            update(Payment)
            .where(
                Payment.reference == reference,
                Payment.status == PaymentStatus.PENDING,
            )
            .values(
                status=PaymentStatus.COMPLETED,
                paid_at=now_ts(),
                webhook_data=webhook_data,
            )
            .returning(Payment.id)
            .execution_options(synchronize_session=False)
        )).first()
    if row is not None:
        logger.info("payment completed: ref=%s", reference)
    return row is not None


async def mark_failed(
    session: AsyncSession,
    reference: str,
    status: str = PaymentStatus.FAILED,
    reason: Optional[str] = None,
) -> bool:
    if status not in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
        raise ValueError(f"not a terminal failure status: {status}")
    async with atomic(session):
        row = (await session.execute(
            update(Payment)
            .where(
                Payment.reference == reference,
                Payment.status == PaymentStatus.PENDING,
            )
            .values(status=status, issuance_error=reason)
            .returning(Payment.id)
            .execution_options(synchronize_session=False)
        )).first()
    if row is not None:
        logger.info("payment %s: ref=%s reason=%s", status, reference, reason)
    return row is not None


async def lock_payment(session: AsyncSession, payment_id: str) -> Payment:
    """Row-lock a payment for the rest of the caller's transaction."""
    return (await session.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalars().one()


async def record_issuance_failure(
    session: AsyncSession, payment_id: str, reason: Optional[str]
) -> None:
    # reason=None clears it after a successful retry
    async with atomic(session):
        await session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(issuance_error=reason)
            .execution_options(synchronize_session=False)
        )


async def list_anomalies(
    session: AsyncSession, limit: int = 100
) -> List[Payment]:
    """COMPLETED payments that have no tickets."""
    has_tickets = exists().where(Ticket.payment_id == Payment.id)
    return list((await session.execute(
        select(Payment)
        .where(Payment.status == PaymentStatus.COMPLETED, ~has_tickets)
        .order_by(Payment.paid_at.desc())
        .limit(limit)
    )).scalars().all())


def payment_dict(p: Payment, state: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": p.id,
        "reference": p.reference,
        "eventId": p.event_id,
        "amount": p.amount,
        "currency": p.currency,
        "status": p.status,
        "state": state or p.status,
        "platformFee": p.platform_fee,
        "gatewayFee": p.gateway_fee,
        "organizerAmount": p.organizer_amount,
        "customerEmail": p.customer_email,
        "issuanceError": p.issuance_error,
        "paidAt": p.paid_at,
        "createdAt": p.created_at,
    }
