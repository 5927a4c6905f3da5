# model/payouts.py
"""
Organizer earnings and withdrawals.

Balance is derived, never stored:

    available = organizer share of COMPLETED payments that have tickets
              - payouts PENDING or PROCESSING
              - payouts COMPLETED

Payout status moves only along ALLOWED_TRANSITIONS, each step a
conditional UPDATE on the current status.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import exists, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    GatewayError, GatewayUnavailable, InsufficientBalance,
    InvalidPayoutTransition, PayoutNotFound,
)
from ..helpers import new_id, now_ts, new_payment_reference
from ..infra.sql import atomic, is_postgres
from ..schemas import PayoutRequestIn
from .db import Event, Payment, PaymentStatus, Payout, PayoutStatus, Ticket

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PayoutStatus.PENDING: (PayoutStatus.PROCESSING, PayoutStatus.CANCELLED),
    PayoutStatus.PROCESSING: (PayoutStatus.COMPLETED, PayoutStatus.FAILED),
}

_OUTSTANDING = (PayoutStatus.PENDING, PayoutStatus.PROCESSING)


async def earnings(session: AsyncSession, organizer_id: str) -> Dict[str, int]:
    has_tickets = exists().where(Ticket.payment_id == Payment.id)
    row = (await session.execute(
        select(
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(Payment.organizer_amount), 0),
            func.coalesce(func.sum(Payment.platform_fee), 0),
            func.coalesce(func.sum(Payment.gateway_fee), 0),
            func.count(Payment.id),
        )
        .select_from(Payment)
        .join(Event, Event.id == Payment.event_id)
        .where(
            Event.organizer_id == organizer_id,
            Payment.status == PaymentStatus.COMPLETED,
            has_tickets,
        )
    )).one()
    gross, organizer, platform, gateway, n = (int(v) for v in row)

    pending = await _payout_sum(session, organizer_id, _OUTSTANDING)
    paid_out = await _payout_sum(
        session, organizer_id, (PayoutStatus.COMPLETED,)
    )
    return {
        "totalRevenue": gross,
        "totalEarnings": organizer,
        "platformFees": platform,
        "gatewayFees": gateway,
        "paymentCount": n,
        "pendingWithdrawals": pending,
        "totalWithdrawn": paid_out,
        "availableBalance": organizer - pending - paid_out,
    }


async def _payout_sum(session, organizer_id, statuses) -> int:
    n = (await session.execute(
        select(func.coalesce(func.sum(Payout.amount), 0)).where(
            Payout.organizer_id == organizer_id,
            Payout.status.in_(statuses),
        )
    )).scalar_one()
    return int(n)


async def _lock_organizer(session: AsyncSession, organizer_id: str) -> None:
    # sqlite already serializes writers at BEGIN IMMEDIATE
    if is_postgres(session):
        await session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:k))"),
            {"k": f"payout:{organizer_id}"},
        )


async def request_payout(
    session: AsyncSession, organizer_id: str, data: PayoutRequestIn
) -> Payout:
    async with atomic(session):
        await _lock_organizer(session, organizer_id)
        balance = (await earnings(session, organizer_id))["availableBalance"]
        if data.amount > balance:
            logger.warning(
                "payout refused: organizer=%s amount=%s available=%s",
                organizer_id, data.amount, balance,
            )
            raise InsufficientBalance(
                f"Insufficient balance (available {balance})"
            )
        p = Payout(
            id=new_id(),
            organizer_id=organizer_id,
            amount=data.amount,
            status=PayoutStatus.PENDING,
            bank_account=data.account_number,
            bank_code=data.bank_code,
            account_name=data.account_name,
            reason=data.reason or "Withdrawal request",
            created_at=now_ts(),
        )
        session.add(p)
        await session.flush()
    logger.info(
        "payout requested: id=%s organizer=%s amount=%s",
        p.id, organizer_id, p.amount,
    )
    return p


async def get_payout(session: AsyncSession, payout_id: str) -> Payout:
    p = (await session.execute(
        select(Payout)
        .where(Payout.id == payout_id)
        .execution_options(populate_existing=True)
    )).scalars().first()
    if p is None:
        raise PayoutNotFound(f"Payout not found: {payout_id}")
    return p


async def _transition(
    session: AsyncSession, where, src: str, dst: str, **values
) -> Optional[str]:
    if dst not in ALLOWED_TRANSITIONS.get(src, ()):
        raise InvalidPayoutTransition(f"{src} -> {dst} is not allowed")
    row = (await session.execute(
        update(Payout)
        .where(where, Payout.status == src)
        .values(status=dst, **values)
        .returning(Payout.id)
        .execution_options(synchronize_session=False)
    )).first()
    return row[0] if row else None


async def approve_payout(
    session: AsyncSession, payout_id: str, gateway
) -> Payout:
    """
    PENDING -> PROCESSING, then start the bank transfer. An immediate
    gateway success completes the payout; anything else leaves it
    PROCESSING until the transfer webhook or manual review settles it.
    """
    async with atomic(session):
        moved = await _transition(
            session, Payout.id == payout_id,
            PayoutStatus.PENDING, PayoutStatus.PROCESSING,
        )
        if moved is None:
            p = await get_payout(session, payout_id)
            raise InvalidPayoutTransition(
                f"Payout {payout_id} is {p.status}, not PENDING"
            )
        p = await get_payout(session, payout_id)
        transfer_ref = new_payment_reference("PO")
        p.gateway_ref = transfer_ref
        await session.flush()

    try:
        result = await gateway.transfer(
            reference=transfer_ref,
            amount=p.amount,
            bank_code=p.bank_code,
            account_number=p.bank_account,
            account_name=p.account_name,
            reason=p.reason or "Event ticket sales withdrawal",
        )
    except (GatewayUnavailable, GatewayError) as e:
        logger.warning("payout transfer not started: id=%s err=%s", p.id, e)
        async with atomic(session):
            p.failure_reason = e.message
            await session.flush()
        return p

    async with atomic(session):
        p.transfer_code = result.get("transfer_code")
        if result.get("status") == "success":
            await _transition(
                session, Payout.id == p.id,
                PayoutStatus.PROCESSING, PayoutStatus.COMPLETED,
                processed_at=now_ts(),
            )
        await session.flush()
        p = await get_payout(session, payout_id)
    logger.info("payout approved: id=%s status=%s", p.id, p.status)
    return p


async def reject_payout(
    session: AsyncSession, payout_id: str, reason: Optional[str] = None
) -> Payout:
    async with atomic(session):
        moved = await _transition(
            session, Payout.id == payout_id,
            PayoutStatus.PENDING, PayoutStatus.CANCELLED,
            failure_reason=reason or "Rejected by admin",
            processed_at=now_ts(),
        )
        if moved is None:
            p = await get_payout(session, payout_id)
            raise InvalidPayoutTransition(
                f"Payout {payout_id} is {p.status}, not PENDING"
            )
        p = await get_payout(session, payout_id)
    logger.info("payout rejected: id=%s", payout_id)
    return p


async def settle_transfer(
    session: AsyncSession,
    transfer_ref: str,
    success: bool,
    reason: Optional[str] = None,
) -> Payout:
    """Apply a transfer webhook. Replays of the same outcome are no-ops."""
    dst = PayoutStatus.COMPLETED if success else PayoutStatus.FAILED
    values: Dict[str, Any] = {"processed_at": now_ts()}
    if not success:
        values["failure_reason"] = reason or "Transfer failed"
    async with atomic(session):
        moved = await _transition(
            session, Payout.gateway_ref == transfer_ref,
            PayoutStatus.PROCESSING, dst, **values,
        )
        p = (await session.execute(
            select(Payout)
            .where(Payout.gateway_ref == transfer_ref)
            .execution_options(populate_existing=True)
        )).scalars().first()
        if p is None:
            raise PayoutNotFound(f"No payout for transfer {transfer_ref}")
        if moved is None and p.status != dst:
            raise InvalidPayoutTransition(
                f"Payout {p.id} is {p.status}, cannot become {dst}"
            )
    logger.info("payout transfer settled: id=%s status=%s", p.id, p.status)
    return p


async def list_payouts(
    session: AsyncSession,
    *,
    organizer_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[Payout]:
    stmt = select(Payout)
    if organizer_id is not None:
        stmt = stmt.where(Payout.organizer_id == organizer_id)
    if status is not None:
        stmt = stmt.where(Payout.status == status)
    stmt = stmt.order_by(Payout.created_at.desc()).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


def payout_dict(p: Payout) -> Dict[str, Any]:
    return {
        "id": p.id,
        "organizerId": p.organizer_id,
        "amount": p.amount,
        "status": p.status,
        "gatewayRef": p.gateway_ref,
        "transferCode": p.transfer_code,
        "bankCode": p.bank_code,
        "accountName": p.account_name,
        "reason": p.reason,
        "failureReason": p.failure_reason,
        "processedAt": p.processed_at,
        "createdAt": p.created_at,
    }
