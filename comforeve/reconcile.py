"""
Payment reconciliation.

`Reconciler.reconcile(reference)` is the one operation behind both the
gateway webhook and the buyer's verify call. It may run any number of times,
concurrently, for the same reference; tickets are issued at most once.

    1. ask the gateway (timeout -> GatewayUnavailable, never a verdict)
    2. load the payment (missing -> PaymentNotFound, logged as anomaly)
    3. tickets already there -> return them, no writes
    4. CAS PENDING -> COMPLETED
    5. lock the payment row, re-check, issue from the stored snapshot
    6. issuance failure -> COMPLETED_NO_TICKETS + issuance_error + anomaly
    7. whoever issued dispatches the emails, detached

Step 5 runs for every caller that gets past step 3, not only the CAS
winner, so a payment left without tickets is retried on the next call.
The payment row lock makes the re-check and the insert one critical
section.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import PaymentNotFound, TicketingError
from .gateway import PaymentGateway
from .infra.timings import timeit
from .model.db import Event, Payment, PaymentStatus, Ticket
from .model.payments import (
    PaymentState, get_by_reference, lock_payment, mark_completed,
    payment_state, record_issuance_failure, ticket_count,
)
from .model.tickets import issue, tickets_for_payment
from .notify import Dispatcher
from .schemas import OrderSnapshot

logger = logging.getLogger(__name__)


def log_anomaly(kind: str, reference: str, **details: Any) -> None:
    """Anomalies need a human. Greppable as `payment.anomaly`."""
    extra = " ".join(f"{k}={v!r}" for k, v in sorted(details.items()))
    logger.error("payment.anomaly kind=%s ref=%s %s", kind, reference, extra)


@dataclass
class ReconcileResult:
    reference: str
    state: str
    success: bool
    confirmation_ids: List[str] = field(default_factory=list)
    issued_now: bool = False
    event_title: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    gateway_status: Optional[str] = None
    error: Optional[str] = None

    @property
    def ticket_count(self) -> int:
        return len(self.confirmation_ids)

    @property
    def retryable(self) -> bool:
        return self.state in (
            PaymentState.PENDING, PaymentState.COMPLETED_NO_TICKETS
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "status": self.state,
            "reference": self.reference,
            "confirmationIds": self.confirmation_ids,
            "ticketCount": self.ticket_count,
            "eventTitle": self.event_title,
            "amount": self.amount,
            "currency": self.currency,
        }
        if not self.success:
            out["retryable"] = self.retryable
            if self.gateway_status is not None:
                out["gatewayStatus"] = self.gateway_status
            if self.error:
                out["message"] = self.error
        return out


class Reconciler:
    def __init__(
        self,
        sessionmaker: Callable[[], AsyncSession],
        gateway: PaymentGateway,
        dispatcher: Optional[Dispatcher] = None,
        gated=None,
    ):
        self.sessionmaker = sessionmaker
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.gated = gated

    async def reconcile(
        self, reference: str, *,
        webhook_payload: Optional[Dict[str, Any]] = None,
    ) -> ReconcileResult:
        async with timeit("reconcile"):
            # outside any transaction; may raise GatewayUnavailable
            verdict = await self.gateway.verify(reference)
            if self.gated is None:
                return await self._apply(reference, verdict, webhook_payload)
            async with self.gated():
                return await self._apply(reference, verdict, webhook_payload)

    async def _apply(self, reference, verdict, webhook_payload):
        async with self.sessionmaker() as session:
            async with session.begin():
                payment = await get_by_reference(session, reference)
                if payment is None:
                    log_anomaly(
                        "payment_not_found", reference,
                        gateway_status=verdict["status"],
                    )
                    raise PaymentNotFound(f"No payment for {reference}")
                n = await ticket_count(session, payment.id)
                payment_id, event_id = payment.id, payment.event_id

            if verdict["status"] != "success":
                logger.info(
                    "gateway did not confirm: ref=%s gateway_status=%s",
                    reference, verdict["status"],
                )
                return await self._result(
                    session, reference, success=False,
                    gateway_status=verdict["status"],
                )

            if not _amount_confirmed(payment, verdict):
                log_anomaly(
                    "amount_mismatch", reference,
                    expected=(payment.amount, payment.currency),
                    gateway=(verdict["amount"], verdict["currency"]),
                )
                return await self._result(
                    session, reference, success=False,
                    gateway_status="amount_mismatch",
                    error="Paid amount does not match the order",
                )

            if n > 0:
                return await self._result(session, reference, success=True)

            async with timeit("payment.mark_completed"):
                won = await mark_completed(
                    session, reference, webhook_payload or verdict["raw"]
                )
            if not won:
                async with session.begin():
                    payment = await get_by_reference(session, reference)
                if payment.status != PaymentStatus.COMPLETED:
                    # e.g. marked FAILED at init but the customer paid later
                    log_anomaly(
                        "paid_but_closed", reference, status=payment.status
                    )
                    return await self._result(
                        session, reference, success=False,
                        gateway_status=verdict["status"],
                        error=f"Payment is {payment.status}",
                    )

            tickets, issued_now, error = await self._issue(
                session, payment_id, reference
            )
            result = await self._result(
                session, reference, success=bool(tickets), error=error,
                issued_now=issued_now,
            )
            if issued_now:
                await self._notify(session, event_id, tickets)
            return result

    async def _issue(
        self, session: AsyncSession, payment_id: str, reference: str
    ) -> Tuple[List[Ticket], bool, Optional[str]]:
        try:
            async with timeit("reconcile.issue"):
                async with session.begin():
                    p = await lock_payment(session, payment_id)
                    if p.status != PaymentStatus.COMPLETED:
                        return [], False, f"Payment is {p.status}"
                    existing = await tickets_for_payment(session, p.id)
                    if existing:
                        return existing, False, None
                    snap = OrderSnapshot.load(
                        p.order_snapshot, event_id=p.event_id
                    )
                    expected = None
                    if not snap.unit_prices and snap.breakdown is not None:
                        expected = snap.breakdown.ticket_subtotal
                    tickets = await issue(
                        session, snap.event_id, snap.tickets,
                        payment_id=p.id,
                        unit_prices=snap.unit_prices or None,
                        expected_subtotal=expected,
                        user_id=snap.user_id,
                    )
                    p.issuance_error = None
            return tickets, True, None
        except (TicketingError, SQLAlchemyError) as e:
            reason = e.message if isinstance(e, TicketingError) else repr(e)
            log_anomaly(
                "completed_no_tickets", reference,
                error=type(e).__name__, reason=reason,
            )
            try:
                await record_issuance_failure(session, payment_id, reason)
            except SQLAlchemyError:
                logger.exception(
                    "could not record issuance failure: ref=%s", reference
                )
            return [], False, reason

    async def _result(
        self, session: AsyncSession, reference: str, *, success: bool,
        gateway_status: Optional[str] = None, error: Optional[str] = None,
        issued_now: bool = False,
    ) -> ReconcileResult:
        async with session.begin():
            fresh = await get_by_reference(session, reference)
            tickets = await tickets_for_payment(session, fresh.id)
            title = (await session.execute(
                select(Event.title).where(Event.id == fresh.event_id)
            )).scalar_one_or_none()
        return ReconcileResult(
            reference=fresh.reference,
            state=payment_state(fresh, len(tickets)),
            success=success and bool(tickets),
            confirmation_ids=[t.confirmation_id for t in tickets],
            issued_now=issued_now,
            event_title=title,
            amount=fresh.amount,
            currency=fresh.currency,
            gateway_status=gateway_status,
            error=error or (fresh.issuance_error if not tickets else None),
        )

    async def _notify(
        self, session: AsyncSession, event_id: str, tickets: List[Ticket]
    ) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.notify_tickets(session, event_id, tickets)


def _amount_confirmed(payment: Payment, verdict) -> bool:
    if int(verdict["amount"]) != payment.amount:
        return False
    cur = (verdict.get("currency") or "").upper()
    return not cur or cur == payment.currency.upper()
