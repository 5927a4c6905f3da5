from __future__ import annotations
import logging
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .checkout import initialize_checkout
from .config import Settings, configure_logging
from .errors import TicketingError
from .freebook import book_free
from .gateway import (
    MockPay, PaymentGateway, event_kind, event_reference, new_gateway,
)
from .helpers import ct_equal, to_iso
from .infra.sql import atomic, make_async_engine
from .infra.timings import summary as timings_summary
from .model.db import Base, Event, TicketType
from .model.events import create_event, get_event, ticket_types_for_event
from .model.inventory import (
    UNCHANGED, compute_inventory, delete_ticket_type, update_ticket_type,
)
from .model.payments import list_anomalies, payment_dict
from .model.payouts import (
    approve_payout, earnings, list_payouts, payout_dict, reject_payout,
    request_payout, settle_transfer,
)
from .model.tickets import check_in
from .notify import Dispatcher, EmailSender, new_sender
from .ratelimit import RateLimit, new_limiter
from .reconcile import Reconciler
from .schemas import (
    CheckoutRequest, EventCreate, FreeBookingRequest, PayoutRejectIn,
    PayoutRequestIn, TicketTypeUpdate, format_errors,
)

logger = logging.getLogger(__name__)

TRANSFER_EVENTS = {
    "transfer.success": True,
    "transfer.failed": False,
    "transfer.reversed": False,
}


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.sessionmaker() as session:
        yield session


def require_admin(request: Request) -> None:
    token = request.app.state.settings.admin_token
    given = request.headers.get("x-admin-token", "")
    if not token:
        raise HTTPException(403, detail="admin API disabled")
    if not ct_equal(given, token):
        raise HTTPException(401, detail="invalid admin token")


def event_dict(ev: Event, types=()) -> dict:
    return {
        "id": ev.id,
        "organizerId": ev.organizer_id,
        "title": ev.title,
        "description": ev.description,
        "eventType": ev.event_type,
        "date": to_iso(ev.date),
        "endDate": to_iso(ev.end_date),
        "startTime": ev.start_time,
        "location": ev.location,
        "venue": ev.venue,
        "status": ev.status,
        "ticketTypes": [ticket_type_dict(tt) for tt in types],
    }


def ticket_type_dict(tt: TicketType) -> dict:
    return {
        "id": tt.id,
        "eventId": tt.event_id,
        "name": tt.name,
        "price": tt.price,
        "capacity": tt.capacity,
    }


def create_app(
    settings: Optional[Settings] = None,
    *,
    gateway: Optional[PaymentGateway] = None,
    sender: Optional[EmailSender] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="Comforeve",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings

    # ---
    # errors
    # ---
    @app.exception_handler(TicketingError)
    async def _ticketing_error(request: Request, exc: TicketingError):
        return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return ORJSONResponse({
            "success": False,
            "code": "invalid_input",
            "message": "Invalid input data",
            "errors": format_errors(exc.errors()),
        }, status_code=400)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        configure_logging(settings.log_level)
        logger.info(
            "Comforeve is starting up: gateway=%s ratelimit=%s db=%s",
            settings.gateway_backend, settings.ratelimit_backend,
            settings.database_url.split("://")[0],
        )

    @app.on_event("startup")
    async def _db_init():
        engine, SessionAsync, _, gated = make_async_engine(
            settings.database_url, settings.db_command_timeout
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        app.state.engine = engine
        app.state.sessionmaker = SessionAsync
        app.state.gated = gated

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
        )

    @app.on_event("startup")
    async def _redis_start():
        app.state.redis = None
        if settings.ratelimit_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        app.state.limiter = new_limiter(
            settings.ratelimit_backend, r=app.state.redis
        )

    @app.on_event("startup")
    async def _services_start():
        app.state.gateway = gateway or new_gateway(settings)
        app.state.dispatcher = Dispatcher(sender or new_sender(settings))
        app.state.reconciler = Reconciler(
            app.state.sessionmaker,
            app.state.gateway,
            app.state.dispatcher,
            gated=app.state.gated,
        )

    @app.on_event("shutdown")
    async def _services_stop():
        await app.state.dispatcher.drain()
        await app.state.gateway.aclose()

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        await app.state.engine.dispose()

    # ----------------------------
    # Payments
    # ----------------------------
    @app.post("/api/payments/initialize")
    async def payments_initialize(
        body: CheckoutRequest, db: AsyncSession = Depends(get_db)
    ):
        return await initialize_checkout(
            db, app.state.gateway, body,
            callback_url=f"{settings.app_url}/payment/callback",
            currency=settings.currency,
        )

    @app.post("/api/payments/webhook")
    async def payments_webhook(
        request: Request, db: AsyncSession = Depends(get_db)
    ):
        payload = await request.body()
        # 401 / 400 before anything else
        event = app.state.gateway.verify_webhook(payload, request.headers)
        kind = event_kind(event)
        ref = event_reference(event)

        # Past this point always 200: the gateway retries anything else and
        # reconciliation is safe to repeat anyway.
        if kind == "charge.success" and ref:
            try:
                result = await app.state.reconciler.reconcile(
                    ref, webhook_payload=event
                )
            except (TicketingError, SQLAlchemyError) as e:
                logger.warning("webhook not processed: ref=%s err=%s", ref, e)
                return {"received": True, "processed": False}
            except Exception:
                logger.exception("webhook failed: ref=%s", ref)
                return {"received": True, "processed": False}
            return {"received": True, "processed": True,
                    "status": result.state}

        if kind in TRANSFER_EVENTS and ref:
            reason = (event.get("data") or {}).get("reason")
            try:
                payout = await settle_transfer(
                    db, ref, TRANSFER_EVENTS[kind], reason
                )
            except (TicketingError, SQLAlchemyError) as e:
                logger.warning(
                    "transfer webhook ignored: ref=%s err=%s", ref, e
                )
                return {"received": True, "processed": False}
            except Exception:
                logger.exception("transfer webhook failed: ref=%s", ref)
                return {"received": True, "processed": False}
            return {"received": True, "processed": True,
                    "status": payout.status}

        logger.info("webhook ignored: event=%s ref=%s", kind, ref)
        return {"received": True, "processed": False}

    @app.get(
        "/api/payments/verify",
        dependencies=[Depends(RateLimit("verify"))],
    )
    async def payments_verify(reference: str = Query(..., min_length=1)):
        result = await app.state.reconciler.reconcile(reference)
        return result.to_dict()

    # ----------------------------
    # Tickets
    # ----------------------------
    @app.post(
        "/api/tickets/book-free",
        dependencies=[Depends(RateLimit("book_free"))],
    )
    async def tickets_book_free(
        body: FreeBookingRequest, db: AsyncSession = Depends(get_db)
    ):
        tickets = await book_free(
            db, body.event_id, body.tickets, user_id=body.user_id
        )
        await app.state.dispatcher.notify_tickets(db, body.event_id, tickets)
        return {
            "success": True,
            "message": "Tickets booked successfully",
            "confirmationIds": [t.confirmation_id for t in tickets],
            "ticketCount": len(tickets),
        }

    @app.post("/api/tickets/{confirmation_id}/check-in")
    async def tickets_check_in(
        confirmation_id: str, db: AsyncSession = Depends(get_db)
    ):
        t = await check_in(db, confirmation_id)
        return {
            "success": True,
            "confirmationId": t.confirmation_id,
            "status": t.status,
            "attendeeName": t.attendee_name,
            "usedAt": to_iso(t.used_at),
        }

    # ----------------------------
    # Events & ticket types
    # ----------------------------
    @app.post("/api/events", status_code=201)
    async def events_create(
        body: EventCreate, db: AsyncSession = Depends(get_db)
    ):
        ev = await create_event(db, body)
        async with atomic(db):
            types = await ticket_types_for_event(db, ev.id)
        return event_dict(ev, types)

    @app.get("/api/events/{event_id}/inventory")
    async def events_inventory(
        event_id: str, db: AsyncSession = Depends(get_db)
    ):
        async with atomic(db):
            ev = await get_event(db, event_id)
            inv = await compute_inventory(db, event_id)
        return {"eventId": ev.id, "title": ev.title, "ticketTypes": inv}

    @app.patch("/api/ticket-types/{ticket_type_id}")
    async def ticket_types_update(
        ticket_type_id: str, body: TicketTypeUpdate,
        db: AsyncSession = Depends(get_db),
    ):
        capacity = (
            body.capacity if "capacity" in body.model_fields_set
            else UNCHANGED
        )
        async with atomic(db):
            tt = await update_ticket_type(
                db, ticket_type_id,
                name=body.name, price=body.price, capacity=capacity,
            )
        return ticket_type_dict(tt)

    @app.delete("/api/ticket-types/{ticket_type_id}")
    async def ticket_types_delete(
        ticket_type_id: str, db: AsyncSession = Depends(get_db)
    ):
        async with atomic(db):
            await delete_ticket_type(db, ticket_type_id)
        return {"success": True}

    # ----------------------------
    # Organizer earnings & payouts
    # ----------------------------
    @app.get("/api/organizers/{organizer_id}/earnings")
    async def organizer_earnings(
        organizer_id: str, db: AsyncSession = Depends(get_db)
    ):
        async with atomic(db):
            return await earnings(db, organizer_id)

    @app.post(
        "/api/organizers/{organizer_id}/payouts",
        status_code=201,
        dependencies=[Depends(RateLimit("payout"))],
    )
    async def organizer_request_payout(
        organizer_id: str, body: PayoutRequestIn,
        db: AsyncSession = Depends(get_db),
    ):
        p = await request_payout(db, organizer_id, body)
        return payout_dict(p)

    @app.get("/api/organizers/{organizer_id}/payouts")
    async def organizer_payouts(
        organizer_id: str, db: AsyncSession = Depends(get_db)
    ):
        async with atomic(db):
            rows = await list_payouts(db, organizer_id=organizer_id)
        return {"payouts": [payout_dict(p) for p in rows]}

    # ----------------------------
    # Admin
    # ----------------------------
    @app.get("/api/admin/payouts", dependencies=[Depends(require_admin)])
    async def admin_payouts(
        status: Optional[str] = None, limit: int = 100,
        db: AsyncSession = Depends(get_db),
    ):
        async with atomic(db):
            rows = await list_payouts(db, status=status, limit=limit)
        return {"payouts": [payout_dict(p) for p in rows]}

    @app.post(
        "/api/admin/payouts/{payout_id}/{action}",
        dependencies=[Depends(require_admin)],
    )
    async def admin_payout_action(
        payout_id: str, action: str,
        body: Optional[PayoutRejectIn] = None,
        db: AsyncSession = Depends(get_db),
    ):
        if action == "approve":
            p = await approve_payout(db, payout_id, app.state.gateway)
        elif action == "reject":
            reason = body.reason if body else None
            p = await reject_payout(db, payout_id, reason)
        else:
            raise HTTPException(400, detail="action must be approve or reject")
        return payout_dict(p)

    @app.get(
        "/api/admin/payments/anomalies",
        dependencies=[Depends(require_admin)],
    )
    async def admin_anomalies(
        limit: int = 100, db: AsyncSession = Depends(get_db)
    ):
        async with atomic(db):
            rows = await list_anomalies(db, limit=limit)
        return {
            "count": len(rows),
            "payments": [
                payment_dict(p, "COMPLETED_NO_TICKETS") for p in rows
            ],
        }

    @app.post(
        "/api/admin/payments/{reference}/reconcile",
        dependencies=[Depends(require_admin)],
    )
    async def admin_reconcile(reference: str):
        result = await app.state.reconciler.reconcile(reference)
        return result.to_dict()

    @app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
    async def admin_timings():
        return {"timings": timings_summary()}

    # ----------------------------
    # MockPay (development gateway)
    # ----------------------------
    def _mockpay() -> MockPay:
        gw = app.state.gateway
        if not isinstance(gw, MockPay):
            raise HTTPException(404, detail="mock gateway not active")
        return gw

    @app.get("/mockpay/{reference}")
    async def mockpay_screen(reference: str):
        s = _mockpay().sessions.get(reference)
        if s is None:
            raise HTTPException(404, detail="payment session not found")
        return {
            "reference": reference,
            "amount": s["amount"],
            "currency": s["currency"],
            "email": s["email"],
            "status": s["status"],
            "outcomes": list(MockPay.OUTCOMES),
        }

    @app.post("/mockpay/{reference}/emit")
    async def mockpay_emit(reference: str, outcome: str = "success"):
        gw = _mockpay()
        if outcome not in MockPay.OUTCOMES:
            raise HTTPException(400, detail="invalid outcome")
        try:
            s = gw.set_status(reference, outcome)
        except KeyError:
            raise HTTPException(404, detail="payment session not found")

        if outcome == "success":
            payload, headers = gw.webhook_event(reference)
            try:
                await app.state.http.post(
                    settings.mock_webhook_url, content=payload,
                    headers=headers,
                )
            except httpx.HTTPError as e:
                # the buyer's verify call reconciles without the webhook
                logger.warning("mock webhook delivery failed: %s", e)

        return RedirectResponse(
            url=f"{s['callback_url']}?reference={reference}",
            status_code=303,
        )

    return app


app = create_app()
