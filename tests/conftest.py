from datetime import datetime, timezone

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from comforeve.checkout import initialize_checkout
from comforeve.config import Settings
from comforeve.gateway import MockPay
from comforeve.infra.sql import make_async_engine
from comforeve.infra import timings
from comforeve.model.db import Base
from comforeve.model.events import create_event, ticket_types_for_event
from comforeve.notify import Dispatcher, LogEmailSender
from comforeve.pricing import payment_breakdown
from comforeve.reconcile import Reconciler
from comforeve.schemas import CheckoutRequest, EventCreate, TicketTypeIn
from comforeve.server import create_app

from helpers import ADMIN_TOKEN, WEBHOOK_SECRET


@pytest.fixture(autouse=True)
def _reset_timings():
    timings.reset()
    yield


@pytest.fixture
def db_url(tmp_path):
    # a real file so concurrent sessions contend for the same locks
    return f"sqlite:///{tmp_path}/comforeve-test.db"


@pytest.fixture
async def db(db_url):
    engine, SessionAsync, _, _ = make_async_engine(db_url, command_timeout=10)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SessionAsync
    await engine.dispose()


@pytest.fixture
def gateway():
    return MockPay(WEBHOOK_SECRET, app_url="http://test", timeout=1.0)


@pytest.fixture
def sender():
    return LogEmailSender()


@pytest.fixture
async def dispatcher(sender):
    d = Dispatcher(sender)
    yield d
    await d.drain()


@pytest.fixture
def reconciler(db, gateway, dispatcher):
    return Reconciler(db, gateway, dispatcher)


@pytest.fixture
def make_event(db):
    """
    make_event(event_type="PAID", ticket_types=[(name, price, capacity)])
    -> (event, [ticket types in declaration order])
    """
    async def _make(
        *, event_type="PAID", ticket_types=(("Regular", 500_000, None),),
        status="ACTIVE", organizer_id="org-1", title="Lagos Tech Fest",
    ):
        data = EventCreate(
            organizer_id=organizer_id,
            title=title,
            event_type=event_type,
            date=datetime(2030, 5, 1, 18, 0, tzinfo=timezone.utc),
            location="Landmark Centre, Lagos",
            status=status,
            ticket_types=[
                TicketTypeIn(name=n, price=p, capacity=c)
                for n, p, c in ticket_types
            ],
        )
        async with db() as s:
            ev = await create_event(s, data)
        async with db() as s:
            types = await ticket_types_for_event(s, ev.id)
        return ev, types
    return _make


@pytest.fixture
def checkout(db, gateway):
    """
    checkout(event, types, lines, outcome="success") -> reference

    Initializes a paid checkout and sets the mock gateway outcome.
    """
    async def _checkout(ev, types, lines, *, outcome="success",
                        email="buyer@example.com"):
        prices = {tt.id: tt.price for tt in types}
        subtotal = sum(prices[ln.ticket_type_id] * ln.quantity for ln in lines)
        total = payment_breakdown(subtotal).total_amount
        req = CheckoutRequest(
            event_id=ev.id, tickets=[ln.model_dump() for ln in lines],
            amount=total, customer_email=email,
        )
        async with db() as s:
            out = await initialize_checkout(
                s, gateway, req, callback_url="http://test/payment/callback"
            )
        if outcome is not None:
            gateway.set_status(out["reference"], outcome)
        return out["reference"]
    return _checkout


@pytest.fixture
def settings(db_url):
    return Settings(
        database_url=db_url,
        gateway_backend="mock",
        paystack_secret_key=WEBHOOK_SECRET,
        app_url="http://test",
        mock_webhook_url="http://test/api/payments/webhook",
        admin_token=ADMIN_TOKEN,
        log_level="DEBUG",
    )


@pytest.fixture
async def app(settings, gateway, sender, db):
    # `db` first so the schema exists before either engine touches it
    application = create_app(settings, gateway=gateway, sender=sender)
    async with LifespanManager(application):
        yield application


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c
