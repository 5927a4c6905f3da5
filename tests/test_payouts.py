import pytest

from comforeve.errors import (
    GatewayUnavailable, InsufficientBalance, InvalidPayoutTransition,
    PayoutNotFound,
)
from comforeve.gateway import MockPay
from comforeve.model.db import PayoutStatus
from comforeve.model.payments import mark_completed
from comforeve.model.payouts import (
    approve_payout, earnings, get_payout, list_payouts, payout_dict,
    reject_payout, request_payout, settle_transfer,
)
from comforeve.schemas import PayoutRequestIn

from helpers import line

ORGANIZER = "org-1"


def _request(amount):
    return PayoutRequestIn(
        amount=amount, bank_code="058", account_number="0123456789",
        account_name="Ada Obi",
    )


@pytest.fixture
async def funded(db, make_event, checkout, reconciler):
    """One paid order of 2 x 5,000.00 for ORGANIZER."""
    ev, (tt,) = await make_event(organizer_id=ORGANIZER)
    ref = await checkout(
        ev, [tt], [line(tt.id, "ada@example.com", quantity=2)]
    )
    assert (await reconciler.reconcile(ref)).success
    # paid but never issued: not part of the balance
    stuck = await checkout(ev, [tt], [line(tt.id, "bo@example.com")])
    async with db() as s:
        await mark_completed(s, stuck)
    return ev


async def _earnings(db, organizer_id=ORGANIZER):
    async with db() as s:
        async with s.begin():
            return await earnings(s, organizer_id)


async def _payout(db, amount):
    async with db() as s:
        return await request_payout(s, ORGANIZER, _request(amount))


async def test_earnings(db, funded):
    assert await _earnings(db) == {
        "totalRevenue": 1_025_000,
        "totalEarnings": 930_000,
        "platformFees": 70_000,
        "gatewayFees": 25_000,
        "paymentCount": 1,
        "pendingWithdrawals": 0,
        "totalWithdrawn": 0,
        "availableBalance": 930_000,
    }
    assert (await _earnings(db, "someone-else"))["availableBalance"] == 0


async def test_payout_limited_to_balance(db, funded):
    with pytest.raises(InsufficientBalance):
        await _payout(db, 930_001)

    p = await _payout(db, 500_000)
    assert p.status == PayoutStatus.PENDING
    assert p.reason == "Withdrawal request"

    e = await _earnings(db)
    assert e["pendingWithdrawals"] == 500_000
    assert e["availableBalance"] == 430_000
    with pytest.raises(InsufficientBalance):
        await _payout(db, 500_000)


async def test_approve_completes_on_immediate_success(db, funded, gateway):
    p = await _payout(db, 500_000)
    async with db() as s:
        done = await approve_payout(s, p.id, gateway)

    assert done.status == PayoutStatus.COMPLETED
    assert done.gateway_ref.startswith("PO_")
    assert done.transfer_code.startswith("TRF_")
    assert done.processed_at is not None
    assert gateway.transfers[done.gateway_ref]["amount"] == 500_000

    e = await _earnings(db)
    assert e["totalWithdrawn"] == 500_000
    assert e["pendingWithdrawals"] == 0
    assert e["availableBalance"] == 430_000


async def test_transfer_settled_by_webhook(db, funded, gateway):
    gateway.transfer_status = "pending"
    p = await _payout(db, 300_000)
    async with db() as s:
        processing = await approve_payout(s, p.id, gateway)
    assert processing.status == PayoutStatus.PROCESSING

    ref = processing.gateway_ref
    async with db() as s:
        done = await settle_transfer(s, ref, True)
    assert done.status == PayoutStatus.COMPLETED

    # replayed webhook
    async with db() as s:
        again = await settle_transfer(s, ref, True)
    assert again.status == PayoutStatus.COMPLETED

    async with db() as s:
        with pytest.raises(InvalidPayoutTransition):
            await settle_transfer(s, ref, False)
    async with db() as s:
        with pytest.raises(PayoutNotFound):
            await settle_transfer(s, "PO_unknown", True)


async def test_failed_transfer_releases_balance(db, funded, gateway):
    gateway.transfer_status = "pending"
    p = await _payout(db, 300_000)
    async with db() as s:
        processing = await approve_payout(s, p.id, gateway)
    async with db() as s:
        failed = await settle_transfer(
            s, processing.gateway_ref, False, "Account closed"
        )
    assert failed.status == PayoutStatus.FAILED
    assert failed.failure_reason == "Account closed"
    assert (await _earnings(db))["availableBalance"] == 930_000


class _DownGateway(MockPay):
    async def transfer(self, **kw):
        raise GatewayUnavailable("Payment gateway timed out")


async def test_gateway_down_leaves_payout_processing(db, funded):
    p = await _payout(db, 100_000)
    async with db() as s:
        out = await approve_payout(s, p.id, _DownGateway())
    assert out.status == PayoutStatus.PROCESSING
    assert out.failure_reason == "Payment gateway timed out"

    async with db() as s:
        async with s.begin():
            stored = await get_payout(s, p.id)
    assert stored.status == PayoutStatus.PROCESSING
    # still held back from the balance
    assert (await _earnings(db))["pendingWithdrawals"] == 100_000


async def test_reject(db, funded, gateway):
    p = await _payout(db, 100_000)
    async with db() as s:
        rejected = await reject_payout(s, p.id)
    assert rejected.status == PayoutStatus.CANCELLED
    assert rejected.failure_reason == "Rejected by admin"
    assert (await _earnings(db))["availableBalance"] == 930_000

    async with db() as s:
        with pytest.raises(InvalidPayoutTransition):
            await approve_payout(s, p.id, gateway)
    async with db() as s:
        with pytest.raises(InvalidPayoutTransition):
            await reject_payout(s, p.id)


async def test_unknown_payout(db, gateway):
    async with db() as s:
        with pytest.raises(PayoutNotFound):
            await approve_payout(s, "nope", gateway)


async def test_list_payouts(db, funded):
    a = await _payout(db, 100_000)
    b = await _payout(db, 200_000)
    async with db() as s:
        await reject_payout(s, a.id, "Wrong account")

    async with db() as s:
        async with s.begin():
            mine = await list_payouts(s, organizer_id=ORGANIZER)
            pending = await list_payouts(s, status=PayoutStatus.PENDING)
    assert {p.id for p in mine} == {a.id, b.id}
    assert [p.id for p in pending] == [b.id]

    d = payout_dict(pending[0])
    assert d["organizerId"] == ORGANIZER
    assert d["amount"] == 200_000
    assert d["status"] == PayoutStatus.PENDING
