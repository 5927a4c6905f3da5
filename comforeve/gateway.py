"""
Payment gateway adapters.

`Paystack` talks to the real API over httpx. `MockPay` keeps transactions
in memory for development and tests; its mock checkout page and webhook
emitter live in server.py. Both sign webhooks the same way (HMAC-SHA512 of
the raw body, hex, in ``x-paystack-signature``), so the webhook route does
not care which one is active.
"""
from abc import ABC, abstractmethod
import asyncio
import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from typing import Any, Dict, Optional, Tuple, TypedDict
from urllib.parse import quote

import httpx

from .errors import (
    GatewayError, GatewayUnavailable, InvalidPayload, InvalidSignature,
)
from .infra.timings import timeit

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"


class InitResult(TypedDict):
    authorization_url: str
    access_code: str
    reference: str


class VerifyResult(TypedDict):
    # "success" | "failed" | "abandoned" | "pending" | "not_found" | ...
    status: str
    reference: str
    amount: int
    currency: str
    raw: Dict[str, Any]


class TransferResult(TypedDict):
    reference: str
    transfer_code: Optional[str]
    # "success" | "pending" | "otp" | ...
    status: str


def sign(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()


# ----------------------------
# Gateway interface
# ----------------------------
class PaymentGateway(ABC):
    def __init__(self, secret: str):
        self.secret = secret

    @abstractmethod
    async def initialize(
        self, *, reference: str, amount: int, email: str, currency: str,
        callback_url: str, metadata: Dict[str, Any],
    ) -> InitResult: ...

    @abstractmethod
    async def verify(self, reference: str) -> VerifyResult:
        """Raises GatewayUnavailable when the gateway cannot answer."""

    @abstractmethod
    async def transfer(
        self, *, reference: str, amount: int, bank_code: str,
        account_number: str, account_name: str, reason: str,
    ) -> TransferResult: ...

    async def aclose(self) -> None:
        pass

    def verify_webhook(self, payload: bytes, headers) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign(self.secret, payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignature("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidPayload("Invalid JSON")
        if not isinstance(event, dict):
            raise InvalidPayload("Webhook body must be a JSON object")
        return event


def event_kind(event: dict) -> str:
    # "charge.success" | "transfer.success" | "transfer.failed" | ...
    return str(event.get("event", ""))


def event_reference(event: dict) -> str:
    data = event.get("data") or {}
    return str(data.get("reference", "") or "")


# ----------------------------
# Paystack
# ----------------------------
class Paystack(PaymentGateway):
    def __init__(
        self, secret: str, *, base_url: str = "https://api.paystack.co",
        timeout: float = 10.0, http: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(secret)
        self._own_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
        )
        self.http.headers.update({
            "Authorization": f"Bearer {secret}",
            "Content-Type": "application/json",
        })

    async def aclose(self) -> None:
        if self._own_http:
            await self.http.aclose()

    async def _call(self, method: str, path: str, **kw) -> Dict[str, Any]:
        try:
            resp = await self.http.request(method, path, **kw)
        except httpx.TimeoutException as e:
            logger.warning("paystack %s %s timed out: %s", method, path, e)
            raise GatewayUnavailable(
                "Payment gateway timed out, payment not yet confirmed"
            )
        except httpx.TransportError as e:
            logger.warning("paystack %s %s unreachable: %s", method, path, e)
            raise GatewayUnavailable(
                "Payment gateway unreachable, payment not yet confirmed"
            )
        if resp.status_code >= 500:
            logger.warning(
                "paystack %s %s answered %s", method, path, resp.status_code
            )
            raise GatewayUnavailable(
                f"Payment gateway error {resp.status_code}"
            )
        try:
            body = resp.json()
        except ValueError:
            raise GatewayUnavailable("Payment gateway sent an invalid reply")
        body["_http_status"] = resp.status_code
        return body

    async def initialize(
        self, *, reference, amount, email, currency, callback_url, metadata,
    ) -> InitResult:
        async with timeit("gateway.initialize"):
            body = await self._call("POST", "/transaction/initialize", json={
                "email": email,
                "amount": amount,
                "currency": currency,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata,
            })
        if not body.get("status"):
            raise GatewayError(
                body.get("message") or "Payment initialization failed"
            )
        data = body.get("data") or {}
        return {
            "authorization_url": data["authorization_url"],
            "access_code": data.get("access_code", ""),
            "reference": data.get("reference", reference),
        }

    async def verify(self, reference: str) -> VerifyResult:
        async with timeit("gateway.verify"):
            body = await self._call(
                "GET", f"/transaction/verify/{quote(reference, safe='')}"
            )
        data = body.get("data") or {}
        if not body.get("status"):
            # 4xx: reference unknown to the gateway
            return {
                "status": "not_found" if body["_http_status"] == 404
                else "failed",
                "reference": reference,
                "amount": 0,
                "currency": "",
                "raw": body,
            }
        got = str(data.get("reference") or reference)
        if got != reference:
            logger.warning(
                "paystack verify answered for another reference: "
                "asked=%s got=%s", reference, got,
            )
            return {
                "status": "reference_mismatch",
                "reference": reference,
                "amount": 0,
                "currency": "",
                "raw": data,
            }
        return {
            "status": str(data.get("status", "")),
            "reference": got,
            "amount": int(data.get("amount") or 0),
            "currency": str(data.get("currency", "")),
            "raw": data,
        }

    async def transfer(
        self, *, reference, amount, bank_code, account_number, account_name,
        reason,
    ) -> TransferResult:
        async with timeit("gateway.transfer"):
            rcp = await self._call("POST", "/transferrecipient", json={
                "type": "nuban",
                "name": account_name,
                "account_number": account_number,
                "bank_code": bank_code,
            })
            if not rcp.get("status"):
                raise GatewayError(
                    rcp.get("message") or "Could not create transfer recipient"
                )
            body = await self._call("POST", "/transfer", json={
                "source": "balance",
                "amount": amount,
                "recipient": rcp["data"]["recipient_code"],
                "reason": reason,
                "reference": reference,
            })
        if not body.get("status"):
            raise GatewayError(
                body.get("message") or "Transfer initiation failed"
            )
        data = body.get("data") or {}
        return {
            "reference": data.get("reference", reference),
            "transfer_code": data.get("transfer_code"),
            "status": str(data.get("status", "pending")),
        }


# ----------------------------
# MockPay
# ----------------------------
class MockPay(PaymentGateway):
    """
    In-memory gateway. `latency` delays every verify call and `timeout`
    bounds it, so a slow gateway can be simulated.
    """
    OUTCOMES = ("success", "failed", "abandoned")

    def __init__(
        self, secret: str = "supersecret", *, app_url: str = "",
        timeout: float = 10.0,
    ):
        super().__init__(secret)
        self.app_url = app_url.rstrip("/")
        self.timeout = timeout
        self.latency = 0.0
        self.transfer_status = "success"
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.transfers: Dict[str, Dict[str, Any]] = {}

    async def initialize(
        self, *, reference, amount, email, currency, callback_url, metadata,
    ) -> InitResult:
        self.sessions[reference] = {
            "reference": reference,
            "amount": int(amount),
            "currency": currency,
            "email": email,
            "status": "pending",
            "callback_url": callback_url,
            "metadata": metadata,
            "created_at": time.time(),
        }
        return {
            "authorization_url": f"{self.app_url}/mockpay/{reference}",
            "access_code": uuid.uuid4().hex,
            "reference": reference,
        }

    def set_status(self, reference: str, status: str) -> Dict[str, Any]:
        s = self.sessions.get(reference)
        if s is None:
            raise KeyError(reference)
        s["status"] = status
        if status == "success":
            s["paid_at"] = time.time()
        return s

    async def _lookup(self, reference: str) -> VerifyResult:
        if self.latency:
            await asyncio.sleep(self.latency)
        s = self.sessions.get(reference)
        if s is None:
            return {"status": "not_found", "reference": reference,
                    "amount": 0, "currency": "", "raw": {}}
        return {
            "status": s["status"],
            "reference": reference,
            "amount": s["amount"],
            "currency": s["currency"],
            "raw": dict(s),
        }

    async def verify(self, reference: str) -> VerifyResult:
        async with timeit("gateway.verify"):
            try:
                return await asyncio.wait_for(
                    self._lookup(reference), self.timeout
                )
            except asyncio.TimeoutError:
                logger.warning("mockpay verify timed out: %s", reference)
                raise GatewayUnavailable(
                    "Payment gateway timed out, payment not yet confirmed"
                )

    async def transfer(
        self, *, reference, amount, bank_code, account_number, account_name,
        reason,
    ) -> TransferResult:
        code = f"TRF_{uuid.uuid4().hex[:12]}"
        self.transfers[reference] = {
            "amount": amount, "bank_code": bank_code,
            "account_number": account_number, "transfer_code": code,
        }
        return {"reference": reference, "transfer_code": code,
                "status": self.transfer_status}

    def webhook_event(
        self, reference: str, kind: str = "charge.success"
    ) -> Tuple[bytes, Dict[str, str]]:
        """A signed webhook body as the gateway would deliver it."""
        s = self.sessions.get(reference, {})
        event = {
            "event": kind,
            "data": {
                "id": uuid.uuid4().int >> 96,
                "reference": reference,
                "status": s.get("status", "success"),
                "amount": s.get("amount", 0),
                "currency": s.get("currency", ""),
                "customer": {"email": s.get("email", "")},
                "metadata": s.get("metadata"),
                "paid_at": s.get("paid_at"),
            },
        }
        payload = json.dumps(event).encode()
        return payload, {
            SIGNATURE_HEADER: sign(self.secret, payload),
            "content-type": "application/json",
        }


# ----------------------------
# Factory
# ----------------------------
def new_gateway(settings) -> PaymentGateway:
    backend = settings.gateway_backend
    if backend == "paystack":
        if not settings.paystack_secret_key:
            raise RuntimeError(
                "GATEWAY_BACKEND=paystack needs PAYSTACK_SECRET_KEY"
            )
        return Paystack(
            settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout=settings.gateway_timeout_seconds,
        )
    if backend == "mock":
        return MockPay(
            settings.paystack_secret_key or os.environ.get(
                "MOCK_SECRET", "supersecret"
            ),
            app_url=settings.app_url,
            timeout=settings.gateway_timeout_seconds,
        )
    raise RuntimeError(f"unknown GATEWAY_BACKEND: {backend}")
