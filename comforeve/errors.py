"""
Domain errors.

Each error knows the HTTP status it maps to and a stable `code` that
clients can branch on. `server.py` installs one handler for the whole
hierarchy.
"""
from __future__ import annotations
from typing import List, Optional


class TicketingError(Exception):
    status_code = 400
    code = "ticketing_error"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> dict:
        out = {"success": False, "code": self.code, "message": self.message}
        if self.errors:
            out["errors"] = self.errors
        return out


# ----------------------------
# Validation
# ----------------------------
class InvalidOrder(TicketingError):
    code = "invalid_order"


class InvalidSnapshot(TicketingError):
    code = "invalid_snapshot"


class TicketTypeNotFound(TicketingError):
    code = "ticket_type_not_found"

    def __init__(self, ticket_type_id: str):
        super().__init__(f"Ticket type not found: {ticket_type_id}")
        self.ticket_type_id = ticket_type_id


class PriceMismatch(TicketingError):
    code = "price_mismatch"

    def __init__(self, ticket_type_id: str, expected: int, actual: int):
        super().__init__(
            f"Price of ticket type {ticket_type_id} changed "
            f"(expected {expected}, now {actual})"
        )
        self.ticket_type_id = ticket_type_id
        self.expected = expected
        self.actual = actual


class AmountMismatch(TicketingError):
    code = "amount_mismatch"


class InvalidPayload(TicketingError):
    code = "invalid_payload"


class NotAFreeEvent(TicketingError):
    code = "not_a_free_event"


class EventNotBookable(TicketingError):
    code = "event_not_bookable"


# ----------------------------
# Capacity / idempotency conflicts
# ----------------------------
class SoldOut(TicketingError):
    status_code = 409
    code = "sold_out"

    def __init__(self, ticket_type_id: str, name: str, remaining: int):
        super().__init__(f"Not enough tickets available for {name}")
        self.ticket_type_id = ticket_type_id
        self.remaining = remaining


class DuplicateAttendee(TicketingError):
    status_code = 409
    code = "duplicate_attendee"

    def __init__(self, email: str):
        super().__init__(f"{email} already has a ticket for this event")
        self.email = email


class CapacityBelowIssued(TicketingError):
    status_code = 409
    code = "capacity_below_issued"


class TicketTypeInUse(TicketingError):
    status_code = 409
    code = "ticket_type_in_use"


class TicketNotCheckable(TicketingError):
    status_code = 409
    code = "ticket_not_checkable"


class ConfirmationIdExhausted(TicketingError):
    status_code = 503
    code = "confirmation_id_exhausted"


# ----------------------------
# Lookups
# ----------------------------
class EventNotFound(TicketingError):
    status_code = 404
    code = "event_not_found"


class PaymentNotFound(TicketingError):
    status_code = 404
    code = "payment_not_found"


class TicketNotFound(TicketingError):
    status_code = 404
    code = "ticket_not_found"


class PayoutNotFound(TicketingError):
    status_code = 404
    code = "payout_not_found"


# ----------------------------
# Payouts
# ----------------------------
class InsufficientBalance(TicketingError):
    status_code = 409
    code = "insufficient_balance"


class InvalidPayoutTransition(TicketingError):
    status_code = 409
    code = "invalid_payout_transition"


# ----------------------------
# External dependencies
# ----------------------------
class GatewayUnavailable(TicketingError):
    """Gateway unreachable or timed out: the payment is *unconfirmed*."""
    status_code = 503
    code = "gateway_unavailable"

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["status"] = "UNCONFIRMED"
        out["retryable"] = True
        return out


class GatewayError(TicketingError):
    status_code = 502
    code = "gateway_error"


class InvalidSignature(TicketingError):
    status_code = 401
    code = "invalid_signature"
