"""
Request bodies and the stored order snapshot.

Wire format is camelCase (``ticketTypeId``), Python attributes are
snake_case; both spellings are accepted on input.
"""
from __future__ import annotations
import json
import re
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import (
    BaseModel, ConfigDict, Field, ValidationError, field_validator,
)
from pydantic.alias_generators import to_camel

from .errors import InvalidSnapshot
from .helpers import is_valid_email, normalize_email
from .pricing import PaymentBreakdown

SNAPSHOT_VERSION = 1

# per ticket type, per order
MAX_PER_TYPE = 10

PHONE_RE = re.compile(r"^(\+234|0)[789][01]\d{8}$")


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


def _email(value: str) -> str:
    if not is_valid_email(value):
        raise ValueError("Please enter a valid email address")
    return normalize_email(value)


# ----------------------------
# Orders
# ----------------------------
class OrderLine(_Model):
    ticket_type_id: str = Field(min_length=1)
    # range is enforced by the issuer so that stored snapshots with odd
    # quantities still load and fail with InvalidOrder
    quantity: int
    attendee_name: str = Field(min_length=2, max_length=100)
    attendee_email: str = Field(max_length=255)
    attendee_phone: Optional[str] = None

    @field_validator("attendee_email")
    @classmethod
    def _check_email(cls, v: str) -> str:
        return _email(v)

    @field_validator("attendee_phone")
    @classmethod
    def _blank_phone(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class TicketOrder(OrderLine):
    """An order line as a client sends it."""
    quantity: int = Field(ge=1, le=MAX_PER_TYPE)

    @field_validator("attendee_phone")
    @classmethod
    def _check_phone(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        if not PHONE_RE.match(re.sub(r"\s", "", v)):
            raise ValueError("Please enter a valid Nigerian phone number")
        return v


def quantity_errors(lines: Iterable[OrderLine]) -> List[str]:
    """
    Per line 1..MAX_PER_TYPE, and at most MAX_PER_TYPE per ticket type
    across the whole order.
    """
    errors = []
    per_type = Counter()
    for i, line in enumerate(lines):
        if line.quantity < 1:
            errors.append(f"tickets.{i}.quantity: must be a positive integer")
            continue
        per_type[line.ticket_type_id] += line.quantity
        if line.quantity > MAX_PER_TYPE or \
                per_type[line.ticket_type_id] > MAX_PER_TYPE:
            errors.append(
                f"tickets.{i}.quantity: "
                f"Maximum {MAX_PER_TYPE} tickets per type"
            )
    return errors


def _check_order(lines: List[TicketOrder]) -> List[TicketOrder]:
    errors = quantity_errors(lines)
    if errors:
        raise ValueError("; ".join(errors))
    return lines


class EventSummary(_Model):
    title: str
    date: Optional[str] = None
    location: Optional[str] = None


class OrderSnapshot(_Model):
    """
    What was requested at checkout initialization.

    This is the authoritative order source for reconciliation: tickets are
    rebuilt from it, never from whatever a later request carries.
    """
    version: Literal[1] = SNAPSHOT_VERSION
    event_id: str
    user_id: Optional[str] = None
    tickets: List[OrderLine] = Field(min_length=1)
    # ticket type id -> unit price at initialization
    unit_prices: Dict[str, int] = Field(default_factory=dict)
    event: Optional[EventSummary] = None
    breakdown: Optional[PaymentBreakdown] = None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def load(cls, raw: Any, *, event_id: Optional[str] = None
             ) -> "OrderSnapshot":
        """
        Parse a stored snapshot. Unversioned snapshots use the legacy shape
        ({tickets, event, paymentBreakdown}, no event id or unit prices) and
        are upgraded on the fly.
        """
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise InvalidSnapshot(f"snapshot is not valid JSON: {e}")
        if not isinstance(raw, dict):
            raise InvalidSnapshot("snapshot must be a JSON object")

        data = dict(raw)
        if "version" not in data:
            data = {
                "version": SNAPSHOT_VERSION,
                "event_id": data.get("eventId") or event_id,
                "tickets": data.get("tickets"),
                "event": data.get("event"),
                "breakdown": data.get("paymentBreakdown"),
            }
        elif data.get("event_id") is None and data.get("eventId") is None:
            data["event_id"] = event_id

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidSnapshot(
                "snapshot does not match the order schema",
                errors=format_errors(e.errors()),
            )


# ----------------------------
# Request bodies
# ----------------------------
class FreeBookingRequest(_Model):
    event_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    tickets: List[TicketOrder] = Field(min_length=1)

    @field_validator("tickets")
    @classmethod
    def _check_tickets(cls, v: List[TicketOrder]) -> List[TicketOrder]:
        return _check_order(v)


class CheckoutRequest(_Model):
    event_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    tickets: List[TicketOrder] = Field(min_length=1)
    amount: int = Field(ge=0)
    customer_email: str

    @field_validator("tickets")
    @classmethod
    def _check_tickets(cls, v: List[TicketOrder]) -> List[TicketOrder]:
        return _check_order(v)

    @field_validator("customer_email")
    @classmethod
    def _check_email(cls, v: str) -> str:
        return _email(v)


class TicketTypeIn(_Model):
    name: str = Field(min_length=1, max_length=100)
    price: int = Field(ge=0)
    capacity: Optional[int] = Field(default=None, ge=1)


class EventCreate(_Model):
    organizer_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    event_type: Literal["FREE", "PAID"]
    date: datetime
    end_date: Optional[datetime] = None
    start_time: Optional[str] = None
    location: str = Field(min_length=1)
    venue: Optional[str] = None
    status: Literal["DRAFT", "ACTIVE"] = "ACTIVE"
    ticket_types: List[TicketTypeIn] = Field(min_length=1)


class TicketTypeUpdate(_Model):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    price: Optional[int] = Field(default=None, ge=0)
    # explicit null means unlimited; omitted means unchanged
    capacity: Optional[int] = Field(default=None, ge=1)


class PayoutRequestIn(_Model):
    amount: int = Field(gt=0)
    bank_code: str = Field(min_length=1)
    account_number: str = Field(min_length=1)
    account_name: str = Field(min_length=1)
    reason: Optional[str] = None


class PayoutRejectIn(_Model):
    reason: Optional[str] = None


def format_errors(errors: List[Dict[str, Any]]) -> List[str]:
    out = []
    for e in errors:
        loc = [str(p) for p in e.get("loc", ()) if p != "body"]
        out.append(f"{'.'.join(loc)}: {e.get('msg', 'invalid')}")
    return out
