from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)


Base = declarative_base()


# ----------------------------
# Status vocabularies
# ----------------------------
class EventType:
    FREE = "FREE"
    PAID = "PAID"


class EventStatus:
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    SUSPENDED = "SUSPENDED"


class TicketStatus:
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    USED = "USED"
    REFUNDED = "REFUNDED"


# tickets that hold a seat
HOLDING_STATUSES = (TicketStatus.ACTIVE, TicketStatus.USED)


class PaymentStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class PayoutStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    event_type = Column(String, nullable=False)  # FREE | PAID
    date = Column(Float, nullable=False)
    end_date = Column(Float, nullable=True)
    start_time = Column(String, nullable=True)  # "HH:MM"
    location = Column(String, nullable=False)
    venue = Column(String, nullable=True)

    # DRAFT | ACTIVE | CANCELLED | COMPLETED | SUSPENDED
    status = Column(String, nullable=False, default=EventStatus.ACTIVE)
    created_at = Column(Float, nullable=False)


class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, primary_key=True)
    event_id = Column(
        String, ForeignKey("events.id"), nullable=False, index=True
    )
    name = Column(String(100), nullable=False)
    price = Column(Integer, nullable=False)  # minor units, 0 = free
    capacity = Column(Integer, nullable=True)  # NULL = unlimited
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    ticket_type_id = Column(
        String, ForeignKey("ticket_types.id"), nullable=False
    )
    payment_id = Column(String, ForeignKey("payments.id"), nullable=True)
    user_id = Column(String, nullable=True)

    # price paid at purchase time, not a live reference
    price = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    attendee_name = Column(String, nullable=False)
    attendee_email = Column(String, nullable=False)
    attendee_phone = Column(String, nullable=True)
    confirmation_id = Column(String, nullable=False, unique=True)

    # ACTIVE | CANCELLED | USED | REFUNDED
    status = Column(String, nullable=False, default=TicketStatus.ACTIVE)
    used_at = Column(Float, nullable=True)
    cancelled_at = Column(Float, nullable=True)
    refunded_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("tickets_ticket_type_status_idx", "ticket_type_id", "status"),
        Index("tickets_event_email_idx", "event_id", "attendee_email"),
        Index("tickets_payment_idx", "payment_id"),
    )


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    # gateway reference; the idempotency key
    reference = Column(String, nullable=False, unique=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    amount = Column(Integer, nullable=False)  # what the customer pays
    currency = Column(String, nullable=False, default="NGN")

    # PENDING | COMPLETED | FAILED | REFUNDED | CANCELLED
    status = Column(String, nullable=False, default=PaymentStatus.PENDING)

    # split computed at initialization, never recomputed
    platform_fee = Column(Integer, nullable=False)
    gateway_fee = Column(Integer, nullable=False, default=0)
    organizer_amount = Column(Integer, nullable=False)

    customer_email = Column(String, nullable=False)
    # "metadata" is reserved on declarative classes
    order_snapshot = Column("metadata", JSON, nullable=True)
    webhook_data = Column(JSON, nullable=True)
    issuance_error = Column(Text, nullable=True)
    paid_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("payments_event_status_idx", "event_id", "status"),
    )


class Payout(Base):
    __tablename__ = "payouts"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)

    # PENDING | PROCESSING | COMPLETED | FAILED | CANCELLED
    status = Column(String, nullable=False, default=PayoutStatus.PENDING)
    gateway_ref = Column(String, nullable=True, unique=True)
    transfer_code = Column(String, nullable=True)
    bank_account = Column(String, nullable=True)
    bank_code = Column(String, nullable=True)
    account_name = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    processed_at = Column(Float, nullable=True)
    failure_reason = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
