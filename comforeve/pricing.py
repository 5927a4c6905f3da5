"""
Fee split for paid orders.

All amounts are integer minor currency units (kobo for NGN). The split is
computed once at checkout initialization and stored on the Payment.
"""
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# gateway: 1.5%, plus a flat 100.00 from 2,500.00 up, capped at 2,000.00
GATEWAY_RATE_PER_MILLE = 15
GATEWAY_FLAT_FEE = 10_000
GATEWAY_FLAT_FEE_THRESHOLD = 250_000
GATEWAY_FEE_CAP = 200_000

PLATFORM_RATE_PERCENT = 7

AMOUNT_TOLERANCE = 100  # 1.00


class PaymentBreakdown(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ticket_subtotal: int
    gateway_fee: int = Field(
        validation_alias=AliasChoices(
            "gateway_fee", "gatewayFee", "paystackFee"
        )
    )
    total_amount: int
    organizer_amount: int
    platform_amount: int


def _round_half_up(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def gateway_fee(amount: int) -> int:
    fee = _round_half_up(amount * GATEWAY_RATE_PER_MILLE, 1000)
    if amount < GATEWAY_FLAT_FEE_THRESHOLD:
        return fee
    return min(fee + GATEWAY_FLAT_FEE, GATEWAY_FEE_CAP)


def payment_breakdown(ticket_subtotal: int) -> PaymentBreakdown:
    if ticket_subtotal < 0:
        raise ValueError("ticket_subtotal must be non-negative")
    fee = gateway_fee(ticket_subtotal)
    platform = _round_half_up(ticket_subtotal * PLATFORM_RATE_PERCENT, 100)
    return PaymentBreakdown(
        ticket_subtotal=ticket_subtotal,
        gateway_fee=fee,
        total_amount=ticket_subtotal + fee,
        organizer_amount=ticket_subtotal - platform,
        platform_amount=platform,
    )


def amount_matches(client_amount: int, calculated_amount: int,
                   tolerance: int = AMOUNT_TOLERANCE) -> bool:
    return abs(client_amount - calculated_amount) <= tolerance
