"""Order preconditions and refund arithmetic.

Every rule is a pure function returning a ValidationResult; callers run
them in order and stop at the first failure.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional

from .model.records import EventRecord, TierRecord

MIN_QUANTITY = 1
MAX_QUANTITY = 10

REFUNDED = "refunded"
PARTIALLY_REFUNDED = "partially_refunded"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None


OK = ValidationResult(valid=True)


def _fail(message: str) -> ValidationResult:
    return ValidationResult(valid=False, error=message)


def validate_quantity(quantity: int) -> ValidationResult:
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        return _fail("Quantity must be between 1 and 10")
    if quantity < MIN_QUANTITY or quantity > MAX_QUANTITY:
        return _fail("Quantity must be between 1 and 10")
    return OK


def validate_tier_active(tier: TierRecord) -> ValidationResult:
    if not tier.is_active:
        return _fail("This ticket tier is not available")
    return OK


def validate_tier_type(tier: TierRecord) -> ValidationResult:
    if tier.tier_type == "door":
        return _fail("This ticket is only available at the door")
    return OK


def validate_door_event(event: EventRecord) -> ValidationResult:
    if not event.door_only_mode:
        return _fail("Door checkout not enabled for this event")
    if event.status != "published":
        return _fail("Event is not available")
    return OK


def validate_stock(
    tier: TierRecord,
    quantity: int,
    sold_out_message: str = "This ticket tier is sold out",
) -> ValidationResult:
    available = tier.available
    if available is None:
        return OK
    if available < quantity:
        if available <= 0:
            return _fail(sold_out_message)
        return _fail(f"Only {available} tickets remaining")
    return OK


def validate_payment_config(
    tier: TierRecord,
    message: str = "Ticket not configured for online purchase",
) -> ValidationResult:
    if not tier.stripe_price_id:
        return _fail(message)
    return OK


def first_failure(
    results: Iterable[ValidationResult],
) -> Optional[ValidationResult]:
    for r in results:
        if not r.valid:
            return r
    return None


# ----------------------------
# Refund arithmetic
# ----------------------------
def calculate_refund_status(refunded_amount: int, original_amount: int) -> str:
    if refunded_amount >= original_amount:
        return REFUNDED
    return PARTIALLY_REFUNDED


def calculate_tickets_to_return(
    refunded_amount: int,
    original_amount: int,
    quantity: int,
    is_full_refund: bool,
) -> int:
    if is_full_refund:
        return quantity
    if original_amount <= 0:
        return 0
    # floor, not round: a partial refund only frees whole tickets it covers
    return int(refunded_amount * quantity // original_amount)


def tickets_released(refunded_amount: int, original_amount: int,
                     quantity: int) -> int:
    """Tickets freed by a cumulative refund of refunded_amount."""
    if refunded_amount <= 0:
        return 0
    is_full = calculate_refund_status(
        refunded_amount, original_amount) == REFUNDED
    return calculate_tickets_to_return(
        refunded_amount, original_amount, quantity, is_full
    )
