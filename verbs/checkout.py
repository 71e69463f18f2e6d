# checkout.py
"""
Checkout Session Initiator.

Validates a purchase request against the tier as it is right now and asks
the payment provider for a hosted session. Nothing is written locally: the
order only comes into existence when the provider's webhook reports the
payment (see webhook.py), so abandoned checkouts leave no trace.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

import structlog

from .errors import NotConfigured, NotFound, UpstreamFailure, ValidationFailed
from .infra.sql import GatedAsyncSession
from .model import catalog
from .payments import PaymentAdapter
from .validation import (
    ValidationResult, first_failure, validate_door_event,
    validate_payment_config, validate_quantity, validate_stock,
    validate_tier_active, validate_tier_type,
)

log = structlog.get_logger().bind(component="checkout")

SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


def parse_quantity(raw: Any) -> int:
    if raw is None:
        return 1
    if isinstance(raw, bool):
        raise ValidationFailed("Quantity must be between 1 and 10")
    try:
        q = int(raw)
    except (TypeError, ValueError):
        raise ValidationFailed("Quantity must be between 1 and 10")
    if q != raw and not isinstance(raw, str):
        # 2.5 tickets
        raise ValidationFailed("Quantity must be between 1 and 10")
    return q


def _raise_first(*results: ValidationResult) -> None:
    failed = first_failure(results)
    if failed is not None:
        raise ValidationFailed(failed.error)


async def _open_session(
    payments: Optional[PaymentAdapter],
    *,
    price_id: str,
    event_id: str,
    tier_id: str,
    quantity: int,
    cancel_url: str,
    base_url: str,
    customer_email: Optional[str],
) -> str:
    # reached only after every rule passed
    if payments is None:
        raise NotConfigured("Payments not configured")
    try:
        session = await payments.create_session(
            price_id=price_id,
            quantity=quantity,
            metadata={
                "event_id": event_id,
                "ticket_tier_id": tier_id,
                "quantity": str(quantity),
            },
            success_url=f"{base_url}/success?session_id={SESSION_PLACEHOLDER}",
            cancel_url=cancel_url,
            customer_email=customer_email,
        )
    except Exception as e:
        log.exception("checkout.session_failed", event_id=event_id,
                      tier_id=tier_id)
        raise UpstreamFailure("Failed to create checkout session") from e
    log.info("checkout.session_created", event_id=event_id, tier_id=tier_id,
             quantity=quantity, psid=session["payment_session_id"])
    return session["redirect_url"]


async def start_checkout(
    db: GatedAsyncSession,
    payments: Optional[PaymentAdapter],
    base_url: str,
    payload: Dict[str, Any],
) -> str:
    """Online sale. Returns the provider's redirect URL."""
    event_id = payload.get("event_id")
    tier_id = payload.get("ticket_tier_id")
    if not event_id or not tier_id:
        raise ValidationFailed("Missing event_id or ticket_tier_id")

    quantity = parse_quantity(payload.get("quantity"))
    _raise_first(validate_quantity(quantity))

    tier = await catalog.get_tier(db, tier_id)
    if tier is None:
        raise NotFound("Ticket tier not found")

    # each rule only runs once the previous one passed
    _raise_first(validate_tier_active(tier))
    _raise_first(validate_tier_type(tier))
    _raise_first(validate_stock(tier, quantity))
    _raise_first(validate_payment_config(tier))

    return await _open_session(
        payments,
        price_id=tier.stripe_price_id,
        event_id=event_id,
        tier_id=tier_id,
        quantity=quantity,
        cancel_url=f"{base_url}/events/{event_id}",
        base_url=base_url,
        customer_email=payload.get("customer_email") or None,
    )


async def start_door_checkout(
    db: GatedAsyncSession,
    payments: Optional[PaymentAdapter],
    base_url: str,
    payload: Dict[str, Any],
) -> str:
    """In-person sale, only while the event runs in door-only mode."""
    event_id = payload.get("event_id")
    tier_id = payload.get("tier_id")
    if not event_id or not tier_id:
        raise ValidationFailed("Missing event_id or tier_id")

    quantity = parse_quantity(payload.get("quantity"))
    _raise_first(validate_quantity(quantity))

    event = await catalog.get_event(db, event_id)
    if event is None:
        raise NotFound("Event not found")
    _raise_first(validate_door_event(event))

    tier = await catalog.get_tier(db, tier_id, event_id=event_id)
    if tier is None:
        raise NotFound("Ticket tier not found")

    _raise_first(validate_tier_active(tier))
    _raise_first(
        validate_stock(tier, quantity, sold_out_message="Tickets are sold out")
    )
    _raise_first(
        validate_payment_config(
            tier, message="Ticket not configured for purchase"
        )
    )

    return await _open_session(
        payments,
        price_id=tier.stripe_price_id,
        event_id=event_id,
        tier_id=tier_id,
        quantity=quantity,
        cancel_url=f"{base_url}/door/{event_id}",
        base_url=base_url,
        customer_email=None,
    )
