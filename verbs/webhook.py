# webhook.py
"""
Webhook Reconciler.

Stripe delivers events at least once, possibly duplicated, delayed or out
of order. Each handler below is safe to replay:

- checkout.session.completed: the unique stripe_session_id insert decides
  whether this delivery creates the order; only the creating delivery
  counts tickets and sends the confirmation.
- charge.refunded: Stripe reports the cumulative refunded amount, so the
  tickets to release are computed as a delta against what this order has
  already released. A replay releases nothing.

Emails run after the order/stock transaction committed and can never undo it.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from .errors import InvalidSignature, NotConfigured, NotFound, ValidationFailed
from .infra.sql import GatedAsyncSession
from .model import catalog, orders
from .model.orders import CompletedPayment
from .model.records import OrderRecord
from .notifications import Effect, Notifier, TicketConfirmation, run_effects
from .payments import PaymentAdapter
from .validation import calculate_refund_status, tickets_released

log = structlog.get_logger().bind(component="webhook")

CHECKOUT_COMPLETED = "checkout.session.completed"
CHARGE_REFUNDED = "charge.refunded"

# compare-and-swap attempts before giving the delivery back to Stripe
REFUND_CAS_ATTEMPTS = 3


@dataclass(frozen=True)
class ReconcileResult:
    kind: str
    order_number: Optional[int] = None
    duplicate: bool = False
    effects: Optional[Dict[str, bool]] = None


def verify_event(
    payments: Optional[PaymentAdapter],
    webhook_secret: Optional[str],
    payload: bytes,
    signature: Optional[str],
) -> Dict[str, Any]:
    if payments is None or not webhook_secret:
        raise NotConfigured("Webhook not configured")
    if not signature:
        raise InvalidSignature("Missing signature")
    return payments.verify_webhook(payload, signature, webhook_secret)


async def reconcile(
    db: GatedAsyncSession,
    notifier: Optional[Notifier],
    event: Dict[str, Any],
) -> ReconcileResult:
    kind = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if kind == CHECKOUT_COMPLETED:
        return await _checkout_completed(db, notifier, obj)
    if kind == CHARGE_REFUNDED:
        return await _charge_refunded(db, obj)

    log.debug("webhook.ignored", type=kind, event_id=event.get("id"))
    return ReconcileResult(kind="ignored")


def _completed_payment(session: Dict[str, Any]) -> CompletedPayment:
    metadata = session.get("metadata") or {}
    event_id = metadata.get("event_id")
    tier_id = metadata.get("ticket_tier_id")
    if not event_id or not tier_id or not session.get("id"):
        log.error("webhook.missing_metadata", session_id=session.get("id"))
        raise ValidationFailed("Missing metadata")
    try:
        quantity = int(metadata.get("quantity") or "1")
    except ValueError:
        raise ValidationFailed("Missing metadata")

    details = session.get("customer_details") or {}
    return CompletedPayment(
        event_id=event_id,
        ticket_tier_id=tier_id,
        stripe_session_id=session["id"],
        stripe_payment_intent_id=session.get("payment_intent"),
        customer_email=details.get("email") or session.get("customer_email"),
        customer_name=details.get("name"),
        quantity=quantity,
        amount_paid=int(session.get("amount_total") or 0),
    )


async def _checkout_completed(
    db: GatedAsyncSession,
    notifier: Optional[Notifier],
    session: Dict[str, Any],
) -> ReconcileResult:
    payment = _completed_payment(session)
    result = await orders.record_completed_order(db, payment)

    if not result.created:
        log.info("webhook.duplicate_completion",
                 session_id=payment.stripe_session_id,
                 order_number=result.order_number)
        return ReconcileResult(kind="completed",
                               order_number=result.order_number,
                               duplicate=True)

    if not result.stock_applied:
        # paid but over max_stock: the order stands, an operator has to look
        log.error("webhook.oversold",
                  tier_id=payment.ticket_tier_id,
                  quantity=payment.quantity,
                  order_number=result.order_number)

    log.info("webhook.order_created", order_number=result.order_number,
             tier_id=payment.ticket_tier_id, quantity=payment.quantity)

    effects: List[Effect] = []
    if notifier is not None and payment.customer_email:
        async def send_confirmation():
            await _send_confirmation(db, notifier, payment,
                                     result.order_number)
        effects.append(("confirmation_email", send_confirmation))

    outcome = await run_effects(effects)
    return ReconcileResult(kind="completed",
                           order_number=result.order_number,
                           effects=outcome)


async def _send_confirmation(
    db: GatedAsyncSession,
    notifier: Notifier,
    payment: CompletedPayment,
    order_number: Optional[int],
) -> None:
    event = await catalog.get_event(db, payment.event_id)
    tier = await catalog.get_tier(db, payment.ticket_tier_id)
    if event is None or tier is None:
        log.warning("email.skipped", reason="event or tier missing",
                    order_number=order_number)
        return
    await notifier.send_ticket_confirmation(TicketConfirmation(
        to=payment.customer_email,
        customer_name=payment.customer_name,
        event_title=event.title,
        event_date=event.date,
        event_timezone=event.timezone,
        venue_name=event.venue_name,
        venue_city=event.venue_city,
        tier_name=tier.name,
        quantity=payment.quantity,
        amount_paid=payment.amount_paid,
        order_number=order_number,
    ))


async def _charge_refunded(
    db: GatedAsyncSession, charge: Dict[str, Any]
) -> ReconcileResult:
    payment_intent_id = charge.get("payment_intent")
    refunded_amount = int(charge.get("amount_refunded") or 0)

    for _ in range(REFUND_CAS_ATTEMPTS):
        order = None
        if payment_intent_id:
            order = await orders.find_by_payment_intent(db, payment_intent_id)
        if order is None:
            log.error("webhook.refund_order_missing",
                      payment_intent=payment_intent_id)
            raise NotFound("Order not found")

        if refunded_amount <= order.refunded_amount:
            # replay, or an older event arriving after a newer one
            return ReconcileResult(kind="refunded",
                                   order_number=order.order_number,
                                   duplicate=True)

        status = calculate_refund_status(refunded_amount, order.amount_paid)
        release = _release_delta(order, refunded_amount)
        applied, sold_count = await orders.apply_refund(
            db, order, status, refunded_amount, release
        )
        if applied:
            log.info("webhook.refund_applied",
                     order_number=order.order_number, status=status,
                     refunded_amount=refunded_amount, released=release,
                     sold_count=sold_count)
            return ReconcileResult(kind="refunded",
                                   order_number=order.order_number)

    raise RuntimeError(
        f"refund for {payment_intent_id} kept losing the update race"
    )


def _release_delta(order: OrderRecord, refunded_amount: int) -> int:
    if not order.stock_counted:
        # oversold order: its tickets never reached sold_count
        return 0
    already = tickets_released(order.refunded_amount, order.amount_paid,
                               order.quantity)
    now = tickets_released(refunded_amount, order.amount_paid,
                           order.quantity)
    return max(0, now - already)
