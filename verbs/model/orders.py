from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy import select, text

from ..infra.sql import GatedAsyncSession
from .db import Order
from .records import OrderRecord

_orders = Order.__table__


@dataclass(frozen=True)
class CompletedPayment:
    event_id: str
    ticket_tier_id: str
    stripe_session_id: str
    stripe_payment_intent_id: Optional[str]
    customer_email: Optional[str]
    customer_name: Optional[str]
    quantity: int
    amount_paid: int  # cents


@dataclass(frozen=True)
class FulfillmentResult:
    order_number: Optional[int]
    created: bool
    # False when the guarded increment refused to pass max_stock
    stock_applied: bool


SQL_INSERT_ORDER = r"""
INSERT INTO orders (
    event_id, ticket_tier_id, stripe_session_id, stripe_payment_intent_id,
    customer_email, customer_name, quantity, amount_paid, status,
    refunded_amount, stock_counted, created_at
) VALUES (
    :event_id, :ticket_tier_id, :stripe_session_id, :stripe_payment_intent_id,
    :customer_email, :customer_name, :quantity, :amount_paid, 'completed',
    0, TRUE, CURRENT_TIMESTAMP
)
ON CONFLICT (stripe_session_id) DO NOTHING
RETURNING order_number
"""

# single conditional update: no read-modify-write window
SQL_INCREMENT_SOLD = r"""
UPDATE ticket_tiers
SET sold_count = sold_count + :qty
WHERE id = :tier_id
  AND (max_stock IS NULL OR sold_count + :qty <= max_stock)
RETURNING sold_count
"""

SQL_MARK_UNCOUNTED = r"""
UPDATE orders SET stock_counted = FALSE WHERE order_number = :order_number
"""

SQL_RELEASE_SOLD = r"""
UPDATE ticket_tiers
SET sold_count = CASE WHEN sold_count > :qty THEN sold_count - :qty ELSE 0 END
WHERE id = :tier_id
RETURNING sold_count
"""

SQL_APPLY_REFUND = r"""
UPDATE orders
SET status = :status, refunded_amount = :refunded_amount
WHERE order_number = :order_number
  AND refunded_amount = :previous_amount
RETURNING order_number
"""


async def record_completed_order(
    db: GatedAsyncSession, payment: CompletedPayment
) -> FulfillmentResult:
    """
    Insert the order for a paid checkout session and count its tickets.

    The unique stripe_session_id is the idempotency boundary: a replayed
    webhook finds the existing row, gets its order_number back and leaves
    sold_count untouched.
    """
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(SQL_INSERT_ORDER), {
                "event_id": payment.event_id,
                "ticket_tier_id": payment.ticket_tier_id,
                "stripe_session_id": payment.stripe_session_id,
                "stripe_payment_intent_id": payment.stripe_payment_intent_id,
                "customer_email": payment.customer_email,
                "customer_name": payment.customer_name,
                "quantity": payment.quantity,
                "amount_paid": payment.amount_paid,
            })).first()

            if row is None:
                existing = (await db.session.execute(
                    select(_orders.c.order_number).where(
                        _orders.c.stripe_session_id
                        == payment.stripe_session_id
                    )
                )).scalar_one_or_none()
                return FulfillmentResult(
                    order_number=existing, created=False, stock_applied=False
                )

            bumped = (await db.session.execute(text(SQL_INCREMENT_SOLD), {
                "qty": payment.quantity,
                "tier_id": payment.ticket_tier_id,
            })).first()
            if bumped is None:
                await db.session.execute(text(SQL_MARK_UNCOUNTED), {
                    "order_number": row[0],
                })

    return FulfillmentResult(
        order_number=int(row[0]), created=True, stock_applied=bumped is not None
    )


async def apply_refund(
    db: GatedAsyncSession,
    order: OrderRecord,
    status: str,
    refunded_amount: int,
    release: int,
) -> Tuple[bool, Optional[int]]:
    """
    Compare-and-swap the order's cumulative refund and release tickets in
    the same transaction.
    Returns (applied, new_sold_count). applied is False when another delivery
    moved refunded_amount first.
    """
    sold_count = None
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(SQL_APPLY_REFUND), {
                "status": status,
                "refunded_amount": refunded_amount,
                "order_number": order.order_number,
                "previous_amount": order.refunded_amount,
            })).first()
            if row is None:
                return False, None
            if release > 0:
                tier_row = (await db.session.execute(text(SQL_RELEASE_SOLD), {
                    "qty": release,
                    "tier_id": order.ticket_tier_id,
                })).first()
                sold_count = tier_row[0] if tier_row else None
    return True, sold_count


async def _one(db: GatedAsyncSession, stmt) -> Optional[OrderRecord]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(stmt)).mappings().first()
    return OrderRecord.from_row(row) if row else None


async def get_order(
    db: GatedAsyncSession, order_number: int
) -> Optional[OrderRecord]:
    return await _one(
        db, select(_orders).where(_orders.c.order_number == order_number)
    )


async def find_by_payment_intent(
    db: GatedAsyncSession, payment_intent_id: str
) -> Optional[OrderRecord]:
    return await _one(
        db,
        select(_orders).where(
            _orders.c.stripe_payment_intent_id == payment_intent_id
        ),
    )


async def find_by_session(
    db: GatedAsyncSession, session_id: str
) -> Optional[OrderRecord]:
    return await _one(
        db, select(_orders).where(_orders.c.stripe_session_id == session_id)
    )


async def recent_orders(
    db: GatedAsyncSession, limit: int = 200
) -> List[OrderRecord]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(_orders)
                .order_by(_orders.c.order_number.desc())
                .limit(max(1, min(limit, 500)))
            )).mappings().all()
    return [OrderRecord.from_row(r) for r in rows]
