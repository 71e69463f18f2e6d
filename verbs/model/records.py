"""Typed records crossing from the database into business logic.

Rows are converted once, at the query boundary, so checkout and webhook code
never handles loosely-shaped mappings.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict, fields
from datetime import datetime
from typing import Any, Mapping, Optional, Type, TypeVar

from ..helpers import to_iso

R = TypeVar("R", bound="_Record")


class _Record:
    @classmethod
    def from_row(cls: Type[R], row: Mapping[str, Any]) -> R:
        names = {f.name for f in fields(cls)}
        return cls(**{k: row[k] for k in names if k in row})

    def to_json(self) -> dict:
        out = asdict(self)
        for k, v in out.items():
            if isinstance(v, datetime):
                out[k] = to_iso(v)
        return out


@dataclass(frozen=True)
class EventRecord(_Record):
    id: str
    title: str
    date: datetime
    venue_name: str
    venue_city: str
    status: str
    timezone: str = "America/New_York"
    description: Optional[str] = None
    time_end: Optional[datetime] = None
    venue_link: Optional[str] = None
    image_url: Optional[str] = None
    flyer_url: Optional[str] = None
    door_only_mode: bool = False


@dataclass(frozen=True)
class TierRecord(_Record):
    id: str
    event_id: str
    name: str
    tier_type: str
    price: int
    sold_count: int
    is_active: bool
    max_stock: Optional[int] = None
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    sort_order: int = 0

    @property
    def available(self) -> Optional[int]:
        if self.max_stock is None:
            return None
        return self.max_stock - self.sold_count


@dataclass(frozen=True)
class OrderRecord(_Record):
    order_number: int
    event_id: str
    ticket_tier_id: str
    stripe_session_id: str
    quantity: int
    amount_paid: int
    status: str
    refunded_amount: int = 0
    stock_counted: bool = True
    stripe_payment_intent_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriberRecord(_Record):
    id: str
    email: str
    unsubscribe_token: str
    source: Optional[str] = None
    subscribed_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None


@dataclass(frozen=True)
class CampaignRecord(_Record):
    id: str
    subject: str
    html_content: str
    status: str
    sent_count: int = 0
    failed_count: int = 0
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
