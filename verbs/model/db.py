from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
)

from ..helpers import new_id, utcnow


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    date = Column(DateTime(timezone=True), nullable=False)
    time_end = Column(DateTime(timezone=True), nullable=True)
    timezone = Column(String, nullable=False, default="America/New_York")
    venue_name = Column(String, nullable=False)
    venue_city = Column(String, nullable=False)
    venue_link = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    flyer_url = Column(String, nullable=True)

    # draft | published | archived
    status = Column(String, nullable=False, default="draft")
    door_only_mode = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False,
                        default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft','published','archived')",
            name="events_status_check",
        ),
    )


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, ForeignKey("events.id", ondelete="CASCADE"),
                      nullable=False)
    name = Column(String, nullable=False)

    # online | door
    tier_type = Column(String, nullable=False, default="online")
    price = Column(Integer, nullable=False)  # cents
    stripe_product_id = Column(String, nullable=True)
    stripe_price_id = Column(String, nullable=True)
    max_stock = Column(Integer, nullable=True)  # NULL = unlimited
    sold_count = Column(Integer, nullable=False, default=0)
    sort_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=utcnow)

    __table_args__ = (
        CheckConstraint("sold_count >= 0", name="tiers_sold_nonneg"),
        CheckConstraint(
            "tier_type IN ('online','door')", name="tiers_type_check"
        ),
        Index("ix_ticket_tiers_event", "event_id", "sort_order"),
    )


class Order(Base):
    __tablename__ = "orders"
    order_number = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    ticket_tier_id = Column(String, ForeignKey("ticket_tiers.id"),
                            nullable=False)
    stripe_session_id = Column(String, nullable=False, unique=True)
    stripe_payment_intent_id = Column(String, nullable=True, index=True)
    customer_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    amount_paid = Column(Integer, nullable=False)  # cents

    # completed | refunded | partially_refunded
    status = Column(String, nullable=False, default="completed")
    refunded_amount = Column(Integer, nullable=False, default=0)  # cents
    # False when the order was paid past max_stock and never added to
    # sold_count; refunds then have nothing to give back
    stock_counted = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=utcnow)


class NewsletterSubscriber(Base):
    __tablename__ = "newsletter_subscribers"
    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True)
    source = Column(String, nullable=True)
    subscribed_at = Column(DateTime(timezone=True), nullable=False,
                           default=utcnow)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)
    unsubscribe_token = Column(String, nullable=False, unique=True,
                               default=new_id)


class NewsletterCampaign(Base):
    __tablename__ = "newsletter_campaigns"
    id = Column(String, primary_key=True, default=new_id)
    subject = Column(String, nullable=False)
    html_content = Column(Text, nullable=False)

    # draft | sending | sent
    status = Column(String, nullable=False, default="draft")
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft','sending','sent')",
            name="newsletter_campaigns_status_check",
        ),
    )


class DJ(Base):
    __tablename__ = "djs"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    instagram_url = Column(String, nullable=True)
    soundcloud_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=utcnow)


class EventDJ(Base):
    __tablename__ = "event_djs"
    id = Column(String, primary_key=True, default=new_id)
    event_id = Column(String, ForeignKey("events.id", ondelete="CASCADE"),
                      nullable=False)
    dj_id = Column(String, ForeignKey("djs.id", ondelete="CASCADE"),
                   nullable=False)
    slot_start = Column(String, nullable=True)  # "HH:MM"
    slot_end = Column(String, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("event_id", "dj_id", name="event_djs_unique"),
    )


class Mix(Base):
    __tablename__ = "mixes"
    id = Column(String, primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    audio_url = Column(String, nullable=False)
    cover_image_url = Column(String, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    # draft | published
    status = Column(String, nullable=False, default="draft")
    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=utcnow)
