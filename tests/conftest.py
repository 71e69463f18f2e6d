"""Pytest configuration and shared fixtures.

The app runs against a throwaway SQLite file. Fixtures seed and inspect it
through a plain synchronous engine, while the app talks to the same file
through aiosqlite.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from verbs.model.db import Base, Event, NewsletterSubscriber, Order, TicketTier
from verbs.model.ratelimit import MemoryRateLimiter
from verbs.payments import StripePayments
from verbs.server import create_app
from verbs.settings import Settings

WEBHOOK_SECRET = "whsec_test_secret"


class FakePayments(StripePayments):
    """Stripe adapter with the network calls replaced by recorders.

    Webhook signature verification is inherited and therefore real.
    """

    def __init__(self):
        super().__init__("sk_test_fake")
        self.sessions = []
        self.refunds = []
        self.products = []
        self.renamed = []
        self.archived_events = []
        self.fail_sessions = False
        self.fail_archive = False

    async def create_session(self, **kwargs):
        if self.fail_sessions:
            raise RuntimeError("stripe is down")
        self.sessions.append(kwargs)
        n = len(self.sessions)
        return {
            "payment_session_id": f"cs_test_{n}",
            "redirect_url": f"https://checkout.stripe.test/c/pay/cs_test_{n}",
        }

    async def create_product_and_price(self, **kwargs):
        self.products.append(kwargs)
        n = len(self.products)
        return {"product_id": f"prod_{n}", "price_id": f"price_{n}"}

    async def replace_price(self, **kwargs):
        self.products.append(kwargs)
        return f"price_new_{len(self.products)}"

    async def create_refund(self, *, payment_intent_id, amount=None):
        self.refunds.append((payment_intent_id, amount))
        return f"re_{len(self.refunds)}"

    async def update_product_name(self, **kwargs):
        self.renamed.append(kwargs)

    async def archive_products_for_event(self, event_id):
        if self.fail_archive:
            raise RuntimeError("stripe is down")
        self.archived_events.append(event_id)
        return 2


class FakeNotifier:
    def __init__(self):
        self.confirmations = []
        self.audience = []
        self.campaigns = []
        self.fail = False
        self.fail_for = set()

    async def send_ticket_confirmation(self, details):
        if self.fail:
            raise RuntimeError("resend is down")
        self.confirmations.append(details)
        return "email_1"

    async def sync_audience(self, email):
        if self.fail:
            raise RuntimeError("resend is down")
        self.audience.append(email)

    async def send_campaign(self, *, to, subject, html_content,
                            unsubscribe_url):
        if self.fail or to in self.fail_for:
            raise RuntimeError("resend is down")
        self.campaigns.append((to, subject, unsubscribe_url))
        return f"email_{len(self.campaigns)}"


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "verbs.db"


@pytest.fixture
def sync_engine(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def settings(db_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{db_path}",
        site_url="https://verbs.test/",
        stripe_webhook_secret=WEBHOOK_SECRET,
        admin_username="admin",
        admin_password="hunter2",
        log_level="WARNING",
    )


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def limiter():
    return MemoryRateLimiter(limit=5, window_seconds=3600)


@pytest.fixture
def client(sync_engine, settings, payments, notifier, limiter):
    app = create_app(settings, payments=payments, notifier=notifier,
                     limiter=limiter)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_client(client):
    r = client.post(
        "/admin/login",
        data={"username": "admin", "password": "hunter2", "next": "/admin"},
        follow_redirects=False,
    )
    assert r.status_code == 303
    return client


# ----------------------------
# Seeding / inspection helpers
# ----------------------------
@pytest.fixture
def seed(sync_engine):
    class Seeder:
        def event(self, **kw):
            values = dict(
                title="VERBS 004",
                date=datetime(2026, 11, 20, 2, 0, tzinfo=timezone.utc),
                timezone="America/New_York",
                venue_name="Public Records",
                venue_city="Brooklyn",
                status="published",
                door_only_mode=False,
            )
            values.update(kw)
            with Session(sync_engine) as s:
                ev = Event(**values)
                s.add(ev)
                s.commit()
                return ev.id

        def tier(self, event_id, **kw):
            values = dict(
                event_id=event_id,
                name="General Admission",
                tier_type="online",
                price=2500,
                stripe_product_id="prod_ga",
                stripe_price_id="price_ga",
                max_stock=100,
                sold_count=0,
                is_active=True,
            )
            values.update(kw)
            with Session(sync_engine) as s:
                t = TicketTier(**values)
                s.add(t)
                s.commit()
                return t.id

        def sold_count(self, tier_id):
            with Session(sync_engine) as s:
                return s.get(TicketTier, tier_id).sold_count

        def orders(self):
            with Session(sync_engine) as s:
                rows = s.execute(
                    select(Order).order_by(Order.order_number)
                ).scalars().all()
                s.expunge_all()
                return rows

    return Seeder()


def subscriber(sync_engine, email):
    with Session(sync_engine) as s:
        sub = s.execute(
            select(NewsletterSubscriber)
            .where(NewsletterSubscriber.email == email)
        ).scalar_one_or_none()
        s.expunge_all()
        return sub


# ----------------------------
# Stripe webhook signing
# ----------------------------
def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    ts = int(time.time())
    mac = hmac.new(secret.encode(), f"{ts}.".encode() + payload,
                   hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def completed_event(session_id, event_id, tier_id, quantity=2,
                    amount_total=5000, payment_intent="pi_1",
                    email="buyer@example.com", name="Ada"):
    return {
        "id": f"evt_{session_id}",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": session_id,
            "object": "checkout.session",
            "payment_intent": payment_intent,
            "amount_total": amount_total,
            "customer_details": {"email": email, "name": name},
            "metadata": {
                "event_id": event_id,
                "ticket_tier_id": tier_id,
                "quantity": str(quantity),
            },
        }},
    }


def refunded_event(payment_intent, amount_refunded, charge_id="ch_1"):
    return {
        "id": f"evt_refund_{charge_id}_{amount_refunded}",
        "type": "charge.refunded",
        "data": {"object": {
            "id": charge_id,
            "object": "charge",
            "payment_intent": payment_intent,
            "amount_refunded": amount_refunded,
        }},
    }


def post_event(client, event, secret=WEBHOOK_SECRET, signature=None):
    payload = json.dumps(event).encode()
    headers = {"content-type": "application/json"}
    headers["stripe-signature"] = signature or sign(payload, secret)
    return client.post("/stripe-webhook", content=payload, headers=headers)
