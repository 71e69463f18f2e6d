"""Checkout and door-checkout endpoints."""
import pytest
from fastapi.testclient import TestClient

from verbs.server import create_app


@pytest.fixture
def unpaid_client(sync_engine, settings, notifier, limiter):
    # no Stripe key in settings and no adapter injected
    app = create_app(settings, notifier=notifier, limiter=limiter)
    with TestClient(app) as c:
        yield c


class TestCheckout:

    def test_creates_session_with_metadata(self, client, seed, payments):
        ev = seed.event()
        tier = seed.tier(ev)
        r = client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": tier, "quantity": 2,
        })
        assert r.status_code == 200
        assert r.json() == {
            "url": "https://checkout.stripe.test/c/pay/cs_test_1"
        }
        (sess,) = payments.sessions
        assert sess["price_id"] == "price_ga"
        assert sess["quantity"] == 2
        assert sess["metadata"] == {
            "event_id": ev, "ticket_tier_id": tier, "quantity": "2",
        }
        assert sess["success_url"] == (
            "https://verbs.test/success?session_id={CHECKOUT_SESSION_ID}"
        )
        assert sess["cancel_url"] == f"https://verbs.test/events/{ev}"

    def test_no_order_written_before_webhook(self, client, seed):
        ev = seed.event()
        tier = seed.tier(ev)
        client.post("/checkout", json={"event_id": ev, "ticket_tier_id": tier})
        assert seed.orders() == []
        assert seed.sold_count(tier) == 0

    def test_inactive_tier(self, client, seed, payments):
        ev = seed.event()
        tier = seed.tier(ev, is_active=False)
        r = client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": tier, "quantity": 1,
        })
        assert r.status_code == 400
        assert r.json() == {"error": "This ticket tier is not available"}
        assert payments.sessions == []

    def test_missing_ids(self, client):
        r = client.post("/checkout", json={"event_id": "x"})
        assert r.status_code == 400
        assert r.json() == {"error": "Missing event_id or ticket_tier_id"}

    def test_unknown_tier(self, client, seed):
        ev = seed.event()
        r = client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": "nope",
        })
        assert r.status_code == 404
        assert r.json() == {"error": "Ticket tier not found"}

    def test_quantity_checked_before_tier_lookup(self, client, payments):
        r = client.post("/checkout", json={
            "event_id": "e", "ticket_tier_id": "nope", "quantity": 11,
        })
        assert r.status_code == 400
        assert r.json() == {"error": "Quantity must be between 1 and 10"}

    def test_door_tier_not_sold_online(self, client, seed):
        ev = seed.event()
        tier = seed.tier(ev, tier_type="door")
        r = client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": tier,
        })
        assert r.json() == {"error": "This ticket is only available at the door"}

    def test_stock_messages(self, client, seed):
        ev = seed.event()
        low = seed.tier(ev, max_stock=100, sold_count=97)
        gone = seed.tier(ev, name="Early", max_stock=50, sold_count=50)
        r = client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": low, "quantity": 5,
        })
        assert r.json() == {"error": "Only 3 tickets remaining"}
        r = client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": gone,
        })
        assert r.json() == {"error": "This ticket tier is sold out"}

    def test_missing_stripe_price(self, client, seed):
        ev = seed.event()
        tier = seed.tier(ev, stripe_price_id=None)
        r = client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": tier,
        })
        assert r.status_code == 400
        assert r.json() == {"error": "Ticket not configured for online purchase"}

    def test_provider_failure_is_500(self, client, seed, payments):
        payments.fail_sessions = True
        ev = seed.event()
        tier = seed.tier(ev)
        r = client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": tier,
        })
        assert r.status_code == 500
        assert r.json() == {"error": "Failed to create checkout session"}


class TestDoorCheckout:

    def test_door_mode_required(self, client, seed, payments):
        ev = seed.event(door_only_mode=False)
        tier = seed.tier(ev, tier_type="door")
        r = client.post("/door-checkout", json={
            "event_id": ev, "tier_id": tier, "quantity": 1,
        })
        assert r.status_code == 400
        assert r.json() == {"error": "Door checkout not enabled for this event"}
        assert payments.sessions == []

    def test_event_must_be_published(self, client, seed):
        ev = seed.event(door_only_mode=True, status="draft")
        tier = seed.tier(ev, tier_type="door")
        r = client.post("/door-checkout", json={"event_id": ev, "tier_id": tier})
        assert r.json() == {"error": "Event is not available"}

    def test_tier_must_belong_to_event(self, client, seed):
        ev = seed.event(door_only_mode=True)
        other = seed.event(title="Other")
        tier = seed.tier(other, tier_type="door")
        r = client.post("/door-checkout", json={"event_id": ev, "tier_id": tier})
        assert r.status_code == 404
        assert r.json() == {"error": "Ticket tier not found"}

    def test_unknown_event(self, client):
        r = client.post("/door-checkout", json={"event_id": "e", "tier_id": "t"})
        assert r.status_code == 404
        assert r.json() == {"error": "Event not found"}

    def test_door_sale(self, client, seed, payments):
        ev = seed.event(door_only_mode=True)
        tier = seed.tier(ev, tier_type="door", max_stock=1, sold_count=0)
        r = client.post("/door-checkout", json={
            "event_id": ev, "tier_id": tier, "quantity": 1,
        })
        assert r.status_code == 200
        assert r.json()["url"].startswith("https://checkout.stripe.test/")
        assert payments.sessions[0]["cancel_url"] == (
            f"https://verbs.test/door/{ev}"
        )

    def test_door_sold_out_message(self, client, seed):
        ev = seed.event(door_only_mode=True)
        tier = seed.tier(ev, tier_type="door", max_stock=1, sold_count=1)
        r = client.post("/door-checkout", json={"event_id": ev, "tier_id": tier})
        assert r.json() == {"error": "Tickets are sold out"}


class TestWithoutPayments:

    def test_rules_still_run_first(self, unpaid_client, seed):
        ev = seed.event()
        tier = seed.tier(ev, is_active=False)
        r = unpaid_client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": tier, "quantity": 1,
        })
        assert r.status_code == 400
        assert r.json() == {"error": "This ticket tier is not available"}

    def test_unknown_tier_is_404(self, unpaid_client):
        r = unpaid_client.post("/checkout", json={
            "event_id": "e", "ticket_tier_id": "nope",
        })
        assert r.status_code == 404

    def test_door_rules_still_run_first(self, unpaid_client, seed):
        ev = seed.event(door_only_mode=False)
        tier = seed.tier(ev, tier_type="door")
        r = unpaid_client.post("/door-checkout", json={
            "event_id": ev, "tier_id": tier,
        })
        assert r.status_code == 400
        assert r.json() == {"error": "Door checkout not enabled for this event"}

    def test_valid_request_reports_missing_provider(self, unpaid_client, seed):
        ev = seed.event()
        tier = seed.tier(ev)
        r = unpaid_client.post("/checkout", json={
            "event_id": ev, "ticket_tier_id": tier,
        })
        assert r.status_code == 500
        assert r.json() == {"error": "Payments not configured"}
