"""Unit tests for the order preconditions and refund arithmetic."""

import pytest

from verbs.model.records import EventRecord, TierRecord
from verbs.validation import (
    ValidationResult, calculate_refund_status, calculate_tickets_to_return,
    first_failure, tickets_released, validate_door_event,
    validate_payment_config, validate_quantity, validate_stock,
    validate_tier_active, validate_tier_type,
)


def make_tier(**kw):
    values = dict(
        id="t1", event_id="e1", name="GA", tier_type="online", price=2500,
        sold_count=0, is_active=True, max_stock=100,
        stripe_price_id="price_1",
    )
    values.update(kw)
    return TierRecord(**values)


def make_event(**kw):
    from datetime import datetime, timezone
    values = dict(
        id="e1", title="VERBS", date=datetime(2026, 1, 1, tzinfo=timezone.utc),
        venue_name="Room", venue_city="NYC", status="published",
        door_only_mode=True,
    )
    values.update(kw)
    return EventRecord(**values)


class TestQuantity:

    @pytest.mark.parametrize("q", range(-2, 14))
    def test_valid_iff_between_one_and_ten(self, q):
        assert validate_quantity(q).valid == (1 <= q <= 10)

    def test_error_message(self):
        assert validate_quantity(11).error == "Quantity must be between 1 and 10"


class TestTierRules:

    def test_inactive_tier(self):
        r = validate_tier_active(make_tier(is_active=False))
        assert r == ValidationResult(False, "This ticket tier is not available")

    def test_door_tier_rejected_online(self):
        r = validate_tier_type(make_tier(tier_type="door"))
        assert r.error == "This ticket is only available at the door"
        assert validate_tier_type(make_tier()).valid

    def test_payment_config_requires_price_id(self):
        r = validate_payment_config(make_tier(stripe_price_id=None))
        assert r.error == "Ticket not configured for online purchase"
        assert validate_payment_config(make_tier()).valid


class TestStock:

    def test_only_n_remaining(self):
        tier = make_tier(max_stock=100, sold_count=97)
        assert validate_stock(tier, 5) == ValidationResult(
            False, "Only 3 tickets remaining"
        )
        assert validate_stock(tier, 3) == ValidationResult(True)

    def test_sold_out(self):
        tier = make_tier(max_stock=10, sold_count=10)
        assert validate_stock(tier, 1).error == "This ticket tier is sold out"
        assert validate_stock(
            tier, 1, sold_out_message="Tickets are sold out"
        ).error == "Tickets are sold out"

    def test_available_property(self):
        assert make_tier(max_stock=10, sold_count=4).available == 6
        assert make_tier(max_stock=None, sold_count=4).available is None

    @pytest.mark.parametrize("sold,q", [(0, 1), (10_000, 10), (-5, 3)])
    def test_unlimited_always_valid(self, sold, q):
        assert validate_stock(make_tier(max_stock=None, sold_count=sold), q).valid


class TestDoorEvent:

    def test_requires_door_mode(self):
        r = validate_door_event(make_event(door_only_mode=False))
        assert r.error == "Door checkout not enabled for this event"

    def test_requires_published(self):
        r = validate_door_event(make_event(status="draft"))
        assert r.error == "Event is not available"

    def test_ok(self):
        assert validate_door_event(make_event()).valid


def test_first_failure_picks_earliest():
    results = [
        ValidationResult(True),
        ValidationResult(False, "first"),
        ValidationResult(False, "second"),
    ]
    assert first_failure(results).error == "first"
    assert first_failure([ValidationResult(True)]) is None


class TestRefundMath:

    @pytest.mark.parametrize("refunded,original,expected", [
        (100, 100, "refunded"),
        (150, 100, "refunded"),
        (99, 100, "partially_refunded"),
        (0, 100, "partially_refunded"),
    ])
    def test_refund_status(self, refunded, original, expected):
        assert calculate_refund_status(refunded, original) == expected

    @pytest.mark.parametrize("refunded,expected", [(50, 2), (33, 1), (5, 0)])
    def test_partial_tickets_floor(self, refunded, expected):
        assert calculate_tickets_to_return(refunded, 100, 4, False) == expected

    def test_full_refund_returns_everything(self):
        assert calculate_tickets_to_return(100, 100, 4, True) == 4

    def test_cumulative_release(self):
        assert tickets_released(0, 100, 4) == 0
        assert tickets_released(50, 100, 4) == 2
        assert tickets_released(120, 100, 4) == 4
