"""Tests for mirroring subscription snapshots onto profiles."""

import pytest
from sqlalchemy import text

from parkspot.core.errors import UnknownSubscriptionStatus
from parkspot.services.reconciler import (
    APPLIED,
    ORPHANED,
    STATUS_MAP,
    UNCHANGED,
    SubscriptionSnapshot,
    map_status,
)

from conftest import make_subscription


def test_snapshot_from_stripe_reads_item_period_end():
    snap = SubscriptionSnapshot.from_stripe(make_subscription())
    assert snap.id == "sub_1"
    assert snap.customer_id == "cus_1"
    assert snap.price_id == "price_pro"
    assert snap.user_id == "user-1"
    assert snap.plan_id == "pro"
    assert snap.current_period_end.isoformat() == "2030-01-01T00:00:00+00:00"


def test_snapshot_prefers_top_level_period_end_and_expanded_customer():
    sub = make_subscription()
    sub["current_period_end"] = 1900000000
    sub["customer"] = {"id": "cus_expanded", "object": "customer"}
    snap = SubscriptionSnapshot.from_stripe(sub)
    assert snap.customer_id == "cus_expanded"
    assert int(snap.current_period_end.timestamp()) == 1900000000


def test_snapshot_falls_back_to_trial_end():
    sub = make_subscription(status="trialing", period_end=None)
    sub["trial_end"] = 1895000000
    snap = SubscriptionSnapshot.from_stripe(sub)
    assert int(snap.current_period_end.timestamp()) == 1895000000


@pytest.mark.parametrize(
    "processor_status,expected",
    [
        ("active", "active"),
        ("trialing", "trialing"),
        ("canceled", "canceled"),
        ("past_due", "past_due"),
        ("unpaid", "past_due"),
        ("incomplete", "inactive"),
    ],
)
def test_status_mapping(processor_status, expected):
    assert map_status(processor_status) == expected


def test_unknown_status_is_an_error():
    assert "on_hold" not in STATUS_MAP
    with pytest.raises(UnknownSubscriptionStatus):
        map_status("on_hold")
    with pytest.raises(UnknownSubscriptionStatus):
        map_status(None)


def test_created_subscription_upgrades_profile(reconciler, store, profile):
    """inactive user + active pro subscription -> tier pro, status active."""
    assert profile.subscription_status == "inactive"
    result = reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription()))

    assert result.outcome == APPLIED
    assert result.user_id == "user-1"
    updated = store.get_profile("user-1")
    assert updated.subscription_tier == "pro"
    assert updated.subscription_status == "active"
    assert updated.stripe_subscription_id == "sub_1"
    assert updated.stripe_customer_id == "cus_1"
    assert updated.subscription_renews_at == "2030-01-01T00:00:00Z"
    assert updated.is_subscribed()


def test_applying_same_snapshot_twice_is_a_noop(reconciler, store, profile):
    snap = SubscriptionSnapshot.from_stripe(make_subscription())
    reconciler.apply(snap)
    once = store.get_profile("user-1")

    with store.engine.begin() as conn:
        updated_at = conn.execute(text("SELECT updated_at FROM profiles WHERE id = 'user-1'")).scalar()

    second = reconciler.apply(snap)
    assert second.outcome == UNCHANGED
    assert second.changed == ()
    assert store.get_profile("user-1") == once
    with store.engine.begin() as conn:
        assert conn.execute(text("SELECT updated_at FROM profiles WHERE id = 'user-1'")).scalar() == updated_at


def test_deleted_subscription_keeps_tier(reconciler, store, profile):
    reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription()))
    reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(status="canceled")))

    updated = store.get_profile("user-1")
    assert updated.subscription_status == "canceled"
    assert updated.subscription_tier == "pro"
    assert not updated.is_subscribed()


def test_cancellation_without_plan_metadata_keeps_tier(reconciler, store, profile):
    reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(plan_id="enterprise", price_id="price_enterprise")))
    reconciler.apply(
        SubscriptionSnapshot.from_stripe(make_subscription(status="canceled", plan_id=None, price_id="price_unknown"))
    )
    updated = store.get_profile("user-1")
    assert updated.subscription_tier == "enterprise"
    assert updated.subscription_status == "canceled"


def test_tier_falls_back_to_price_lookup(reconciler, store, profile):
    reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(plan_id=None, price_id="price_basic")))
    assert store.get_profile("user-1").subscription_tier == "basic"


def test_attribution_falls_back_to_customer_id(reconciler, store, profile):
    store.claim_stripe_customer_id("user-1", "cus_1")
    result = reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(user_id=None)))
    assert result.outcome == APPLIED
    assert store.get_profile("user-1").subscription_status == "active"


def test_orphaned_subscription_is_logged_not_raised(reconciler, store, profile, caplog):
    snap = SubscriptionSnapshot.from_stripe(make_subscription(user_id="ghost", customer="cus_ghost"))
    result = reconciler.apply(snap)
    assert result.outcome == ORPHANED
    assert "reconcile.orphaned" in caplog.text
    assert store.get_profile("user-1").subscription_status == "inactive"


def test_unknown_status_writes_nothing(reconciler, store, profile):
    with pytest.raises(UnknownSubscriptionStatus):
        reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(status="on_hold")))
    assert store.get_profile("user-1") == profile


def test_existing_customer_id_is_never_overwritten(reconciler, store, profile):
    store.claim_stripe_customer_id("user-1", "cus_original")
    reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(customer="cus_other")))
    updated = store.get_profile("user-1")
    assert updated.stripe_customer_id == "cus_original"
    assert updated.subscription_status == "active"


def test_out_of_order_delivery_is_last_write_wins(reconciler, store, profile):
    """A late 'updated' after 'deleted' regresses the profile; no version check."""
    reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(status="canceled")))
    reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(status="active")))
    assert store.get_profile("user-1").subscription_status == "active"


def test_price_change_at_stripe_updates_tier(reconciler, store, profile):
    reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(plan_id="basic", price_id="price_basic")))
    reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(plan_id="basic", price_id="price_pro")))
    assert store.get_profile("user-1").subscription_tier == "pro"


def test_customer_held_by_another_profile_is_not_claimed(reconciler, store, profile, caplog):
    store.claim_stripe_customer_id("user-1", "cus_1")
    store.ensure_profile("user-2", "other@example.com")

    result = reconciler.apply(SubscriptionSnapshot.from_stripe(make_subscription(sub_id="sub_2", user_id="user-2")))

    assert result.outcome == APPLIED
    other = store.get_profile("user-2")
    assert other.stripe_customer_id is None
    assert other.subscription_status == "active"
    assert other.subscription_tier == "pro"
    assert store.get_profile("user-1").stripe_customer_id == "cus_1"
    assert "reconcile.customer_mismatch" in caplog.text


def test_claim_of_taken_customer_id_does_not_raise(store, profile):
    store.claim_stripe_customer_id("user-1", "cus_1")
    store.ensure_profile("user-2")
    assert store.claim_stripe_customer_id("user-2", "cus_1") is None
    assert store.get_profile("user-1").stripe_customer_id == "cus_1"
