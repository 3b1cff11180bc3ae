from datetime import timedelta

import pytest

from billing_sync.billing.usage import UsagePeriodManager
from billing_sync.extensions import db
from billing_sync.models import Subscription, SubscriptionUsage
from billing_sync.models.types import utcnow

from conftest import make_user


def _subscription(user_id, sub_id, plan):
    record = Subscription(user_id=user_id, stripe_subscription_id=sub_id, plan_name=plan, status="active")
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture()
def bounds():
    start = utcnow().replace(microsecond=0) - timedelta(days=2)
    return start, start + timedelta(days=30)


def test_ensure_creates_zeroed_row_once(ctx, bounds):
    make_user(1)
    sub = _subscription(1, "sub_a", "basic")
    manager = UsagePeriodManager()

    first = manager.ensure_period_usage(1, sub.id, *bounds, limit=4)
    again = manager.ensure_period_usage(1, sub.id, *bounds, limit=4)
    db.session.commit()

    assert first.id == again.id
    assert first.usage_limit == 4
    assert all(v == 0 for v in first.counters().values())
    assert SubscriptionUsage.query.count() == 1


def test_mid_period_swap_carries_usage_over(ctx, bounds):
    make_user(1)
    basic = _subscription(1, "sub_basic", "basic")
    premium = _subscription(1, "sub_premium", "premium")
    manager = UsagePeriodManager()

    old = manager.ensure_period_usage(1, basic.id, *bounds, limit=4)
    manager.increment(old.id, "videos_processed", 3)
    db.session.commit()

    new = manager.ensure_period_usage(1, premium.id, *bounds, limit=8)
    db.session.commit()

    assert new.subscription_id == premium.id
    assert new.videos_processed == 3
    assert new.usage_limit == 8


def test_period_rewrite_keeps_counters_without_reset(ctx, bounds):
    make_user(1)
    sub = _subscription(1, "sub_a", "basic")
    manager = UsagePeriodManager()
    usage = manager.ensure_period_usage(1, sub.id, *bounds, limit=4)
    manager.increment(usage.id, amount=2)
    db.session.commit()

    start, end = bounds
    moved = manager.ensure_period_usage(1, sub.id, start + timedelta(days=1), end + timedelta(days=1), limit=4)

    assert moved.id == usage.id
    assert moved.videos_processed == 2
    assert moved.period_start == start + timedelta(days=1)


def test_advanced_period_without_reset_leaves_row_alone(ctx, bounds):
    make_user(1)
    sub = _subscription(1, "sub_a", "basic")
    manager = UsagePeriodManager()
    usage = manager.ensure_period_usage(1, sub.id, *bounds, limit=4)
    manager.increment(usage.id, amount=3)
    db.session.commit()

    start, end = bounds
    same = manager.ensure_period_usage(1, sub.id, end, end + timedelta(days=30), limit=4)

    assert same.id == usage.id
    assert same.period_start == start
    assert same.videos_processed == 3
    assert SubscriptionUsage.query.count() == 1


def test_reset_only_when_period_truly_advances(ctx, bounds):
    make_user(1)
    sub = _subscription(1, "sub_a", "basic")
    manager = UsagePeriodManager()
    usage = manager.ensure_period_usage(1, sub.id, *bounds, limit=4)
    manager.increment(usage.id, amount=2)
    db.session.commit()

    start, end = bounds
    # Overlapping period: not a renewal
    same = manager.ensure_period_usage(1, sub.id, start + timedelta(days=1), end, limit=4, reset_counters=True)
    assert same.id == usage.id
    assert same.videos_processed == 2

    renewed = manager.ensure_period_usage(1, sub.id, end, end + timedelta(days=30), limit=4, reset_counters=True)
    db.session.commit()
    assert renewed.id != usage.id
    assert renewed.videos_processed == 0
    assert SubscriptionUsage.query.count() == 2


def test_tier_change_limits(ctx, bounds):
    make_user(1)
    sub = _subscription(1, "sub_a", "creator")
    manager = UsagePeriodManager()
    usage = manager.ensure_period_usage(1, sub.id, *bounds, limit=12)
    manager.increment(usage.id, amount=6)
    db.session.commit()

    manager.apply_tier_change(1, sub.id, "creator", "basic", 4)
    assert db.session.get(SubscriptionUsage, usage.id).usage_limit == 4
    assert db.session.get(SubscriptionUsage, usage.id).videos_processed == 6

    manager.apply_tier_change(1, sub.id, "basic", "basic", 99)
    assert db.session.get(SubscriptionUsage, usage.id).usage_limit == 4

    assert manager.apply_tier_change(1, 12345, "basic", "premium", 8) is None


def test_increment_rejects_unknown_counter(ctx):
    with pytest.raises(ValueError):
        UsagePeriodManager().increment(1, "minutes_streamed")


def test_current_lookups_ignore_ended_periods(ctx, bounds):
    make_user(1)
    sub = _subscription(1, "sub_a", "basic")
    manager = UsagePeriodManager()
    past_start = utcnow() - timedelta(days=60)
    manager.ensure_period_usage(1, sub.id, past_start, past_start + timedelta(days=30), limit=4)
    db.session.commit()

    assert manager.current_for_subscription(sub.id) is None
    assert manager.current_for_user(1) is None

    current = manager.ensure_period_usage(1, sub.id, *bounds, limit=4, reset_counters=True)
    assert manager.current_for_subscription(sub.id).id == current.id
