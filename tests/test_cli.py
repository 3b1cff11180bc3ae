import json

import pytest

from billing_sync.errors import UserNotResolvable
from billing_sync.models import BillingEventLog, PlanPrice, SubscriptionPlan

from conftest import event, make_user, subscription_object


def test_plans_seed_is_idempotent(app):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["plans", "seed"])
    assert first.exit_code == 0, first.output
    assert "prices=5" in first.output

    second = runner.invoke(args=["plans", "seed"])
    assert "Seeded plans=0 prices=0" in second.output

    with app.app_context():
        assert SubscriptionPlan.query.count() == 5
        assert PlanPrice.query.filter_by(stripe_price_id="price_basic_annual").one().billing_period == "year"


def test_billing_stats_outputs_json(app, engine, sent_emails):
    with app.app_context():
        make_user(42)
        engine.process(event("evt_1", "customer.subscription.created", subscription_object()))

    result = app.test_cli_runner().invoke(args=["billing", "stats", "--days", "1"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["health"]["successful_events"] == 1
    assert data["event_types"][0]["event_type"] == "customer.subscription.created"


def test_replay_failed_reports_remaining_failures(app, engine, sent_emails):
    with app.app_context():
        for n in (1, 2):
            with pytest.raises(UserNotResolvable):
                engine.process(event(f"evt_{n}", "customer.subscription.created",
                                     subscription_object(sub_id=f"sub_{n}", customer=f"cus_{n}", user_hint=str(40 + n))))
        make_user(41)

    result = app.test_cli_runner().invoke(args=["billing", "replay-failed"])

    assert result.exit_code == 1
    assert "1 event(s) still failing" in result.output
    with app.app_context():
        statuses = {r.stripe_event_id: r.status for r in BillingEventLog.query.all()}
    assert statuses == {"evt_1": "processed", "evt_2": "failed"}


def test_replay_unknown_event_fails_cleanly(app):
    result = app.test_cli_runner().invoke(args=["billing", "replay", "evt_nope"])
    assert result.exit_code == 1
    assert "Replay failed" in result.output
