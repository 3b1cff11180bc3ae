from billing_sync.extensions import db
from billing_sync.models import User
from billing_sync.services.tokens import generate, verify

from conftest import event, make_user, subscription_object


def test_token_round_trip_carries_entitlements(ctx):
    user = make_user(1, subscription_tier="premium")
    claims = verify(generate(user))
    assert claims["u"] == 1
    assert claims["tier"] == "premium"


def test_invalidate_rejects_earlier_tokens(app, ctx):
    tokens = app.extensions["billing_engine"].tokens
    user = make_user(1)
    token = tokens.issue(user)
    assert 1 in app.extensions["entitlement_cache"]

    tokens.invalidate(1)

    assert verify(token) is None
    assert 1 not in app.extensions["entitlement_cache"]
    fresh = db.session.get(User, 1, populate_existing=True)
    assert fresh.token_version == 1
    assert verify(tokens.issue(fresh)) is not None


def test_tampered_token_is_rejected(ctx):
    user = make_user(1)
    assert verify(generate(user) + "x") is None


def test_subscription_change_invalidates_outstanding_tokens(app, ctx, engine, sent_emails):
    user = make_user(42)
    before = generate(user)

    engine.process(event("evt_1", "customer.subscription.created", subscription_object(price="price_premium")))

    assert verify(before) is None
    after = verify(generate(db.session.get(User, 42, populate_existing=True)))
    assert after["tier"] == "premium"
