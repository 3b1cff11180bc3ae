import json

import pytest
import stripe

from billing_sync.models import BillingEventLog, Subscription

from conftest import event, make_user, subscription_object


@pytest.fixture()
def trusted_signature(monkeypatch):
    # Monkeypatch Stripe signature verification to trust our payload
    def _fake_construct_event(payload, sig_header, secret):
        return json.loads(payload)
    monkeypatch.setattr(stripe.Webhook, "construct_event", staticmethod(_fake_construct_event))


def _post(client, payload):
    return client.post(
        "/webhooks/stripe",
        data=json.dumps(payload),
        headers={"Stripe-Signature": "t=1,v1=fake"},
    )


def test_invalid_signature_is_logged_and_rejected(app, client):
    resp = client.post("/webhooks/stripe", data=b'{"id": "evt_forged"}',
                       headers={"Stripe-Signature": "t=1,v1=bad"})

    assert resp.status_code == 400
    assert resp.get_json() == {"error": "invalid_signature"}
    with app.app_context():
        row = BillingEventLog.query.one()
        assert row.stripe_event_id.startswith("invalid:")
        assert row.signature_valid is False


def test_subscription_created_via_route(app, client, trusted_signature, sent_emails):
    with app.app_context():
        make_user(42)

    resp = _post(client, event("evt_1", "customer.subscription.created", subscription_object()))
    assert resp.status_code == 200
    assert resp.get_json()["tier"] == "basic"

    again = _post(client, event("evt_1", "customer.subscription.created", subscription_object()))
    assert again.status_code == 200
    assert again.get_json() == {"processed": True, "duplicate": True}

    with app.app_context():
        assert Subscription.query.count() == 1


def test_processing_failure_returns_500(app, client, trusted_signature):
    resp = _post(client, event("evt_1", "customer.subscription.created",
                               subscription_object(user_hint="404", customer="cus_nobody")))

    assert resp.status_code == 500
    body = resp.get_json()
    assert body["error"] == "processing_failed"
    assert body["retriable"] is True
    with app.app_context():
        assert BillingEventLog.query.one().status == "failed"


def test_malformed_event_returns_400(client, trusted_signature):
    resp = _post(client, {"id": "evt_1", "type": "invoice.paid", "data": {}})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "malformed_event"


def test_in_flight_event_returns_409(app, client, trusted_signature):
    payload = event("evt_1", "invoice.paid", {"id": "in_1"})
    with app.app_context():
        app.extensions["billing_engine"].store.record_if_new("evt_1", "invoice.paid", payload)

    resp = _post(client, payload)

    assert resp.status_code == 409
    assert resp.get_json() == {"processed": False, "in_progress": True}


def test_checkout_completed_uses_stripe_client(app, client, trusted_signature, sent_emails, monkeypatch):
    with app.app_context():
        make_user(42)

    # Fake StripeClient.subscriptions.retrieve
    class _FakeSubs:
        def retrieve(self, sub_id):
            assert sub_id == "sub_test"
            return subscription_object("sub_test", price="price_premium")

    class _FakeClient:
        def __init__(self, key, max_network_retries=None):
            assert max_network_retries == 3

        @property
        def subscriptions(self):
            return _FakeSubs()

    monkeypatch.setattr("billing_sync.billing.provider.StripeClient", _FakeClient)
    monkeypatch.setattr(app.extensions["billing_engine"].gateway, "_client", None)

    resp = _post(client, event("evt_cs", "checkout.session.completed",
                               {"id": "cs_1", "subscription": "sub_test", "metadata": {"user_id": "42"}}))

    assert resp.status_code == 200
    assert resp.get_json()["tier"] == "premium"
    with app.app_context():
        assert Subscription.query.filter_by(stripe_subscription_id="sub_test").one().plan_name == "premium"


def test_stripe_lookup_failure_is_retriable(app, client, trusted_signature, monkeypatch):
    with app.app_context():
        make_user(42)

    class _FailingSubs:
        def retrieve(self, sub_id):
            raise stripe.APIConnectionError("network down")

    class _FakeClient:
        def __init__(self, key, max_network_retries=None):
            pass

        @property
        def subscriptions(self):
            return _FailingSubs()

    monkeypatch.setattr("billing_sync.billing.provider.StripeClient", _FakeClient)
    monkeypatch.setattr(app.extensions["billing_engine"].gateway, "_client", None)

    resp = _post(client, event("evt_inv", "invoice.paid", {"id": "in_1", "subscription": "sub_1"}))

    assert resp.status_code == 500
    with app.app_context():
        row = BillingEventLog.query.filter_by(stripe_event_id="evt_inv").one()
        assert row.status == "failed"
        assert "UpstreamLookupFailure" in row.error_message


def test_json_surface_for_health_and_errors(client):
    assert client.get("/healthz").get_json() == {"status": "ok"}
    assert client.get("/webhooks/stripe").status_code == 405
    assert client.get("/nope").get_json()["error"] == "not_found"


def test_missing_webhook_secret_is_a_server_error(app, client, monkeypatch):
    monkeypatch.setitem(app.config, "STRIPE_WEBHOOK_SECRET", None)
    resp = client.post("/webhooks/stripe", data=b"{}")
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "internal_error"
