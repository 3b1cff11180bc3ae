import pytest
import requests

from billing_sync.services.affiliates import AffiliateTracker

from conftest import event, make_user, subscription_object


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} from RefGrow")


class FakeSession:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        return FakeResponse(self.status_code)


@pytest.fixture()
def refgrow(app, engine, monkeypatch):
    session = FakeSession()
    monkeypatch.setattr(engine, "affiliates", AffiliateTracker(session=session))
    monkeypatch.setitem(app.config, "REFGROW_API_KEY", "rg_test")
    monkeypatch.setitem(app.config, "REFGROW_API_URL", "https://refgrow.example/api/v1/")
    return session


def _priced(price="price_premium", unit_amount=2900, **kw):
    return subscription_object(items=[{"price": {"id": price, "product": "prod_video", "unit_amount": unit_amount}}], **kw)


def test_first_paid_subscription_reports_conversion(ctx, engine, sent_emails, refgrow):
    make_user(42, referred_by_code="CREATOR10")

    engine.process(event("evt_1", "customer.subscription.created", _priced()))

    assert len(refgrow.posts) == 1
    url, kwargs = refgrow.posts[0]
    assert url == "https://refgrow.example/api/v1/conversions"
    assert kwargs["headers"] == {"Authorization": "Bearer rg_test"}
    body = kwargs["json"]
    assert body["referral_code"] == "CREATOR10"
    assert body["customer_id"] == "42"
    assert body["amount"] == 29.0
    assert body["commission_amount"] == 5.8
    assert body["metadata"]["stripe_subscription_id"] == "sub_1"


def test_checkout_after_created_does_not_report_twice(ctx, engine, sent_emails, gateway, refgrow):
    make_user(42, referred_by_code="CREATOR10")
    gateway.subscriptions["sub_1"] = _priced()

    engine.process(event("evt_1", "customer.subscription.created", _priced()))
    engine.process(event("evt_2", "checkout.session.completed",
                         {"id": "cs_1", "subscription": "sub_1", "customer": "cus_1", "client_reference_id": "42"}))

    assert len(refgrow.posts) == 1


def test_checkout_first_reports_conversion(ctx, engine, sent_emails, gateway, refgrow):
    make_user(42, referred_by_code="CREATOR10")
    gateway.subscriptions["sub_1"] = _priced()

    result = engine.process(event("evt_1", "checkout.session.completed",
                                  {"id": "cs_1", "subscription": "sub_1", "customer": "cus_1",
                                   "client_reference_id": "42"}))

    assert result["tier"] == "premium"
    assert [kw["json"]["referral_code"] for _, kw in refgrow.posts] == ["CREATOR10"]


def test_unreferred_user_sends_nothing(ctx, engine, sent_emails, refgrow):
    make_user(42)
    engine.process(event("evt_1", "customer.subscription.created", _priced()))
    assert refgrow.posts == []


def test_missing_api_key_skips_tracking(ctx, app, engine, sent_emails, refgrow):
    app.config["REFGROW_API_KEY"] = None
    make_user(42, referred_by_code="CREATOR10")

    engine.process(event("evt_1", "customer.subscription.created", _priced()))

    assert refgrow.posts == []


def test_refgrow_error_does_not_undo_subscription(ctx, engine, sent_emails, refgrow):
    refgrow.status_code = 503
    make_user(42, referred_by_code="CREATOR10")

    result = engine.process(event("evt_1", "customer.subscription.created", _priced()))

    assert result["processed"] is True
    assert result["tier"] == "premium"
    assert len(refgrow.posts) == 1
