import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import calendar
from datetime import timedelta

import pytest
from billing_sync import create_app
from billing_sync.extensions import db
from billing_sync.models import User
from billing_sync.models.types import utcnow


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
        MAIL_SUPPRESS_SEND=True,
        APP_BASE_URL="http://example.test",
        WTF_CSRF_ENABLED=False,
        STRIPE_SECRET_KEY="sk_test_x",
        STRIPE_WEBHOOK_SECRET="whsec_test_x",
        STRIPE_PRICE_BASIC_MONTHLY="price_basic",
        STRIPE_PRICE_BASIC_ANNUAL="price_basic_annual",
        STRIPE_PRICE_PREMIUM_MONTHLY="price_premium",
        STRIPE_PRICE_CREATOR_MONTHLY="price_creator",
        STRIPE_PRICE_ENTERPRISE_MONTHLY="price_enterprise",
        REFGROW_API_KEY=None,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    app.extensions["entitlement_cache"].clear()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture()
def engine(app):
    return app.extensions["billing_engine"]


@pytest.fixture()
def sent_emails(engine, monkeypatch):
    """Record notification calls instead of rendering/sending mail."""
    calls = []

    def _recorder(name):
        def _send(*args):
            calls.append((name, args))
            return True
        return _send

    for name in (
        "send_upgrade_email",
        "send_downgrade_email",
        "send_cancellation_email",
        "send_payment_failed_email",
        "send_trial_ending_email",
    ):
        monkeypatch.setattr(engine.notifications, name, _recorder(name))
    return calls


class FakeGateway:
    def __init__(self):
        self.subscriptions = {}
        self.calls = []

    def retrieve_subscription(self, sub_id):
        self.calls.append(sub_id)
        return self.subscriptions[sub_id]


@pytest.fixture()
def gateway(engine, monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(engine, "gateway", fake)
    return fake


def epoch(dt) -> int:
    return calendar.timegm(dt.utctimetuple())


def make_user(user_id=42, email=None, **fields) -> User:
    user = User(id=user_id, email=email or f"user{user_id}@example.test", **fields)
    db.session.add(user)
    db.session.commit()
    return user


def period(days_ago=1, length_days=30):
    # Day-aligned so repeated calls within a test describe the same period
    start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=days_ago)
    return epoch(start), epoch(start + timedelta(days=length_days))


def subscription_object(sub_id="sub_1", customer="cus_1", price="price_basic", status="active",
                        user_hint="42", start=None, end=None, **extra):
    if start is None or end is None:
        start, end = period()
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": {"user_id": user_hint} if user_hint is not None else {},
        "items": [{"price": {"id": price, "product": "prod_video"}}],
        "current_period_start": start,
        "current_period_end": end,
        "cancel_at_period_end": False,
    }
    obj.update(extra)
    return obj


def event(event_id, event_type, obj, created=None):
    return {
        "id": event_id,
        "type": event_type,
        "created": created if created is not None else epoch(utcnow()),
        "data": {"object": obj},
    }


def login(client, user_id):
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
        sess["_fresh"] = True
