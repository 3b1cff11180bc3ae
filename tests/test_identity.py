import pytest

from billing_sync.billing.identity import UserDirectory, UserResolver
from billing_sync.errors import UserNotResolvable
from billing_sync.models import Subscription

from conftest import make_user


@pytest.fixture()
def resolver(ctx):
    return UserResolver(UserDirectory())


def test_numeric_hint_resolves_internal_id(resolver):
    make_user(42)
    assert resolver.resolve("42") == 42
    assert resolver.resolve(42) == 42


def test_legacy_and_email_hints(resolver):
    make_user(3, email="Creator@Example.test", legacy_external_id="recAbc123")
    assert resolver.resolve("recAbc123") == 3
    assert resolver.resolve("creator@example.test") == 3


def test_falls_back_to_customer_id(resolver):
    make_user(5, stripe_customer_id="cus_5")
    assert resolver.resolve("404", customer_id="cus_5") == 5
    assert resolver.resolve("not-a-hint", customer_id="cus_5") == 5


def test_falls_back_to_subscription_record(resolver):
    make_user(8)
    record = Subscription(user_id=8, plan_name="basic", status="active")
    assert resolver.resolve(None, customer_id="cus_unknown", subscription_record=record) == 8


def test_unresolvable_raises(resolver):
    with pytest.raises(UserNotResolvable) as exc:
        resolver.resolve("999", customer_id="cus_none")
    assert exc.value.retriable is True
    assert exc.value.context["customer_id"] == "cus_none"


def test_directory_update_rejects_unknown_fields(ctx):
    make_user(1)
    with pytest.raises(ValueError):
        UserDirectory().update(1, is_admin=True)
