from datetime import datetime

from billing_sync.extensions import mail
from billing_sync.models import EmailLog
from billing_sync.services.email import _log_email, send_email
from billing_sync.services.notifications import NotificationService

from conftest import make_user


def test_upgrade_email_renders_both_parts(ctx):
    make_user(7, email="owner@example.test")

    with mail.record_messages() as outbox:
        assert NotificationService().send_upgrade_email(7, "basic", "premium") is True

    assert len(outbox) == 1
    msg = outbox[0]
    assert msg.recipients == ["owner@example.test"]
    assert "Premium" in msg.subject
    assert "previously Basic" in msg.body
    assert "http://example.test/account/billing" in msg.html

    row = EmailLog.query.one()
    assert row.status == "sent"
    assert row.template == "upgrade"
    assert row.user_id == 7


def test_cancellation_email_formats_access_date(ctx):
    make_user(7)
    with mail.record_messages() as outbox:
        NotificationService().send_cancellation_email(7, "creator", datetime(2030, 1, 15))
    assert "January 15, 2030" in outbox[0].body


def test_unknown_user_is_skipped(ctx):
    with mail.record_messages() as outbox:
        assert NotificationService().send_payment_failed_email(999, "in_1") is False
    assert outbox == []
    assert EmailLog.query.count() == 0


def test_recent_bounce_suppresses_sending(ctx):
    _log_email(user_id=None, to_email="Bounced@Example.test", template="upgrade", subject="x", status="bounced")

    with mail.record_messages() as outbox:
        assert send_email("bounced@example.test", "Hello", "trial_ending", {"trial_end": None}) is False

    assert outbox == []
    suppressed = EmailLog.query.filter_by(template="trial_ending").one()
    assert suppressed.status == "failed"
    assert suppressed.meta == {"reason": "suppressed"}


def test_sender_can_be_swapped(ctx):
    make_user(7)
    calls = []

    def _sender(to_email, subject, template, context, user_id=None):
        calls.append((to_email, template, context["invoice_id"], user_id))
        return True

    NotificationService(sender=_sender).send_payment_failed_email(7, "in_42")
    assert calls == [("user7@example.test", "payment_failed", "in_42", 7)]
