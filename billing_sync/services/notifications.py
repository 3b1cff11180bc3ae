"""
Billing notification emails. Called from the engine's post-commit phase only.
"""
from datetime import datetime
from typing import Optional

from flask import current_app

from billing_sync.extensions import db
from billing_sync.models import User
from billing_sync.billing.catalog import PLAN_NAMES
from .email import base_context, send_email


def _plan_label(tier: Optional[str]) -> str:
    return PLAN_NAMES.get(tier or "", (tier or "").title() or "Free")


def _fmt_date(value: Optional[datetime]) -> Optional[str]:
    return value.strftime("%B %d, %Y") if value else None


class NotificationService:
    def __init__(self, sender=send_email):
        self._send = sender

    def _user(self, user_id: int) -> Optional[User]:
        user = db.session.get(User, user_id)
        if user is None or not user.email:
            current_app.logger.warning("No email address for user %s; notification skipped", user_id)
            return None
        return user

    def _deliver(self, user_id: int, template: str, subject: str, **extra) -> bool:
        user = self._user(user_id)
        if user is None:
            return False
        context = base_context(user)
        context.update(extra)
        return self._send(user.email, subject, template, context, user_id=user.id)

    def send_upgrade_email(self, user_id: int, old_tier: Optional[str], new_tier: str) -> bool:
        return self._deliver(
            user_id, "upgrade", f"Welcome to {_plan_label(new_tier)}",
            old_plan=_plan_label(old_tier), new_plan=_plan_label(new_tier),
        )

    def send_downgrade_email(self, user_id: int, old_tier: str, new_tier: str) -> bool:
        return self._deliver(
            user_id, "downgrade", f"Your plan changed to {_plan_label(new_tier)}",
            old_plan=_plan_label(old_tier), new_plan=_plan_label(new_tier),
        )

    def send_cancellation_email(self, user_id: int, tier: Optional[str], access_until: Optional[datetime] = None) -> bool:
        return self._deliver(
            user_id, "cancellation", "Your subscription has been canceled",
            plan=_plan_label(tier), access_until=_fmt_date(access_until),
        )

    def send_payment_failed_email(self, user_id: int, invoice_id: Optional[str] = None) -> bool:
        return self._deliver(
            user_id, "payment_failed", "We couldn't process your payment",
            invoice_id=invoice_id,
        )

    def send_trial_ending_email(self, user_id: int, trial_end: Optional[datetime] = None) -> bool:
        return self._deliver(
            user_id, "trial_ending", "Your trial is ending soon",
            trial_end=_fmt_date(trial_end),
        )
