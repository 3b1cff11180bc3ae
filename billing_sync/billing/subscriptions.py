"""
Subscription Record Manager: upserts keyed by the provider subscription id.
"""
from typing import List, Optional

from flask import current_app
from sqlalchemy import select

from billing_sync.extensions import db
from billing_sync.models import Subscription
from billing_sync.models.subscription import LIVE_STATUSES, STATUS_ACTIVE, STATUS_CANCELED
from .events import SubscriptionPayload
from .tiers import FREE_TIER, is_paid


class SubscriptionRecords:
    def get_by_provider_id(self, stripe_subscription_id: Optional[str], for_update: bool = False) -> Optional[Subscription]:
        if not stripe_subscription_id:
            return None
        stmt = (
            select(Subscription)
            .where(Subscription.stripe_subscription_id == stripe_subscription_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return db.session.execute(stmt).scalar_one_or_none()

    def active_for_user(self, user_id: int) -> List[Subscription]:
        return (
            Subscription.query
            .filter(Subscription.user_id == user_id, Subscription.status.in_(LIVE_STATUSES))
            .order_by(Subscription.id.asc())
            .all()
        )

    def has_other_paid_subscription(self, user_id: int, exclude_id: int) -> bool:
        return any(
            s.id != exclude_id and is_paid(s.plan_name) and s.stripe_subscription_id
            for s in self.active_for_user(user_id)
        )

    def is_stale(self, record: Optional[Subscription], event_created) -> bool:
        """True when a newer provider event was already applied to this record."""
        if record is None or event_created is None or record.last_event_at is None:
            return False
        return event_created < record.last_event_at

    def upsert(self, payload: SubscriptionPayload, user_id: int, tier: str,
               event_created=None, record: Optional[Subscription] = None) -> Subscription:
        """Create or update the record for ``payload.id``; the caller owns the transaction."""
        if record is None:
            record = self.get_by_provider_id(payload.id, for_update=True)

        if record is None:
            record = Subscription(stripe_subscription_id=payload.id, user_id=user_id)
            db.session.add(record)
            current_app.logger.info("Creating subscription record for %s (user %s)", payload.id, user_id)
        elif record.user_id != user_id:
            current_app.logger.warning(
                "Subscription %s moves from user %s to user %s", payload.id, record.user_id, user_id
            )
            record.user_id = user_id

        record.stripe_customer_id = payload.customer_id or record.stripe_customer_id
        record.plan_name = tier
        record.price_id = payload.price_id or record.price_id
        record.status = payload.status
        record.current_period_start = payload.current_period_start or record.current_period_start
        record.current_period_end = payload.current_period_end or record.current_period_end
        record.cancel_at_period_end = payload.cancel_at_period_end
        record.trial_start = payload.trial_start
        record.trial_end = payload.trial_end
        self.touch(record, event_created)
        db.session.flush()
        return record

    def set_status(self, record: Subscription, status: str, event_created=None, **fields) -> Subscription:
        record.status = status
        for key, value in fields.items():
            setattr(record, key, value)
        self.touch(record, event_created)
        db.session.flush()
        return record

    def touch(self, record: Subscription, event_created) -> None:
        if event_created is not None and (record.last_event_at is None or event_created > record.last_event_at):
            record.last_event_at = event_created

    def cancel_free_placeholders(self, user_id: int, keep_id: int) -> List[Subscription]:
        """
        Cancel the registration-time free subscription (no provider id) once a
        paid one exists, so the user never has two active rows.
        """
        placeholders = (
            Subscription.query
            .filter(
                Subscription.user_id == user_id,
                Subscription.id != keep_id,
                Subscription.stripe_subscription_id.is_(None),
                Subscription.plan_name == FREE_TIER,
                Subscription.status == STATUS_ACTIVE,
            )
            .all()
        )
        for sub in placeholders:
            current_app.logger.info("Canceling free placeholder subscription %s for user %s", sub.id, user_id)
            sub.status = STATUS_CANCELED
        if placeholders:
            db.session.flush()
        return placeholders

    def create_free_placeholder(self, user_id: int) -> Subscription:
        """Registration-time record; kept here so tests and the CLI share one constructor."""
        record = Subscription(user_id=user_id, plan_name=FREE_TIER, status=STATUS_ACTIVE)
        db.session.add(record)
        db.session.flush()
        return record
