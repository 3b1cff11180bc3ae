"""
Usage Period Manager.

The engine owns period bounds and limits; counters belong to the
feature-usage path, which only ever applies additive deltas (``increment``).
Neither side overwrites the other's columns, so the two commute.
"""
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import or_, select, update

from billing_sync.extensions import db
from billing_sync.models import SubscriptionUsage
from billing_sync.models.plan_migration import MIGRATION_DOWNGRADE, MIGRATION_UPGRADE
from billing_sync.models.subscription_usage import COUNTER_FIELDS, UNLIMITED
from billing_sync.models.types import utcnow
from .event_store import insert_if_absent
from .tiers import change_type


class UsagePeriodManager:
    def __init__(self, clock=utcnow):
        self.clock = clock

    # ---- lookups ----
    def latest_for_subscription(self, user_id: int, subscription_id: int) -> Optional[SubscriptionUsage]:
        stmt = (
            select(SubscriptionUsage)
            .where(SubscriptionUsage.user_id == user_id, SubscriptionUsage.subscription_id == subscription_id)
            .order_by(SubscriptionUsage.period_start.desc(), SubscriptionUsage.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def current_for_user(self, user_id: int, exclude_subscription_id: Optional[int] = None) -> Optional[SubscriptionUsage]:
        now = self.clock()
        stmt = (
            select(SubscriptionUsage)
            .where(
                SubscriptionUsage.user_id == user_id,
                or_(SubscriptionUsage.period_end.is_(None), SubscriptionUsage.period_end > now),
            )
            .order_by(SubscriptionUsage.period_start.desc(), SubscriptionUsage.id.desc())
            .execution_options(populate_existing=True)
        )
        if exclude_subscription_id is not None:
            stmt = stmt.where(SubscriptionUsage.subscription_id != exclude_subscription_id)
        return db.session.execute(stmt.limit(1)).scalar_one_or_none()

    def current_for_subscription(self, subscription_id: int) -> Optional[SubscriptionUsage]:
        now = self.clock()
        stmt = (
            select(SubscriptionUsage)
            .where(
                SubscriptionUsage.subscription_id == subscription_id,
                or_(SubscriptionUsage.period_end.is_(None), SubscriptionUsage.period_end > now),
            )
            .order_by(SubscriptionUsage.period_start.desc(), SubscriptionUsage.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    # ---- period management ----
    def ensure_period_usage(self, user_id: int, subscription_id: int, period_start: datetime,
                            period_end: Optional[datetime], limit: int,
                            reset_counters: bool = False) -> SubscriptionUsage:
        if period_start is None:
            raise ValueError("period_start is required to track usage")

        existing = self.latest_for_subscription(user_id, subscription_id)
        if existing is not None:
            if existing.period_start == period_start and existing.period_end == period_end:
                current_app.logger.debug("Usage record %s already current for %s", existing.id, period_start)
                return existing

            advanced = existing.period_end is not None and period_start >= existing.period_end
            if advanced and reset_counters:
                current_app.logger.info(
                    "Billing period advanced for subscription %s: %s -> %s; starting fresh usage",
                    subscription_id, existing.period_start, period_start,
                )
                return self._create(user_id, subscription_id, period_start, period_end, limit, counters=None)
            if advanced:
                # The renewal payment opens the next period; the ended row stays as history
                current_app.logger.info(
                    "Subscription %s is in a new period from %s; usage %s left for the renewal invoice",
                    subscription_id, period_start, existing.id,
                )
                return existing

            if period_start < existing.period_start:
                # Older period than the one we already track; never move bounds backwards
                current_app.logger.info(
                    "Ignoring older period %s for subscription %s (tracking %s)",
                    period_start, subscription_id, existing.period_start,
                )
                return existing

            current_app.logger.info(
                "Rewriting usage period %s: %s..%s -> %s..%s (counters kept)",
                existing.id, existing.period_start, existing.period_end, period_start, period_end,
            )
            existing.period_start = period_start
            existing.period_end = period_end
            existing.usage_limit = limit
            db.session.flush()
            return existing

        # Mid-period tier swap onto a new subscription: carry the counters over
        carried = self.current_for_user(user_id, exclude_subscription_id=subscription_id)
        counters = carried.counters() if carried is not None else None
        if carried is not None:
            current_app.logger.info(
                "Carrying over usage from record %s to subscription %s: %s", carried.id, subscription_id, counters
            )
        return self._create(user_id, subscription_id, period_start, period_end, limit, counters=counters)

    def apply_tier_change(self, user_id: int, subscription_id: int, old_tier: str, new_tier: str,
                          new_limit: int) -> Optional[SubscriptionUsage]:
        kind = change_type(old_tier, new_tier)
        usage = self.current_for_subscription(subscription_id)
        if usage is None:
            current_app.logger.warning(
                "No current usage record for subscription %s during %s %s -> %s",
                subscription_id, kind, old_tier, new_tier,
            )
            return None

        if kind not in (MIGRATION_UPGRADE, MIGRATION_DOWNGRADE):
            return usage

        old_limit = usage.usage_limit
        usage.usage_limit = new_limit
        db.session.flush()

        if kind == MIGRATION_DOWNGRADE and new_limit != UNLIMITED and (usage.videos_processed or 0) > new_limit:
            # Not an error: usage above the new limit is only enforced going forward
            current_app.logger.warning(
                "User %s already exceeds the downgraded limit (%s > %s)",
                user_id, usage.videos_processed, new_limit,
            )
        current_app.logger.info(
            "Usage limit %s on %s for user %s: %s -> %s (used %s)",
            "raised" if kind == MIGRATION_UPGRADE else "lowered",
            kind, user_id, old_limit, new_limit, usage.videos_processed,
        )
        return usage

    def apply_period_transition(self, user_id: int, subscription_id: int, period_start: datetime,
                                period_end: Optional[datetime]) -> Optional[SubscriptionUsage]:
        usage = self.current_for_subscription(subscription_id)
        if usage is None:
            current_app.logger.warning(
                "No current usage record for period transition (user %s, subscription %s)", user_id, subscription_id
            )
            return None
        usage.period_start = period_start
        usage.period_end = period_end
        db.session.flush()
        current_app.logger.info(
            "Usage %s moved to billing period %s..%s; counters carried over", usage.id, period_start, period_end
        )
        return usage

    def set_limit(self, usage: SubscriptionUsage, limit: int) -> SubscriptionUsage:
        usage.usage_limit = limit
        db.session.flush()
        return usage

    # ---- counters ----
    def increment(self, usage_id: int, counter: str = "videos_processed", amount: int = 1) -> None:
        """Additive delta; safe under concurrent period/limit updates."""
        if counter not in COUNTER_FIELDS:
            raise ValueError(f"Unknown usage counter: {counter}")
        column = getattr(SubscriptionUsage, counter)
        db.session.execute(
            update(SubscriptionUsage)
            .where(SubscriptionUsage.id == usage_id)
            .values({counter: column + amount, "updated_at": utcnow()})
            .execution_options(synchronize_session=False)
        )

    # ---- internals ----
    def _get(self, user_id, subscription_id, period_start) -> Optional[SubscriptionUsage]:
        stmt = (
            select(SubscriptionUsage)
            .where(
                SubscriptionUsage.user_id == user_id,
                SubscriptionUsage.subscription_id == subscription_id,
                SubscriptionUsage.period_start == period_start,
            )
            .execution_options(populate_existing=True)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def _create(self, user_id, subscription_id, period_start, period_end, limit, counters=None) -> SubscriptionUsage:
        now = utcnow()
        values = {
            "user_id": user_id,
            "subscription_id": subscription_id,
            "period_start": period_start,
            "period_end": period_end,
            "usage_limit": limit,
            "created_at": now,
            "updated_at": now,
            **(counters or {name: 0 for name in COUNTER_FIELDS}),
        }
        inserted = insert_if_absent(
            SubscriptionUsage, values, ["user_id", "subscription_id", "period_start"]
        )
        usage = self._get(user_id, subscription_id, period_start)
        if not inserted:
            # A concurrent delivery created the same period first
            current_app.logger.info(
                "Usage for subscription %s period %s already exists (%s)", subscription_id, period_start, usage.id
            )
            return usage
        current_app.logger.info(
            "Created usage record %s for user %s subscription %s (%s..%s, limit %s)",
            usage.id, user_id, subscription_id, period_start, period_end, limit,
        )
        return usage
