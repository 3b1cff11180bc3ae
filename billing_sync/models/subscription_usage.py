from sqlalchemy import UniqueConstraint
from billing_sync.extensions import db
from .types import utcnow

COUNTER_FIELDS = (
    "videos_processed",
    "api_calls_made",
    "storage_used_mb",
    "ai_summaries_generated",
    "analytics_views",
)

UNLIMITED = -1


class SubscriptionUsage(db.Model):
    __tablename__ = "subscription_usage"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("user_subscriptions.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=True, index=True)
    usage_limit = db.Column(db.Integer, nullable=False, default=0)  # -1 = unlimited

    videos_processed = db.Column(db.Integer, nullable=False, default=0)
    api_calls_made = db.Column(db.Integer, nullable=False, default=0)
    storage_used_mb = db.Column(db.Integer, nullable=False, default=0)
    ai_summaries_generated = db.Column(db.Integer, nullable=False, default=0)
    analytics_views = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    subscription = db.relationship("Subscription", back_populates="usage_records")

    __table_args__ = (
        UniqueConstraint("user_id", "subscription_id", "period_start", name="uq_subscription_usage_period"),
    )

    def counters(self) -> dict:
        return {name: (getattr(self, name) or 0) for name in COUNTER_FIELDS}

    def is_over_limit(self) -> bool:
        if self.usage_limit == UNLIMITED:
            return False
        return (self.videos_processed or 0) > (self.usage_limit or 0)

    def __repr__(self) -> str:
        return (
            f"<SubscriptionUsage id={self.id} user_id={self.user_id} subscription_id={self.subscription_id} "
            f"videos={self.videos_processed}/{self.usage_limit}>"
        )
