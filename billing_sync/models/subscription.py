from billing_sync.extensions import db
from .types import utcnow

STATUS_ACTIVE = "active"
STATUS_TRIALING = "trialing"
STATUS_PAUSED = "paused"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_INCOMPLETE = "incomplete"

LIVE_STATUSES = (STATUS_ACTIVE, STATUS_TRIALING)


class Subscription(db.Model):
    __tablename__ = "user_subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)

    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    # NULL for the free placeholder created at registration time
    stripe_subscription_id = db.Column(db.String(64), nullable=True, unique=True, index=True)

    plan_name = db.Column(db.String(32), nullable=False, index=True)
    price_id = db.Column(db.String(64), nullable=True, index=True)

    status = db.Column(db.String(32), nullable=False, index=True, default=STATUS_INCOMPLETE)
    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    trial_start = db.Column(db.DateTime, nullable=True)
    trial_end = db.Column(db.DateTime, nullable=True)

    # Provider timestamp of the newest event applied to this row
    last_event_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    usage_records = db.relationship("SubscriptionUsage", back_populates="subscription", lazy="dynamic")

    @property
    def is_free_placeholder(self) -> bool:
        return self.stripe_subscription_id is None and self.plan_name == "free"

    def __repr__(self) -> str:
        return (
            f"<Subscription id={self.id} user_id={self.user_id} "
            f"stripe_subscription_id={self.stripe_subscription_id!r} plan={self.plan_name!r} status={self.status!r}>"
        )
