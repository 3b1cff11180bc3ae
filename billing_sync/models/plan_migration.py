from billing_sync.extensions import db
from .types import utcnow

MIGRATION_UPGRADE = "upgrade"
MIGRATION_DOWNGRADE = "downgrade"
MIGRATION_CROSSGRADE = "crossgrade"

REASON_TIER_CHANGE = "tier_change"
REASON_PERIOD_CHANGE = "billing_period_change"


class PlanMigration(db.Model):
    """Append-only audit of plan changes; rows are never updated."""

    __tablename__ = "subscription_plan_migrations"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("user_subscriptions.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)

    from_plan = db.Column(db.String(32), nullable=True)
    to_plan = db.Column(db.String(32), nullable=False)
    migration_type = db.Column(db.String(16), nullable=False, index=True)
    migration_reason = db.Column(db.String(32), nullable=False)
    from_billing_period = db.Column(db.String(20), nullable=True)
    to_billing_period = db.Column(db.String(20), nullable=True)

    effective_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "from_plan": self.from_plan,
            "to_plan": self.to_plan,
            "migration_type": self.migration_type,
            "migration_reason": self.migration_reason,
            "from_billing_period": self.from_billing_period,
            "to_billing_period": self.to_billing_period,
            "effective_date": self.effective_date.isoformat() if self.effective_date else None,
        }

    def __repr__(self) -> str:
        return f"<PlanMigration user_id={self.user_id} {self.from_plan}->{self.to_plan} ({self.migration_type})>"
