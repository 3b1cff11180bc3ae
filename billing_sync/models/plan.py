from billing_sync.extensions import db
from .types import JSONType, utcnow


class SubscriptionPlan(db.Model):
    __tablename__ = "subscription_plans"

    id = db.Column(db.Integer, primary_key=True)
    plan_key = db.Column(db.String(50), nullable=False, unique=True)  # free|basic|premium|creator|enterprise
    name = db.Column(db.String(100), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # -1 = unlimited
    video_limit = db.Column(db.Integer, nullable=False, default=0)
    api_calls_limit = db.Column(db.Integer, nullable=False, default=0)
    storage_limit_gb = db.Column(db.Integer, nullable=False, default=0)
    features = db.Column(JSONType, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    prices = db.relationship("PlanPrice", back_populates="plan", lazy="selectin")

    def __repr__(self) -> str:
        return f"<SubscriptionPlan {self.plan_key!r} videos={self.video_limit}>"


class PlanPrice(db.Model):
    __tablename__ = "subscription_plan_prices"

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_price_id = db.Column(db.String(100), nullable=False, unique=True, index=True)
    billing_period = db.Column(db.String(20), nullable=False)  # month|year
    amount = db.Column(db.Integer, nullable=False, default=0)  # cents
    currency = db.Column(db.String(3), nullable=False, default="usd")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    plan = db.relationship("SubscriptionPlan", back_populates="prices")

    def __repr__(self) -> str:
        return f"<PlanPrice {self.stripe_price_id!r} period={self.billing_period!r}>"
