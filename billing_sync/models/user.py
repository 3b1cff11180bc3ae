from flask_login import UserMixin
from billing_sync.extensions import db, login_manager
from .types import utcnow


class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    # Identifier carried over from the pre-Postgres user store ("rec...")
    legacy_external_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    stripe_customer_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    # Affiliate referral code captured at signup; a first paid subscription reports a conversion
    referred_by_code = db.Column(db.String(64), nullable=True)

    subscription_tier = db.Column(db.String(32), nullable=False, default="free")
    subscription_status = db.Column(db.String(32), nullable=False, default="active")
    # Bumped whenever entitlements change; tokens stamped with an older value are rejected
    token_version = db.Column(db.Integer, nullable=False, default=0)

    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def get_id(self) -> str:
        return str(self.id)

    def __repr__(self) -> str:
        return f"<User id={self.id} tier={self.subscription_tier!r} status={self.subscription_status!r}>"


@login_manager.user_loader
def load_user(user_id: str):
    try:
        return db.session.get(User, int(user_id))
    except Exception:
        return None
