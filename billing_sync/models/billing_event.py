from billing_sync.extensions import db
from .types import JSONType, utcnow

EVENT_PENDING = "pending"
EVENT_PROCESSING = "processing"
EVENT_PROCESSED = "processed"
EVENT_FAILED = "failed"

EVENT_STATUSES = (EVENT_PENDING, EVENT_PROCESSING, EVENT_PROCESSED, EVENT_FAILED)


class BillingEventLog(db.Model):
    """One row per provider event id; never deleted (audit trail)."""

    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    signature_valid = db.Column(db.Boolean, nullable=False, default=True)
    payload = db.Column(JSONType, nullable=False, default=dict)

    status = db.Column(db.String(20), nullable=False, index=True, default=EVENT_PENDING)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.String(1000), nullable=True)
    result = db.Column(JSONType, nullable=True)

    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)

    received_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    processing_started_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status == EVENT_PROCESSED and not self.error_message

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripe_event_id": self.stripe_event_id,
            "event_type": self.event_type,
            "status": self.status,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "result": self.result,
            "stripe_subscription_id": self.stripe_subscription_id,
            "user_id": self.user_id,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self) -> str:
        return f"<BillingEventLog {self.stripe_event_id!r} type={self.event_type!r} status={self.status!r}>"
