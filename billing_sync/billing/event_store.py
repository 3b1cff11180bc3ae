"""
Event Store / Idempotency Guard.

Every provider event id gets exactly one row. The row is created with an
atomic insert-if-absent on the unique ``stripe_event_id`` and claimed for
processing with a conditional UPDATE, so two concurrent deliveries of the same
event can never both run the handlers.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from billing_sync.extensions import db
from billing_sync.models import BillingEventLog
from billing_sync.models.billing_event import (
    EVENT_FAILED,
    EVENT_PENDING,
    EVENT_PROCESSED,
    EVENT_PROCESSING,
)
from billing_sync.models.types import utcnow

ERROR_MESSAGE_MAX = 1000


def insert_if_absent(model, values: dict, index_elements) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING on a unique key; True when this call inserted the row."""
    dialect = db.session.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=list(index_elements))
        return db.session.execute(stmt).rowcount == 1

    # Other backends: rely on the unique constraint inside a savepoint
    try:
        with db.session.begin_nested():
            db.session.add(model(**values))
        return True
    except IntegrityError:
        return False


@dataclass
class GuardResult:
    is_new: bool
    record: Optional[BillingEventLog]
    in_flight: bool = False

    @property
    def duplicate(self) -> bool:
        return not self.is_new and not self.in_flight


class EventStore:
    def __init__(self, lease_seconds: int = 300):
        self.lease_seconds = lease_seconds

    # ---- reads ----
    def get(self, event_id: str) -> Optional[BillingEventLog]:
        stmt = (
            select(BillingEventLog)
            .where(BillingEventLog.stripe_event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def list_failed(self, limit: int = 50, max_retries: Optional[int] = None):
        q = BillingEventLog.query.filter(BillingEventLog.status == EVENT_FAILED)
        if max_retries is not None:
            q = q.filter(BillingEventLog.retry_count < max_retries)
        return q.order_by(BillingEventLog.received_at.desc(), BillingEventLog.id.desc()).limit(limit).all()

    def list_recent(self, limit: int = 100, event_type: Optional[str] = None):
        q = BillingEventLog.query
        if event_type:
            q = q.filter(BillingEventLog.event_type == event_type)
        return q.order_by(BillingEventLog.received_at.desc(), BillingEventLog.id.desc()).limit(limit).all()

    def stats(self, days: int = 7) -> list:
        """Per event type: total, processed, failed, still in flight."""
        since = utcnow() - timedelta(days=days)
        rows = db.session.execute(
            select(
                BillingEventLog.event_type,
                BillingEventLog.status,
                func.count(BillingEventLog.id),
            )
            .where(BillingEventLog.received_at >= since)
            .group_by(BillingEventLog.event_type, BillingEventLog.status)
        ).all()

        by_type = {}
        for event_type, status, count in rows:
            entry = by_type.setdefault(
                event_type, {"event_type": event_type, "total": 0, "processed": 0, "failed": 0, "in_flight": 0}
            )
            entry["total"] += count
            if status == EVENT_PROCESSED:
                entry["processed"] += count
            elif status == EVENT_FAILED:
                entry["failed"] += count
            else:
                entry["in_flight"] += count
        return sorted(by_type.values(), key=lambda e: e["total"], reverse=True)

    def health(self, days: int = 7) -> dict:
        now = utcnow()
        since = now - timedelta(days=days)
        lease_cutoff = now - timedelta(seconds=self.lease_seconds)

        base = BillingEventLog.query.filter(BillingEventLog.received_at >= since)
        total = base.count()
        processed = base.filter(BillingEventLog.status == EVENT_PROCESSED).count()
        failed = base.filter(BillingEventLog.status == EVENT_FAILED).count()
        stuck = base.filter(
            BillingEventLog.status == EVENT_PROCESSING,
            BillingEventLog.processing_started_at < lease_cutoff,
        ).count()
        last_hour = base.filter(BillingEventLog.received_at >= now - timedelta(hours=1)).count()
        last_24h = base.filter(BillingEventLog.received_at >= now - timedelta(hours=24)).count()

        success_rate = round(processed / total * 100, 2) if total else None
        if failed == 0 and stuck == 0:
            status = "healthy"
        elif success_rate is not None and success_rate >= 95:
            status = "degraded"
        else:
            status = "unhealthy"

        return {
            "status": status,
            "period_days": days,
            "total_events": total,
            "successful_events": processed,
            "failed_events": failed,
            "stuck_events": stuck,
            "events_last_hour": last_hour,
            "events_last_24h": last_24h,
            "success_rate_percent": success_rate,
        }

    # ---- guard ----
    def record_if_new(self, event_id: str, event_type: str, payload: dict,
                      stripe_subscription_id: Optional[str] = None) -> GuardResult:
        """
        Returns is_new=True when this caller owns processing of the event.
        Commits the claim so concurrent deliveries observe it immediately.
        """
        now = utcnow()
        inserted = self._insert_if_absent({
            "stripe_event_id": event_id,
            "event_type": event_type,
            "payload": payload,
            "status": EVENT_PENDING,
            "retry_count": 0,
            "stripe_subscription_id": stripe_subscription_id,
            "signature_valid": True,
            "received_at": now,
            "updated_at": now,
        })

        if not inserted:
            existing = self.get(event_id)
            if existing is not None and existing.succeeded:
                db.session.commit()
                return GuardResult(is_new=False, record=existing)

        claimed = self._claim(event_id, is_retry=not inserted)
        db.session.commit()

        record = self.get(event_id)
        if not claimed:
            # Another worker holds a live lease on this event
            return GuardResult(is_new=False, record=record, in_flight=True)
        return GuardResult(is_new=True, record=record)

    def mark_processed(self, event_id: str, result: Optional[dict] = None, user_id: Optional[int] = None) -> None:
        """Joins the caller's transaction; the engine commits it with the handler writes."""
        record = self.get(event_id)
        if record is None:
            return
        record.status = EVENT_PROCESSED
        record.processed_at = utcnow()
        record.error_message = None
        record.result = result
        if user_id is not None:
            record.user_id = user_id

    def mark_failed(self, event_id: str, error_message: str) -> None:
        """Runs after the handler transaction was rolled back; commits on its own."""
        record = self.get(event_id)
        if record is None:
            return
        record.status = EVENT_FAILED
        record.error_message = (error_message or "unknown error")[:ERROR_MESSAGE_MAX]
        record.result = None
        db.session.commit()

    def log_invalid_signature(self, synthetic_id: str) -> None:
        """Invalid attempts get a deterministic synthetic id (no payload trust)."""
        inserted = self._insert_if_absent({
            "stripe_event_id": synthetic_id,
            "event_type": "signature_invalid",
            "payload": {},
            "status": EVENT_FAILED,
            "retry_count": 0,
            "signature_valid": False,
            "error_message": "invalid_signature",
            "received_at": utcnow(),
            "updated_at": utcnow(),
        })
        if not inserted:
            db.session.execute(
                update(BillingEventLog)
                .where(BillingEventLog.stripe_event_id == synthetic_id)
                .values(retry_count=BillingEventLog.retry_count + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        db.session.commit()

    # ---- internals ----
    def _insert_if_absent(self, values: dict) -> bool:
        return insert_if_absent(BillingEventLog, values, ["stripe_event_id"])

    def _claim(self, event_id: str, is_retry: bool) -> bool:
        now = utcnow()
        lease_cutoff = now - timedelta(seconds=self.lease_seconds)
        claimable = or_(
            BillingEventLog.status.in_((EVENT_PENDING, EVENT_FAILED)),
            and_(BillingEventLog.status == EVENT_PROCESSED, BillingEventLog.error_message.isnot(None)),
            and_(
                BillingEventLog.status == EVENT_PROCESSING,
                or_(
                    BillingEventLog.processing_started_at.is_(None),
                    BillingEventLog.processing_started_at < lease_cutoff,
                ),
            ),
        )
        values = {"status": EVENT_PROCESSING, "processing_started_at": now, "updated_at": now}
        if is_retry:
            values["retry_count"] = BillingEventLog.retry_count + 1
        stmt = (
            update(BillingEventLog)
            .where(BillingEventLog.stripe_event_id == event_id, claimable)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return db.session.execute(stmt).rowcount == 1
