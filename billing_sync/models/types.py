from datetime import datetime, timezone

from sqlalchemy.dialects.postgresql import JSONB
from billing_sync.extensions import db

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = db.JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC; every timestamp column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch(ts):
    if ts in (None, ""):
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)
