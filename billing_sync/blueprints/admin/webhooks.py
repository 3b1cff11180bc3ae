"""Webhook operations dashboard (JSON)."""
from flask import current_app, jsonify, request

from billing_sync.errors import BillingError, EventNotFound, MalformedEvent
from billing_sync.extensions import limiter
from billing_sync.models import PlanMigration
from . import bp


def _engine():
    return current_app.extensions["billing_engine"]


def _int_arg(name: str, default: int, lo: int = 1, hi: int = 500) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, value))


@bp.get("/webhooks/stats")
def webhook_stats():
    days = _int_arg("days", 7, hi=90)
    return jsonify({"period_days": days, "event_types": _engine().store.stats(days=days)})


@bp.get("/webhooks/health")
def webhook_health():
    health = _engine().store.health(days=_int_arg("days", 7, hi=90))
    return jsonify(health), (200 if health["status"] != "unhealthy" else 503)


@bp.get("/webhooks/failed")
def webhook_failed():
    rows = _engine().store.list_failed(limit=_int_arg("limit", 50))
    return jsonify({"events": [r.to_dict() for r in rows]})


@bp.get("/webhooks/recent")
def webhook_recent():
    rows = _engine().store.list_recent(
        limit=_int_arg("limit", 100),
        event_type=request.args.get("type") or None,
    )
    return jsonify({"events": [r.to_dict() for r in rows]})


@bp.get("/webhooks/migrations")
def plan_migrations():
    q = PlanMigration.query
    user_id = request.args.get("user_id", type=int)
    if user_id is not None:
        q = q.filter(PlanMigration.user_id == user_id)
    rows = q.order_by(PlanMigration.created_at.desc(), PlanMigration.id.desc()).limit(_int_arg("limit", 100)).all()
    return jsonify({"migrations": [m.to_dict() for m in rows]})


@bp.post("/webhooks/<event_id>/replay")
@limiter.limit("30 per minute")
def replay_event(event_id):
    try:
        result = _engine().replay(event_id)
    except EventNotFound:
        return jsonify({"error": "not_found", "event_id": event_id}), 404
    except MalformedEvent as exc:
        return jsonify({"error": "not_replayable", "detail": str(exc)}), 400
    except BillingError as exc:
        return jsonify({"error": "replay_failed", "detail": str(exc), "retriable": exc.retriable}), 502
    except Exception as exc:
        return jsonify({"error": "replay_failed", "detail": f"{type(exc).__name__}: {exc}"}), 500
    current_app.logger.info("Admin replay of %s: %s", event_id, result)
    return jsonify({"event_id": event_id, "result": result})


@bp.post("/subscriptions/<stripe_subscription_id>/resync")
@limiter.limit("30 per minute")
def resync_subscription(stripe_subscription_id):
    try:
        result = _engine().resync_subscription(stripe_subscription_id)
    except BillingError as exc:
        return jsonify({"error": "resync_failed", "detail": str(exc), "retriable": exc.retriable}), 502
    except Exception as exc:
        return jsonify({"error": "resync_failed", "detail": f"{type(exc).__name__}: {exc}"}), 500
    current_app.logger.info("Admin resync of %s: %s", stripe_subscription_id, result)
    return jsonify({"stripe_subscription_id": stripe_subscription_id, "result": result})
