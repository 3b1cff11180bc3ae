import hashlib

import stripe
from flask import abort, current_app, jsonify, request

from billing_sync.errors import BillingError, MalformedEvent
from billing_sync.extensions import csrf
from . import bp


def _engine():
    return current_app.extensions["billing_engine"]


# ----- Stripe Webhook (subscriptions lifecycle) -----
@csrf.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe → /webhooks/stripe
    Verifies the signature, then hands the event to the reconciliation engine.
    200 with the engine result; 409 while another worker holds the event;
    500 when processing failed so Stripe redelivers.
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        abort(500, description="Stripe webhook secret not configured")

    raw_bytes = request.get_data(cache=False, as_text=False)
    sig_header = request.headers.get("Stripe-Signature", "")

    try:
        event = stripe.Webhook.construct_event(
            payload=raw_bytes.decode("utf-8"),
            sig_header=sig_header,
            secret=secret,
        )
    except (ValueError, stripe.SignatureVerificationError) as exc:
        # Log invalid attempts with a deterministic synthetic id (no payload trust)
        digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
        synthetic_id = f"invalid:{digest}"
        current_app.logger.warning("Rejected Stripe webhook %s: %s", synthetic_id, exc)
        _engine().store.log_invalid_signature(synthetic_id)
        return jsonify({"error": "invalid_signature"}), 400

    try:
        result = _engine().process(event)
    except MalformedEvent as exc:
        current_app.logger.warning("Malformed Stripe event: %s", exc)
        return jsonify({"error": "malformed_event", "detail": str(exc)}), 400
    except BillingError as exc:
        return jsonify({
            "error": "processing_failed",
            "detail": str(exc),
            "retriable": exc.retriable,
        }), 500
    except Exception as exc:
        # Already recorded on the event row by the engine
        return jsonify({"error": "processing_failed", "detail": f"{type(exc).__name__}"}), 500

    if result.get("in_progress"):
        return jsonify(result), 409
    return jsonify(result), 200
