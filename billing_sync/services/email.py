import time
import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urljoin

from flask import current_app, render_template
from flask_mail import Message

from billing_sync.extensions import db, mail
from billing_sync.models import EmailLog
from billing_sync.models.types import utcnow
from billing_sync.observability import log_event

# suppression lookback window
SUPPRESSION_WINDOW_DAYS = 90


def is_suppressed(to_email: str) -> bool:
    """
    Return True if the address should be suppressed due to a recent bounce/complaint.
    """
    cutoff = utcnow() - timedelta(days=SUPPRESSION_WINDOW_DAYS)
    q = EmailLog.query.filter(
        EmailLog.to_email == to_email.lower(),
        EmailLog.created_at >= cutoff,
        EmailLog.status.in_(("bounced", "complaint")),
    )
    return db.session.query(q.exists()).scalar()


def _log_email(*, user_id, to_email, template, subject, status, meta=None) -> EmailLog:
    entry = EmailLog(
        user_id=user_id,
        to_email=to_email.lower(),
        template=template,
        subject=subject,
        status=status,
        meta=meta or {},
    )
    db.session.add(entry)
    db.session.commit()
    return entry


def absolute_url(path: str) -> str:
    base = current_app.config["APP_BASE_URL"].rstrip("/") + "/"
    return urljoin(base, path.lstrip("/"))


def base_context(user) -> Dict[str, Any]:
    return {
        "product_name": current_app.config.get("PRODUCT_NAME", "Video Insights"),
        "support_email": current_app.config.get("SUPPORT_EMAIL"),
        "user_name": getattr(user, "email", ""),
        "billing_url": absolute_url("account/billing"),
    }


def send_email(to_email: str, subject: str, template: str, context: Optional[Dict[str, Any]] = None,
               user_id: Optional[int] = None) -> bool:
    """
    template: basename under templates/email/ without extension (e.g., 'upgrade').
    Renders both HTML and plaintext. Returns True when handed to the mail backend.
    """
    context = context or {}

    # Do-not-send suppression gate (derived from recent EmailLog events)
    if is_suppressed(to_email):
        _log_email(user_id=user_id, to_email=to_email, template=template, subject=subject,
                   status="failed", meta={"reason": "suppressed"})
        log_event("mail_send", level=logging.WARNING, template=template, to=to_email.lower(), outcome="suppressed")
        return False

    msg = Message(recipients=[to_email], subject=subject)
    msg.body = render_template(f"email/{template}.txt", **context)
    msg.html = render_template(f"email/{template}.html", **context)

    elog = _log_email(user_id=user_id, to_email=to_email, template=template, subject=subject, status="queued")

    start = time.perf_counter()
    try:
        mail.send(msg)
    except Exception as ex:
        latency_ms = int((time.perf_counter() - start) * 1000)
        elog.status = "failed"
        elog.meta = {"error": str(ex)}
        db.session.commit()
        log_event("mail_send", level=logging.WARNING, template=template, to=to_email.lower(), subject=subject,
                  outcome="smtp_error", latency_ms=latency_ms, smtp_error=str(ex))
        raise

    elog.status = "sent"
    db.session.commit()
    log_event("mail_send", template=template, to=to_email.lower(), subject=subject, outcome="sent",
              latency_ms=int((time.perf_counter() - start) * 1000))
    return True
