import os
import json
import logging
from logging.config import dictConfig

from flask import current_app

# Request bodies of these routes carry provider payloads (emails, addresses)
_SCRUBBED_PATHS = ("/webhooks/stripe",)


def init_logging(app):
    """JSON lines in staging/prod so log_event payloads stay machine-readable; plain console elsewhere."""
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    level = app.config.get("LOG_LEVEL", "INFO")
    if app_env not in ("staging", "production"):
        app.logger.setLevel(level)
        return

    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "rename_fields": {"levelname": "level", "asctime": "ts"},
                "static_fields": {"service": "billing_sync", "env": app_env},
            },
        },
        "handlers": {"wsgi": {"class": "logging.StreamHandler", "formatter": "json"}},
        "root": {"level": level, "handlers": ["wsgi"]},
        # SDK request logging is noisy at INFO and may echo ids we already log
        "loggers": {"stripe": {"level": "WARNING"}},
    })


def _scrub_webhook_bodies(event, hint):
    request = event.get("request") or {}
    if any((request.get("url") or "").endswith(p) for p in _SCRUBBED_PATHS):
        request.pop("data", None)
    return event


def init_sentry(app):
    """Wire Sentry if a DSN is configured; webhook bodies are never sent."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
        environment=os.getenv("APP_ENV", "development"),
        send_default_pii=False,
        before_send=_scrub_webhook_bodies,
    )
    app.logger.info("Sentry enabled")


def log_event(event: str, level: int = logging.INFO, **fields):
    """
    One JSON object per line on the app logger.
    Values must be JSON-friendly; anything else is stringified.
    """
    payload = {"event": event, **fields}
    current_app.logger.log(level, json.dumps(payload, default=str, sort_keys=True))
