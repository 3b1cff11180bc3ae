import os
from flask import Flask, jsonify, request

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=True)


from .config import get_config
from .extensions import db, migrate, csrf, login_manager, limiter, mail
from .observability import init_logging, init_sentry
from .security import init_security

PROD_LIKE = ("staging", "production")
REQUIRED_IN_PROD = ("SECRET_KEY", "DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def _limiter_storage(app_env: str) -> str:
    if app_env not in PROD_LIKE:
        return "memory://"
    redis_url = os.environ.get("REDIS_URL")
    if not redis_url:
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")
    return redis_url


def _check_required(app) -> None:
    missing = [name for name in REQUIRED_IN_PROD if not (os.getenv(name) or app.config.get(name))]
    if missing:
        raise RuntimeError(f"Missing required environment variable(s): {', '.join(missing)}")


def _register_error_handlers(app) -> None:
    from flask_wtf.csrf import CSRFError

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "not_found", "code": 404}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "method_not_allowed", "code": 405}, 405

    @app.errorhandler(500)
    def server_error(e):
        return {"error": "internal_error", "detail": getattr(e, "description", None), "code": 500}, 500

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return {"error": "csrf_failed", "detail": e.description, "code": 400}, 400

    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"error": "rate_limited", "code": 429}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        app.logger.warning("Rate limited %s %s", request.method, request.path)
        return jsonify(payload), 429, headers


def _wire_billing(app) -> None:
    """Stripe SDK key plus the engine and its collaborators, owned by the app."""
    import stripe

    from .billing.engine import build_engine
    from .services.affiliates import AffiliateTracker
    from .services.notifications import NotificationService
    from .services.tokens import EntitlementCache, TokenInvalidator

    key = app.config.get("STRIPE_SECRET_KEY")
    if key:
        stripe.api_key = key
    else:
        app.logger.warning("Stripe secret key missing; provider lookups will fail")

    cache = EntitlementCache()
    app.extensions["entitlement_cache"] = cache
    app.extensions["billing_engine"] = build_engine(
        app,
        notifications=NotificationService(),
        tokens=TokenInvalidator(cache),
        affiliates=AffiliateTracker(),
    )


def create_app(config_object=None):
    app = Flask(__name__, template_folder="templates")
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()

    app.config["RATELIMIT_STORAGE_URI"] = _limiter_storage(app_env)
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)
    app.config.from_object(config_object or get_config())
    if app_env in PROD_LIKE:
        _check_required(app)

    init_logging(app)
    init_sentry(app)
    if app_env in PROD_LIKE:
        init_security(app)

    db.init_app(app)
    migrate.init_app(app, db, directory=os.path.join(os.path.dirname(app.root_path), "migrations"))
    csrf.init_app(app)
    login_manager.init_app(app)
    limiter.init_app(app)
    mail.init_app(app)

    # Models register their tables (and the Flask-Login user loader) on import
    from . import models  # noqa: F401

    from .blueprints.admin import bp as admin_bp
    from .blueprints.webhooks import bp as webhooks_bp

    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    @app.get("/healthz")
    @limiter.exempt
    def healthz():
        return {"status": "ok"}, 200

    _register_error_handlers(app)

    from .cli import register_cli
    register_cli(app)

    _wire_billing(app)
    return app
