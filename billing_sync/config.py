import os

from dotenv import dotenv_values


def _flag(name: str, default: str) -> bool:
    return (os.getenv(name, default) or default).lower() == "true"


class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY

    # Database (env in prod; dev/test may use default)
    _ENV_FALLBACK = dotenv_values(".env")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    SESSION_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    # Talisman redirect to https (staging/production only)
    FORCE_HTTPS = _flag("FORCE_HTTPS", "true")

    # Flask-Limiter default: off globally; admin mutations carry per-route limits
    RATELIMIT_DEFAULT = None

    # --- Mail ---
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _flag("MAIL_USE_TLS", "true")
    MAIL_USE_SSL = _flag("MAIL_USE_SSL", "false")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "Billing <no-reply@local.test>")
    MAIL_SUPPRESS_SEND = _flag("MAIL_SUPPRESS_SEND", "false")

    # Used for absolute links in emails (must be https in prod)
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
    PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Video Insights")
    SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@local.test")

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    # Transport-level retries with exponential backoff inside the Stripe SDK
    STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "3"))

    # Price IDs (per environment via env vars); the catalog tables take precedence
    STRIPE_PRICE_BASIC_MONTHLY = os.getenv("STRIPE_PRICE_BASIC_MONTHLY")
    STRIPE_PRICE_BASIC_ANNUAL = os.getenv("STRIPE_PRICE_BASIC_ANNUAL")
    STRIPE_PRICE_PREMIUM_MONTHLY = os.getenv("STRIPE_PRICE_PREMIUM_MONTHLY")
    STRIPE_PRICE_PREMIUM_ANNUAL = os.getenv("STRIPE_PRICE_PREMIUM_ANNUAL")
    STRIPE_PRICE_CREATOR_MONTHLY = os.getenv("STRIPE_PRICE_CREATOR_MONTHLY")
    STRIPE_PRICE_CREATOR_ANNUAL = os.getenv("STRIPE_PRICE_CREATOR_ANNUAL")
    STRIPE_PRICE_ENTERPRISE_MONTHLY = os.getenv("STRIPE_PRICE_ENTERPRISE_MONTHLY")
    STRIPE_PRICE_ENTERPRISE_ANNUAL = os.getenv("STRIPE_PRICE_ENTERPRISE_ANNUAL")

    # --- Reconciliation engine ---
    # A "processing" event row older than this may be reclaimed by a redelivery
    BILLING_EVENT_LEASE_SECONDS = int(os.getenv("BILLING_EVENT_LEASE_SECONDS", "300"))
    BILLING_UNKNOWN_PRICE_TIER = os.getenv("BILLING_UNKNOWN_PRICE_TIER", "basic")
    BILLING_NOTIFICATIONS_ENABLED = _flag("BILLING_NOTIFICATIONS_ENABLED", "true")

    # --- Affiliate conversions (RefGrow); tracking is skipped without an API key ---
    REFGROW_API_KEY = os.getenv("REFGROW_API_KEY")
    REFGROW_API_URL = os.getenv("REFGROW_API_URL", "https://refgrow.com/api/v1")
    REFGROW_COMMISSION_RATE = os.getenv("REFGROW_COMMISSION_RATE", "20.00")
    REFGROW_TIMEOUT_SECONDS = float(os.getenv("REFGROW_TIMEOUT_SECONDS", "10"))

    # Entitlement tokens (re-issued after tier/status changes)
    ENTITLEMENT_TOKEN_SALT = os.getenv("ENTITLEMENT_TOKEN_SALT", "entitlement-token-v1")
    ENTITLEMENT_TOKEN_MAX_AGE = int(os.getenv("ENTITLEMENT_TOKEN_MAX_AGE", "3600"))


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    MAIL_SUPPRESS_SEND = False


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True


_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
