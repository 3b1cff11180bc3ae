from flask import jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_wtf import CSRFProtect
from flask_login import LoginManager, current_user
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_mail import Mail

db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()
mail = Mail()

# Admin sessions only; there is no login page, so unauthenticated calls get JSON 401
login_manager = LoginManager()


@login_manager.unauthorized_handler
def _unauthorized():
    return jsonify({"error": "unauthorized", "code": 401}), 401


def _rate_limit_key():
    # Admin mutations are limited per operator; anonymous callers per IP
    if current_user and current_user.is_authenticated:
        return f"admin:{current_user.get_id()}"
    return get_remote_address()


# Storage URI comes from create_app(); Stripe deliveries are never limited
limiter = Limiter(key_func=_rate_limit_key, default_limits=[])
