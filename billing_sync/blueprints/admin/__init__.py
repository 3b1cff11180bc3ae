from flask import Blueprint, jsonify
from flask_login import current_user

from billing_sync.extensions import login_manager

bp = Blueprint("admin", __name__)


@bp.before_request
def _require_login_admin():
    if not current_user.is_authenticated:
        return login_manager.unauthorized()
    if not getattr(current_user, "is_admin", False):
        return jsonify({"error": "forbidden", "code": 403}), 403
    return None


# Import submodules so their routes register on the same bp
from . import webhooks  # noqa: E402,F401
