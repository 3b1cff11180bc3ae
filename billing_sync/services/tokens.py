"""
Entitlement tokens.

A token carries the user's tier/status and the ``token_version`` it was issued
against. Any tier or status change bumps the version, so tokens issued before
the change stop verifying and clients re-fetch their entitlements.
"""
import threading
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from flask import current_app
from sqlalchemy import update

from billing_sync.extensions import db
from billing_sync.models import User
from billing_sync.models.types import utcnow


def _serializer() -> URLSafeTimedSerializer:
    secret = current_app.config["SECRET_KEY"]
    salt = current_app.config.get("ENTITLEMENT_TOKEN_SALT", "entitlement-token-v1")
    return URLSafeTimedSerializer(secret_key=secret, salt=salt)


class EntitlementCache:
    """In-process cache of issued tokens keyed by user id; owned by the app."""

    def __init__(self):
        self._tokens = {}
        self._lock = threading.Lock()

    def get(self, user_id: int) -> Optional[str]:
        with self._lock:
            return self._tokens.get(user_id)

    def set(self, user_id: int, token: str) -> None:
        with self._lock:
            self._tokens[user_id] = token

    def invalidate(self, user_id: int) -> bool:
        with self._lock:
            return self._tokens.pop(user_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()

    def __contains__(self, user_id) -> bool:
        with self._lock:
            return user_id in self._tokens


def generate(user: User) -> str:
    return _serializer().dumps({
        "u": user.id,
        "v": user.token_version,
        "tier": user.subscription_tier,
        "status": user.subscription_status,
    })


def verify(token: str, max_age_seconds: Optional[int] = None) -> Optional[dict]:
    """Returns the token claims, or None when expired, tampered, or issued before the last invalidation."""
    if max_age_seconds is None:
        max_age_seconds = current_app.config.get("ENTITLEMENT_TOKEN_MAX_AGE", 3600)
    try:
        data = _serializer().loads(token, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None
    user = db.session.get(User, data.get("u"), populate_existing=True)
    if user is None or user.token_version != data.get("v"):
        return None
    return data


class TokenInvalidator:
    def __init__(self, cache: EntitlementCache):
        self.cache = cache

    def issue(self, user: User) -> str:
        token = self.cache.get(user.id)
        if token is None:
            token = generate(user)
            self.cache.set(user.id, token)
        return token

    def invalidate(self, user_id: int) -> None:
        # Runs after the engine committed; additive so concurrent bumps are not lost
        db.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(token_version=User.token_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        self.cache.invalidate(user_id)
        current_app.logger.info("Entitlement token invalidated for user %s", user_id)
