"""
User Directory and User Identity Resolver.

Events from checkout carry ``metadata.user_id``; events initiated from the
self-service billing portal frequently do not, so resolution falls back to the
provider customer id and then to the subscription record we already hold.
"""
from typing import Optional

from flask import current_app
from sqlalchemy import func

from billing_sync.errors import UserNotResolvable
from billing_sync.extensions import db
from billing_sync.models import Subscription, User

LEGACY_ID_PREFIX = "rec"

_PATCHABLE = {
    "email",
    "stripe_customer_id",
    "subscription_tier",
    "subscription_status",
    "legacy_external_id",
    "is_active",
}


class UserDirectory:
    """Lookup/update surface over the users table."""

    def find_by_id(self, user_id) -> Optional[User]:
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    def find_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        return User.query.filter(func.lower(User.email) == email.strip().lower()).first()

    def find_by_external_id(self, external_id: str) -> Optional[User]:
        if not external_id:
            return None
        return User.query.filter_by(legacy_external_id=external_id).first()

    def find_by_provider_customer_id(self, customer_id: str) -> Optional[User]:
        if not customer_id:
            return None
        return User.query.filter_by(stripe_customer_id=customer_id).first()

    def update(self, user_id: int, **patch) -> User:
        user = self.find_by_id(user_id)
        if user is None:
            raise UserNotResolvable(f"User {user_id} disappeared during update", user_id=user_id)
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"Unsupported user fields: {sorted(unknown)}")
        for key, value in patch.items():
            setattr(user, key, value)
        db.session.flush()
        return user


class UserResolver:
    def __init__(self, directory: UserDirectory):
        self.directory = directory

    def resolve_hint(self, hint) -> Optional[int]:
        """Map a raw hint to a user id, or None when the hint is absent, unknown, or unrecognised."""
        if hint is None or hint == "":
            return None

        user = None
        kind = None
        if isinstance(hint, int) or (isinstance(hint, str) and hint.isdigit()):
            kind = "internal_id"
            user = self.directory.find_by_id(int(hint))
        elif isinstance(hint, str) and hint.startswith(LEGACY_ID_PREFIX):
            kind = "legacy_external_id"
            user = self.directory.find_by_external_id(hint)
        elif isinstance(hint, str) and "@" in hint:
            kind = "email"
            user = self.directory.find_by_email(hint)
        else:
            current_app.logger.warning("Unrecognized user hint format: %r", hint)
            return None

        if user is None:
            current_app.logger.info("User hint %s=%r matched no user", kind, hint)
            return None
        return user.id

    def resolve(self, hint=None, customer_id: Optional[str] = None,
                subscription_record: Optional[Subscription] = None) -> int:
        user_id = self.resolve_hint(hint)
        if user_id is not None:
            return user_id

        # (a) provider customer id stored on the user profile
        user = self.directory.find_by_provider_customer_id(customer_id)
        if user is not None:
            current_app.logger.info(
                "Resolved user %s via customer id %s (hint=%r)", user.id, customer_id, hint
            )
            return user.id

        # (b) the subscription record we already hold
        if subscription_record is not None and subscription_record.user_id:
            current_app.logger.info(
                "Resolved user %s via subscription record %s (hint=%r)",
                subscription_record.user_id, subscription_record.id, hint,
            )
            return subscription_record.user_id

        raise UserNotResolvable(
            f"Could not resolve user (hint={hint!r}, customer={customer_id!r})",
            hint=hint,
            customer_id=customer_id,
        )
