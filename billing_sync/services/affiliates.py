"""
Affiliate conversion reporting (RefGrow). Called from the engine's post-commit phase only.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import requests
from flask import current_app

from billing_sync.extensions import db
from billing_sync.models import User
from billing_sync.observability import log_event

_CENTS = Decimal("0.01")


class AffiliateTracker:
    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("REFGROW_API_KEY"))

    def track_conversion(self, user_id: int, stripe_subscription_id: str, unit_amount: Optional[int]) -> bool:
        """Report a referred user's first paid subscription; returns False when nothing was sent."""
        user = db.session.get(User, user_id)
        code = user.referred_by_code if user is not None else None
        if not code:
            return False
        if not self.is_configured():
            current_app.logger.warning("RefGrow not configured; conversion for user %s not tracked", user_id)
            return False

        cfg = current_app.config
        amount = (Decimal(unit_amount or 0) / 100).quantize(_CENTS)
        rate = Decimal(str(cfg.get("REFGROW_COMMISSION_RATE", "20.00")))
        commission = (amount * rate / 100).quantize(_CENTS, rounding=ROUND_HALF_UP)

        response = self._session.post(
            f"{cfg['REFGROW_API_URL'].rstrip('/')}/conversions",
            json={
                "referral_code": code,
                "customer_id": str(user_id),
                "amount": float(amount),
                "currency": "usd",
                "commission_amount": float(commission),
                "metadata": {"stripe_subscription_id": stripe_subscription_id, "commission_rate": float(rate)},
            },
            headers={"Authorization": f"Bearer {cfg['REFGROW_API_KEY']}"},
            timeout=cfg.get("REFGROW_TIMEOUT_SECONDS", 10),
        )
        response.raise_for_status()

        current_app.logger.info(
            "Affiliate conversion tracked for user %s (code %s, amount %s)", user_id, code, amount
        )
        log_event("affiliate_conversion", user_id=user_id, referral_code=code,
                  subscription_id=stripe_subscription_id, amount=str(amount), commission=str(commission))
        return True
