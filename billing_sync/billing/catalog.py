from dataclasses import dataclass, field
from typing import Dict, Optional

from flask import current_app

from billing_sync.extensions import db
from billing_sync.models import PlanPrice, SubscriptionPlan

UNLIMITED = -1


@dataclass(frozen=True)
class PlanFeatures:
    video_limit: int
    api_limit: int
    storage_limit: int
    flags: Dict[str, bool] = field(default_factory=dict)


# Used when the catalog tables have no row for a tier
DEFAULT_PLAN_FEATURES: Dict[str, PlanFeatures] = {
    "free": PlanFeatures(0, 0, 1, {"analytics_access": False, "api_access": False}),
    "basic": PlanFeatures(4, 0, 10, {"analytics_access": False, "api_access": False}),
    "premium": PlanFeatures(8, 0, 50, {"analytics_access": True, "api_access": False}),
    "creator": PlanFeatures(12, 1000, 100, {"analytics_access": True, "api_access": False}),
    "enterprise": PlanFeatures(16, UNLIMITED, UNLIMITED, {"analytics_access": True, "api_access": True}),
}

PLAN_NAMES = {
    "free": "Free",
    "basic": "Basic",
    "premium": "Premium",
    "creator": "Creator",
    "enterprise": "Enterprise",
}

_CONFIG_PERIODS = {"MONTHLY": "month", "ANNUAL": "year"}


def _config_price_map() -> Dict[str, tuple]:
    """price_id -> (tier, billing_period) from STRIPE_PRICE_<TIER>_<MONTHLY|ANNUAL>."""
    cfg = current_app.config
    out = {}
    for tier in PLAN_NAMES:
        for suffix, period in _CONFIG_PERIODS.items():
            price_id = cfg.get(f"STRIPE_PRICE_{tier.upper()}_{suffix}")
            if price_id:
                out[price_id] = (tier, period)
    return out


class PlanCatalog:
    """
    Plan/price lookups. Catalog tables take precedence; configured price ids
    and DEFAULT_PLAN_FEATURES cover environments that have not seeded them.
    """

    def _price(self, price_id: Optional[str]) -> Optional[PlanPrice]:
        if not price_id:
            return None
        return PlanPrice.query.filter_by(stripe_price_id=price_id).first()

    def get_tier_for_price(self, price_id: Optional[str]) -> Optional[str]:
        price = self._price(price_id)
        if price is not None and price.plan is not None and price.plan.is_active:
            return price.plan.plan_key
        mapped = _config_price_map().get(price_id)
        return mapped[0] if mapped else None

    def get_billing_period(self, price_id: Optional[str]) -> Optional[str]:
        price = self._price(price_id)
        if price is not None:
            return price.billing_period
        mapped = _config_price_map().get(price_id)
        return mapped[1] if mapped else None

    def get_plan_features(self, tier: str) -> Optional[PlanFeatures]:
        plan = SubscriptionPlan.query.filter_by(plan_key=tier).first()
        if plan is not None:
            return PlanFeatures(
                video_limit=plan.video_limit,
                api_limit=plan.api_calls_limit,
                storage_limit=plan.storage_limit_gb,
                flags=dict(plan.features or {}),
            )
        return DEFAULT_PLAN_FEATURES.get(tier)

    def seed_from_config(self) -> dict:
        """Create missing plan rows from defaults and price rows from configured price ids."""
        created = {"plans": 0, "prices": 0}
        plans = {}
        for order, (key, features) in enumerate(DEFAULT_PLAN_FEATURES.items()):
            plan = SubscriptionPlan.query.filter_by(plan_key=key).first()
            if plan is None:
                plan = SubscriptionPlan(
                    plan_key=key,
                    name=PLAN_NAMES[key],
                    sort_order=order,
                    video_limit=features.video_limit,
                    api_calls_limit=features.api_limit,
                    storage_limit_gb=features.storage_limit,
                    features=dict(features.flags),
                )
                db.session.add(plan)
                db.session.flush()
                created["plans"] += 1
            plans[key] = plan

        for price_id, (tier, period) in _config_price_map().items():
            if self._price(price_id) is None:
                db.session.add(PlanPrice(plan_id=plans[tier].id, stripe_price_id=price_id, billing_period=period))
                created["prices"] += 1

        db.session.commit()
        return created
