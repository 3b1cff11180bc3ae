from typing import Optional

from flask import current_app

from billing_sync.models.plan_migration import (
    MIGRATION_CROSSGRADE,
    MIGRATION_DOWNGRADE,
    MIGRATION_UPGRADE,
)
from .catalog import PlanCatalog

FREE_TIER = "free"
TIER_ORDER = ("free", "basic", "premium", "creator", "enterprise")


def tier_rank(tier: Optional[str]) -> int:
    # Unknown tiers rank below free
    try:
        return TIER_ORDER.index(tier)
    except ValueError:
        return -1


def change_type(old_tier: Optional[str], new_tier: Optional[str]) -> str:
    old_rank, new_rank = tier_rank(old_tier), tier_rank(new_tier)
    if new_rank > old_rank:
        return MIGRATION_UPGRADE
    if new_rank < old_rank:
        return MIGRATION_DOWNGRADE
    return MIGRATION_CROSSGRADE


def is_paid(tier: Optional[str]) -> bool:
    return bool(tier) and tier != FREE_TIER


class TierClassifier:
    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog

    def tier_for_price(self, price_id: Optional[str]) -> str:
        tier = self.catalog.get_tier_for_price(price_id)
        if tier:
            return tier
        fallback = current_app.config.get("BILLING_UNKNOWN_PRICE_TIER", "basic")
        current_app.logger.warning("Unknown price id %r; falling back to tier %r", price_id, fallback)
        return fallback

    def billing_period_for_price(self, price_id: Optional[str]) -> Optional[str]:
        return self.catalog.get_billing_period(price_id)

    def usage_limit(self, tier: str) -> int:
        features = self.catalog.get_plan_features(tier)
        if features is None:
            raise ValueError(f"Unknown subscription tier: {tier}")
        return features.video_limit

    change_type = staticmethod(change_type)
