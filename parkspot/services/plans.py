from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from parkspot.core.config import Settings


class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class Feature:
    id: str
    name: str
    description: str


@dataclass(frozen=True)
class Plan:
    tier: PlanTier
    name: str
    monthly_price_usd: float
    features: List[Feature] = field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return self.monthly_price_usd > 0


_BASIC_FEATURES = [
    Feature("basic-spots", "Basic Parking Spots", "Access to basic parking spot information"),
    Feature("predictions", "Basic Predictions", "Limited parking availability predictions"),
    Feature("notifications", "Basic Notifications", "Essential parking alerts"),
]

PLANS: Dict[PlanTier, Plan] = {
    PlanTier.FREE: Plan(PlanTier.FREE, "Free", 0.0, _BASIC_FEATURES),
    PlanTier.BASIC: Plan(
        PlanTier.BASIC,
        "Basic",
        4.99,
        _BASIC_FEATURES
        + [Feature("spot-holds", "Spot Holds", "Hold a reported spot for a few minutes")],
    ),
    PlanTier.PRO: Plan(
        PlanTier.PRO,
        "Pro",
        9.99,
        [
            Feature("premium-spots", "Premium Parking Spots", "Access to all parking spots"),
            Feature("advanced-predictions", "Advanced Predictions", "AI-powered parking predictions"),
            Feature("real-time", "Real-time Updates", "Live parking availability updates"),
            Feature("priority-support", "Priority Support", "24/7 priority customer support"),
        ],
    ),
    PlanTier.ENTERPRISE: Plan(
        PlanTier.ENTERPRISE,
        "Enterprise",
        19.99,
        [
            Feature("everything-pro", "Everything in Pro", "All Pro features included"),
            Feature("api-access", "API Access", "Access to the REST API"),
            Feature("fleet", "Fleet Management", "Manage parking for multiple vehicles"),
            Feature("dedicated-support", "Dedicated Support", "Personal account manager"),
        ],
    ),
}


class PlanCatalog:
    """Plans that can be bought right now, i.e. paid tiers with a configured price."""

    def __init__(self, cfg: Settings):
        self._prices: Dict[PlanTier, str] = {}
        for tier in PlanTier:
            price = cfg.price_for(tier.value)
            if price and PLANS[tier].is_paid:
                self._prices[tier] = price

    def purchasable(self) -> List[PlanTier]:
        return list(self._prices)

    def price_for(self, plan_id: str | None) -> Optional[str]:
        tier = self.tier_for_plan_id(plan_id)
        return self._prices.get(tier) if tier else None

    def tier_for_plan_id(self, plan_id: str | None) -> Optional[PlanTier]:
        try:
            tier = PlanTier(plan_id)
        except ValueError:
            return None
        return tier if PLANS[tier].is_paid else None

    def tier_for_price(self, price_id: str | None) -> Optional[PlanTier]:
        if not price_id:
            return None
        for tier, configured in self._prices.items():
            if configured == price_id:
                return tier
        return None

    def features_for(self, tier: str) -> List[Feature]:
        try:
            return list(PLANS[PlanTier(tier)].features)
        except ValueError:
            return list(PLANS[PlanTier.FREE].features)
