"""Plan tiers, quotas and overage pricing.

Plan tiers:
- Free: 5 repurposes per month, no card required
- Basic: 60 per month, at most 2 per day
- Pro: 150 per month, at most 5 per day
- Agency: 450 per month, team seats included
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping

from src.core.logging import get_logger
from src.core.types import PlanTier

log = get_logger(__name__)


@dataclass(frozen=True)
class PlanLimits:
    monthly_quota: int
    daily_quota: int | None
    overage_unit_price: Decimal
    team_members: int = 1
    features: frozenset[str] = field(default_factory=frozenset)


PLAN_HIERARCHY: tuple[PlanTier, ...] = (
    PlanTier.FREE,
    PlanTier.BASIC,
    PlanTier.PRO,
    PlanTier.AGENCY,
)

PLAN_LIMITS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        monthly_quota=5,
        daily_quota=None,
        overage_unit_price=Decimal("0.12"),
        features=frozenset({"basic_model", "twitter", "instagram"}),
    ),
    PlanTier.BASIC: PlanLimits(
        monthly_quota=60,
        daily_quota=2,
        overage_unit_price=Decimal("0.10"),
        features=frozenset({"standard_model", "twitter", "instagram", "facebook", "basic_analytics"}),
    ),
    PlanTier.PRO: PlanLimits(
        monthly_quota=150,
        daily_quota=5,
        overage_unit_price=Decimal("0.08"),
        features=frozenset({
            "advanced_model", "all_platforms", "custom_templates", "pro_analytics",
        }),
    ),
    PlanTier.AGENCY: PlanLimits(
        monthly_quota=450,
        daily_quota=None,
        overage_unit_price=Decimal("0.06"),
        team_members=3,
        features=frozenset({
            "advanced_model", "all_platforms", "custom_templates", "pro_analytics",
            "team_collaboration", "priority_support",
        }),
    ),
}

# Unknown tiers get these limits; never anything more generous.
MOST_RESTRICTIVE_TIER = PlanTier.FREE


class PlanCatalog:
    """Static plan table plus the gateway price-id mapping.

    Pure lookups only. ``price_map`` maps gateway price ids to tier values
    and normally comes from ``Settings.price_map``.
    """

    def __init__(
        self,
        price_map: Mapping[str, str] | None = None,
        limits: Mapping[PlanTier, PlanLimits] | None = None,
    ) -> None:
        self._limits: dict[PlanTier, PlanLimits] = dict(limits or PLAN_LIMITS)
        self._price_map: dict[str, PlanTier] = {}
        for price_ref, tier_value in (price_map or {}).items():
            tier = PlanTier.parse(tier_value)
            if tier is None:
                msg = f"price {price_ref!r} maps to unknown plan tier {tier_value!r}"
                raise ValueError(msg)
            self._price_map[price_ref] = tier

    def is_known(self, plan: PlanTier | str) -> bool:
        return PlanTier.parse(plan) in self._limits

    def limits_for(self, plan: PlanTier | str) -> PlanLimits:
        """Limits for ``plan``; unknown tiers fall back to the most restrictive."""
        tier = PlanTier.parse(plan)
        if tier is None or tier not in self._limits:
            log.warning("unknown_plan_tier", plan=str(plan))
            return self._limits[MOST_RESTRICTIVE_TIER]
        return self._limits[tier]

    def plan_for_price(self, price_ref: str | None) -> PlanTier | None:
        """Look up the tier sold under a gateway price id."""
        if not price_ref:
            return None
        return self._price_map.get(price_ref)

    def upgrade_for(self, plan: PlanTier | str) -> PlanTier | None:
        """Next tier up, or None when already on the top tier."""
        tier = PlanTier.parse(plan)
        if tier is None:
            return PLAN_HIERARCHY[1]
        idx = PLAN_HIERARCHY.index(tier)
        if idx + 1 >= len(PLAN_HIERARCHY):
            return None
        return PLAN_HIERARCHY[idx + 1]

    def is_upgrade(self, current: PlanTier, target: PlanTier) -> bool:
        return PLAN_HIERARCHY.index(target) > PLAN_HIERARCHY.index(current)

    def is_downgrade(self, current: PlanTier, target: PlanTier) -> bool:
        return PLAN_HIERARCHY.index(target) < PLAN_HIERARCHY.index(current)

    def overage_charge(self, plan: PlanTier | str, units: int) -> Decimal:
        return self.limits_for(plan).overage_unit_price * units

    def has_feature(self, plan: PlanTier | str, feature: str) -> bool:
        if not self.is_known(plan):
            return False
        return feature in self.limits_for(plan).features
