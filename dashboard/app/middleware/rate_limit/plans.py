"""Organization plan based rate limits.

Higher subscription tiers get more generous limits. A tier either has a
dedicated limit for a route category, or the base category limit scaled
by the tier's multiplier.
"""

import math
from typing import Dict, Mapping, Optional, Union

from dashboard.app.exceptions import RateLimitConfigError
from dashboard.app.middleware.rate_limit.models import PlanTier, RateLimitConfig, RouteCategory
from dashboard.app.middleware.rate_limit.routes import DEFAULT_ROUTE_CONFIGS

PLAN_RATE_MULTIPLIERS: Dict[PlanTier, float] = {
    PlanTier.FREE: 1,
    PlanTier.PRO: 3,
    PlanTier.ENTERPRISE: 10,
}

# Dedicated limits that apply regardless of the multiplier
PLAN_SPECIFIC_LIMITS: Dict[PlanTier, Dict[RouteCategory, RateLimitConfig]] = {
    PlanTier.FREE: {
        RouteCategory.AI: RateLimitConfig(limit=10, window_ms=60 * 1000),
    },
    PlanTier.PRO: {
        RouteCategory.AI: RateLimitConfig(limit=50, window_ms=60 * 1000),
    },
    PlanTier.ENTERPRISE: {
        RouteCategory.AI: RateLimitConfig(limit=200, window_ms=60 * 1000),
    },
}

UNLIMITED = -1

# Daily request quota per organization, separate from per-window limiting
DAILY_REQUEST_LIMITS: Dict[PlanTier, int] = {
    PlanTier.FREE: 1000,
    PlanTier.PRO: 50000,
    PlanTier.ENTERPRISE: UNLIMITED,
}

TierLike = Union[PlanTier, str, None]


def parse_plan_tier(tier: TierLike) -> Optional[PlanTier]:
    """Coerce a billing value to a PlanTier.

    None means billing supplied nothing and maps to the lowest tier.
    Unrecognized values return None.
    """
    if tier is None:
        return PlanTier.FREE
    if isinstance(tier, PlanTier):
        return tier
    try:
        return PlanTier(str(tier).strip().lower())
    except ValueError:
        return None


def get_org_rate_limit_config(
    base_config: RateLimitConfig,
    plan_tier: TierLike,
    multipliers: Mapping[PlanTier, float] = PLAN_RATE_MULTIPLIERS,
) -> RateLimitConfig:
    """Scale a base config by the plan multiplier, window unchanged."""
    tier = parse_plan_tier(plan_tier)
    multiplier = multipliers.get(tier, 1) if tier is not None else 1
    return RateLimitConfig(
        limit=math.floor(base_config.limit * multiplier),
        window_ms=base_config.window_ms,
    )


def get_daily_request_limit(plan_tier: TierLike) -> int:
    """Daily request limit for a plan, UNLIMITED (-1) for no limit."""
    tier = parse_plan_tier(plan_tier) or PlanTier.FREE
    return DAILY_REQUEST_LIMITS.get(tier, DAILY_REQUEST_LIMITS[PlanTier.FREE])


class PlanResolver:
    """Resolves the effective limit for a route category and plan tier.

    The tables default to the module level policy and can be replaced per
    deployment; they are validated once here.
    """

    def __init__(
        self,
        base_configs: Optional[Mapping[RouteCategory, RateLimitConfig]] = None,
        multipliers: Optional[Mapping[PlanTier, float]] = None,
        overrides: Optional[Mapping[PlanTier, Mapping[RouteCategory, RateLimitConfig]]] = None,
        daily_limits: Optional[Mapping[PlanTier, int]] = None,
    ):
        self.base_configs = dict(base_configs or DEFAULT_ROUTE_CONFIGS)
        self.multipliers = dict(PLAN_RATE_MULTIPLIERS if multipliers is None else multipliers)
        self.overrides = {
            tier: dict(configs)
            for tier, configs in (PLAN_SPECIFIC_LIMITS if overrides is None else overrides).items()
        }
        self.daily_limits = dict(DAILY_REQUEST_LIMITS if daily_limits is None else daily_limits)

        for tier, multiplier in self.multipliers.items():
            if multiplier <= 0:
                raise RateLimitConfigError(
                    f"Plan multiplier for {tier.value} must be positive, got {multiplier}"
                )
        missing = set(RouteCategory) - set(self.base_configs)
        if missing:
            raise RateLimitConfigError(
                f"Missing base rate limit for: {', '.join(sorted(c.value for c in missing))}"
            )

        self._effective: Dict[PlanTier, Dict[RouteCategory, RateLimitConfig]] = {
            tier: {category: self._resolve(category, tier) for category in RouteCategory}
            for tier in PlanTier
        }

    def _resolve(self, category: RouteCategory, tier: PlanTier) -> RateLimitConfig:
        override = self.overrides.get(tier, {}).get(category)
        if override is not None:
            return override

        base = self.base_configs[category]
        try:
            return get_org_rate_limit_config(base, tier, self.multipliers)
        except RateLimitConfigError as e:
            raise RateLimitConfigError(
                f"Plan {tier.value} scales the {category.value} limit of {base.limit} "
                f"to below 1 request per window"
            ) from e

    def effective_limit(self, category: RouteCategory, plan_tier: TierLike) -> RateLimitConfig:
        """Limit and window for category under plan_tier.

        A tier specific override wins; otherwise the base limit is scaled
        by the tier multiplier. Unknown tiers get multiplier 1 and no
        overrides.
        """
        tier = parse_plan_tier(plan_tier)
        if tier is None:
            return self.base_configs[category]
        return self._effective[tier][category]

    def daily_request_limit(self, plan_tier: TierLike) -> int:
        tier = parse_plan_tier(plan_tier) or PlanTier.FREE
        return self.daily_limits.get(tier, self.daily_limits.get(PlanTier.FREE, UNLIMITED))
