"""Tests for plan based rate limits."""

import pytest

from dashboard.app.exceptions import RateLimitConfigError
from dashboard.app.middleware.rate_limit import (
    DEFAULT_ROUTE_CONFIGS,
    PlanResolver,
    PlanTier,
    RateLimitConfig,
    RouteCategory,
    UNLIMITED,
    get_daily_request_limit,
    get_org_rate_limit_config,
)
from dashboard.app.middleware.rate_limit.plans import parse_plan_tier


class TestEffectiveLimit:
    """Tests for PlanResolver.effective_limit()."""

    @pytest.fixture
    def resolver(self):
        return PlanResolver()

    def test_pro_scales_api_by_three(self, resolver):
        config = resolver.effective_limit(RouteCategory.API, PlanTier.PRO)
        assert config == RateLimitConfig(limit=300, window_ms=60000)

    def test_enterprise_scales_webhook_by_ten(self, resolver):
        config = resolver.effective_limit(RouteCategory.WEBHOOK, PlanTier.ENTERPRISE)
        assert config == RateLimitConfig(limit=2000, window_ms=60000)

    def test_window_is_never_scaled(self, resolver):
        config = resolver.effective_limit(RouteCategory.AUTH, PlanTier.PRO)
        assert config == RateLimitConfig(limit=30, window_ms=15 * 60 * 1000)

    @pytest.mark.parametrize(
        ("tier", "limit"),
        [(PlanTier.FREE, 10), (PlanTier.PRO, 50), (PlanTier.ENTERPRISE, 200)],
    )
    def test_ai_override_returned_verbatim(self, resolver, tier, limit):
        config = resolver.effective_limit(RouteCategory.AI, tier)
        assert config == RateLimitConfig(limit=limit, window_ms=60000)

    def test_tier_accepted_as_string(self, resolver):
        assert resolver.effective_limit(RouteCategory.API, "pro").limit == 300
        assert resolver.effective_limit(RouteCategory.API, " Enterprise ").limit == 1000

    def test_unknown_tier_gets_base_limits_without_overrides(self, resolver):
        assert resolver.effective_limit(RouteCategory.API, "platinum") == DEFAULT_ROUTE_CONFIGS[RouteCategory.API]
        # No ai override either: the base ai limit applies
        assert resolver.effective_limit(RouteCategory.AI, "platinum") == DEFAULT_ROUTE_CONFIGS[RouteCategory.AI]

    def test_missing_tier_is_treated_as_free(self, resolver):
        assert resolver.effective_limit(RouteCategory.AI, None) == RateLimitConfig(limit=10, window_ms=60000)
        assert resolver.effective_limit(RouteCategory.API, None).limit == 100

    def test_fractional_multiplier_is_floored(self):
        resolver = PlanResolver(multipliers={PlanTier.FREE: 1, PlanTier.PRO: 1.55}, overrides={})
        assert resolver.effective_limit(RouteCategory.AUTH, PlanTier.PRO).limit == 15

    def test_custom_base_configs(self):
        base = dict(DEFAULT_ROUTE_CONFIGS)
        base[RouteCategory.API] = RateLimitConfig(limit=7, window_ms=1000)
        resolver = PlanResolver(base_configs=base, overrides={})

        assert resolver.effective_limit(RouteCategory.API, PlanTier.ENTERPRISE) == RateLimitConfig(
            limit=70, window_ms=1000
        )


class TestPlanResolverValidation:
    """Misconfigured plan tables fail at construction."""

    def test_non_positive_multiplier(self):
        with pytest.raises(RateLimitConfigError):
            PlanResolver(multipliers={PlanTier.FREE: 0})

    def test_missing_base_category(self):
        base = {RouteCategory.API: RateLimitConfig(limit=1, window_ms=1000)}
        with pytest.raises(RateLimitConfigError, match="auth"):
            PlanResolver(base_configs=base)

    def test_multiplier_scaling_limit_to_zero(self):
        base = dict(DEFAULT_ROUTE_CONFIGS)
        base[RouteCategory.API] = RateLimitConfig(limit=1, window_ms=60000)

        with pytest.raises(RateLimitConfigError, match="pro scales the api limit"):
            PlanResolver(
                base_configs=base,
                multipliers={PlanTier.FREE: 1, PlanTier.PRO: 0.5},
                overrides={},
            )

    def test_override_covers_category_that_would_scale_to_zero(self):
        base = dict(DEFAULT_ROUTE_CONFIGS)
        base[RouteCategory.AI] = RateLimitConfig(limit=1, window_ms=60000)
        overrides = {PlanTier.PRO: {RouteCategory.AI: RateLimitConfig(limit=5, window_ms=60000)}}

        resolver = PlanResolver(
            base_configs=base,
            multipliers={PlanTier.FREE: 1, PlanTier.PRO: 0.5},
            overrides=overrides,
        )

        assert resolver.effective_limit(RouteCategory.AI, PlanTier.PRO).limit == 5

    @pytest.mark.parametrize(("limit", "window_ms"), [(0, 1000), (10, 0)])
    def test_rate_limit_config_rejects_non_positive(self, limit, window_ms):
        with pytest.raises(RateLimitConfigError):
            RateLimitConfig(limit=limit, window_ms=window_ms)


class TestModuleHelpers:
    """Tests for the module level policy helpers."""

    def test_get_org_rate_limit_config(self):
        base = RateLimitConfig(limit=100, window_ms=60000)
        assert get_org_rate_limit_config(base, PlanTier.PRO) == RateLimitConfig(limit=300, window_ms=60000)
        assert get_org_rate_limit_config(base, "unknown") == base

    @pytest.mark.parametrize(
        ("tier", "expected"),
        [
            (PlanTier.FREE, 1000),
            (PlanTier.PRO, 50000),
            (PlanTier.ENTERPRISE, UNLIMITED),
            ("enterprise", UNLIMITED),
            (None, 1000),
            ("unknown", 1000),
        ],
    )
    def test_daily_request_limit(self, tier, expected):
        assert get_daily_request_limit(tier) == expected
        assert PlanResolver().daily_request_limit(tier) == expected

    def test_parse_plan_tier(self):
        assert parse_plan_tier(None) is PlanTier.FREE
        assert parse_plan_tier(PlanTier.PRO) is PlanTier.PRO
        assert parse_plan_tier("PRO") is PlanTier.PRO
        assert parse_plan_tier("gold") is None
