"""Rate limiter facade.

Ties classification, key derivation, plan resolution and the counter
store together and owns the HTTP side of the contract: the 429 response
and the X-RateLimit-* headers.
"""

import math
import time
from typing import Dict, Mapping, Optional

from fastapi.responses import JSONResponse
from starlette.responses import Response

from dashboard.app.core.logging import get_log_context, get_logger
from dashboard.app.exceptions import RateLimitConfigError
from dashboard.app.middleware.rate_limit.models import (
    RateLimitCheck,
    RateLimitConfig,
    RateLimitResult,
    RouteCategory,
)
from dashboard.app.middleware.rate_limit.plans import UNLIMITED, PlanResolver, TierLike
from dashboard.app.middleware.rate_limit.routes import (
    DEFAULT_ROUTE_CONFIGS,
    classify,
    derive_key,
)
from dashboard.app.middleware.rate_limit.store import RateLimitStore

logger = get_logger(__name__)

DAILY_WINDOW_MS = 24 * 60 * 60 * 1000

RATE_LIMIT_ERROR_CODE = "RATE_LIMIT_EXCEEDED"
RATE_LIMIT_ERROR_MESSAGE = "Too many requests. Please try again later."


def add_rate_limit_headers(response: Response, result: RateLimitResult) -> Response:
    """Write the X-RateLimit-* headers (and Retry-After on denial)."""
    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    response.headers["X-RateLimit-Reset"] = str(result.reset)

    if result.retry_after is not None:
        response.headers["Retry-After"] = str(result.retry_after)

    return response


def create_rate_limit_response(result: RateLimitResult) -> JSONResponse:
    """Build the 429 Too Many Requests response for a denied check."""
    response = JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": RATE_LIMIT_ERROR_CODE,
                "message": RATE_LIMIT_ERROR_MESSAGE,
                "retryAfter": result.retry_after,
            }
        },
    )
    return add_rate_limit_headers(response, result)


class RateLimiter:
    """Entry point used by the request middleware.

    Enforcement (check_rate_limit) and header decoration
    (decorate_response) are separate calls so a request that was let
    through is counted once.
    """

    def __init__(
        self,
        store: RateLimitStore,
        route_configs: Optional[Mapping[RouteCategory, RateLimitConfig]] = None,
        plan_resolver: Optional[PlanResolver] = None,
        fail_closed: bool = False,
        enabled: bool = True,
    ):
        """Initialize the limiter.

        Args:
            store: Counter store backend
            route_configs: Base limit per route category
            plan_resolver: Plan aware limits; built from route_configs if omitted
            fail_closed: Deny requests when the store fails (default: allow)
            enabled: When False nothing is metered
        """
        self.store = store
        self.route_configs: Dict[RouteCategory, RateLimitConfig] = dict(
            route_configs or DEFAULT_ROUTE_CONFIGS
        )
        self.plan_resolver = plan_resolver or PlanResolver(base_configs=self.route_configs)
        self.fail_closed = fail_closed
        self.enabled = enabled

    def config_for(self, category: RouteCategory, plan_tier: TierLike = None) -> RateLimitConfig:
        """Base config, or the plan aware one when a plan context is known.

        None means no plan context at all. Callers with a plan lookup that
        found nothing pass PlanTier.FREE.
        """
        if plan_tier is None:
            return self.route_configs[category]
        return self.plan_resolver.effective_limit(category, plan_tier)

    async def check_rate_limit(
        self,
        path: str,
        headers: Mapping[str, str],
        user_id: Optional[str] = None,
        plan_tier: TierLike = None,
    ) -> Optional[RateLimitCheck]:
        """Count the request and decide whether it may proceed.

        Returns:
            None when the path is not rate limited, otherwise a
            RateLimitCheck whose response is the 429 to send on denial.
        """
        if not self.enabled:
            return None

        category = classify(path)
        if category is None:
            return None

        key = derive_key(path, headers, user_id)
        config = self.config_for(category, plan_tier)
        result = await self._check_store(key, config)

        if result.success:
            return RateLimitCheck(
                allowed=True,
                category=category,
                key=key,
                config=config,
                result=result,
            )

        logger.warning(
            f"Rate limit exceeded on {category.value} route, retry after {result.retry_after}s",
            extra=get_log_context(
                user_id=user_id,
                route_category=category.value,
                rate_limit_key=key,
                path=path,
            ),
        )
        return RateLimitCheck(
            allowed=False,
            category=category,
            key=key,
            config=config,
            result=result,
            response=create_rate_limit_response(result),
        )

    async def decorate_response(
        self,
        path: str,
        headers: Mapping[str, str],
        response: Response,
        user_id: Optional[str] = None,
        plan_tier: TierLike = None,
    ) -> Response:
        """Attach current usage headers to a response without counting.

        Unmetered paths get the response back untouched.
        """
        if not self.enabled:
            return response

        category = classify(path)
        if category is None:
            return response

        key = derive_key(path, headers, user_id)
        config = self.config_for(category, plan_tier)

        try:
            count = await self.store.get(key)
        except Exception:
            logger.exception(
                "Failed to read rate limit usage, skipping headers",
                extra=get_log_context(route_category=category.value, rate_limit_key=key),
            )
            return response

        response.headers["X-RateLimit-Limit"] = str(config.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, config.limit - count))
        return response

    async def check_daily_quota(self, org_id: str, plan_tier: TierLike) -> Optional[RateLimitResult]:
        """Count one request against the organization's daily quota.

        Returns:
            None for plans without a daily limit, otherwise the result of
            a 24 hour window check.
        """
        limit = self.plan_resolver.daily_request_limit(plan_tier)
        if limit == UNLIMITED:
            return None

        config = RateLimitConfig(limit=limit, window_ms=DAILY_WINDOW_MS)
        result = await self._check_store(f"rate_limit:daily:{org_id}", config)
        if not result.success:
            logger.warning(
                f"Daily request quota of {limit} exhausted",
                extra=get_log_context(org_id=org_id),
            )
        return result

    async def _check_store(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        try:
            return await self.store.check(key, config.limit, config.window_ms)
        except RateLimitConfigError:
            raise
        except Exception as e:
            logger.exception(
                f"Rate limit store failed: {e}",
                extra=get_log_context(rate_limit_key=key),
            )
            return self._handle_store_failure(config)

    def _handle_store_failure(self, config: RateLimitConfig) -> RateLimitResult:
        """Apply the fail-open / fail-closed policy for a failed check."""
        window_seconds = math.ceil(config.window_ms / 1000)
        reset = math.ceil(time.time()) + window_seconds

        if self.fail_closed:
            logger.warning("Rate limiting fail-closed triggered, request denied")
            return RateLimitResult(
                success=False,
                limit=config.limit,
                remaining=0,
                reset=reset,
                retry_after=window_seconds,
            )

        logger.warning("Rate limiting fail-open triggered, request allowed without check")
        return RateLimitResult(
            success=True,
            limit=config.limit,
            remaining=config.limit,
            reset=reset,
        )
