"""Rate limiting middleware for the dashboard.

Every inbound request is checked before authentication and routing run:
- Fixed window counters per route category and caller
- Per-plan multipliers (free, pro, enterprise)
- Standard rate limit headers (X-RateLimit-*)
"""

from typing import Awaitable, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from dashboard.app.core.logging import get_log_context, get_logger

from dashboard.app.middleware.rate_limit.limiter import (
    RateLimiter,
    add_rate_limit_headers,
    create_rate_limit_response,
)
from dashboard.app.middleware.rate_limit.models import (
    PlanTier,
    RateLimitCheck,
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
    RouteCategory,
)
from dashboard.app.middleware.rate_limit.plans import (
    DAILY_REQUEST_LIMITS,
    PLAN_RATE_MULTIPLIERS,
    PLAN_SPECIFIC_LIMITS,
    UNLIMITED,
    PlanResolver,
    TierLike,
    get_daily_request_limit,
    get_org_rate_limit_config,
)
from dashboard.app.middleware.rate_limit.routes import (
    DEFAULT_ROUTE_CONFIGS,
    build_route_configs,
    classify,
    derive_key,
    resolve_client_ip,
)
from dashboard.app.middleware.rate_limit.store import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
    create_rate_limit_store,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "PlanTier",
    "RateLimitCheck",
    "RateLimitConfig",
    "RateLimitEntry",
    "RateLimitResult",
    "RouteCategory",
    # Stores
    "RateLimitStore",
    "InMemoryRateLimitStore",
    "RedisRateLimitStore",
    "create_rate_limit_store",
    # Routes and keys
    "DEFAULT_ROUTE_CONFIGS",
    "build_route_configs",
    "classify",
    "derive_key",
    "resolve_client_ip",
    # Plans
    "DAILY_REQUEST_LIMITS",
    "PLAN_RATE_MULTIPLIERS",
    "PLAN_SPECIFIC_LIMITS",
    "UNLIMITED",
    "PlanResolver",
    "get_daily_request_limit",
    "get_org_rate_limit_config",
    # Main classes
    "RateLimiter",
    "RateLimitMiddleware",
    "IdentityResolver",
    "PlanContextResolver",
    "add_rate_limit_headers",
    "create_rate_limit_response",
]

IdentityResolver = Callable[[Request], Awaitable[Optional[str]]]
PlanContextResolver = Callable[[Request], Awaitable[TierLike]]


async def _identity_from_state(request: Request) -> Optional[str]:
    return getattr(request.state, "user_id", None)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    The check runs before anything else, keyed by the user id an earlier
    stage stored on request.state.user_id, or by client IP. Denied
    requests get the 429 straight away. Allowed requests continue and the
    response is decorated afterwards, by which time authentication may
    have identified the caller.

    Usage:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=limiter,
            plan_resolver=resolve_org_plan,
        )
    """

    def __init__(
        self,
        app,
        limiter: RateLimiter,
        identity_resolver: Optional[IdentityResolver] = None,
        plan_resolver: Optional[PlanContextResolver] = None,
    ):
        """Initialize the middleware.

        Args:
            app: The ASGI application
            limiter: Rate limiter facade
            identity_resolver: Finds the caller once the request was handled
                (defaults to request.state.user_id)
            plan_resolver: Finds the caller organization's plan tier
        """
        super().__init__(app)
        self.limiter = limiter
        self.identity_resolver = identity_resolver or _identity_from_state
        self.plan_resolver = plan_resolver

    async def _resolve_plan(self, request: Request) -> TierLike:
        """Plan tier for plan aware limits, None for the base limits.

        A resolver that finds no plan puts the caller on the lowest tier.
        A resolver that fails falls back to the base limits.
        """
        if self.plan_resolver is None:
            return None
        try:
            tier = await self.plan_resolver(request)
        except Exception as e:
            logger.warning(
                f"Plan lookup failed, using base rate limits: {e}",
                extra=get_log_context(path=request.url.path),
            )
            return None
        return PlanTier.FREE if tier is None else tier

    async def _resolve_identity(self, request: Request) -> Optional[str]:
        try:
            return await self.identity_resolver(request)
        except Exception as e:
            # Identity is optional for rate limiting; fall back to client IP
            logger.warning(
                f"Caller identity lookup failed, keying by IP: {e}",
                extra=get_log_context(path=request.url.path),
            )
            return None

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        path = request.url.path
        user_id = getattr(request.state, "user_id", None)
        plan_tier = await self._resolve_plan(request)

        check = await self.limiter.check_rate_limit(
            path, request.headers, user_id=user_id, plan_tier=plan_tier
        )
        if check is not None and not check.allowed:
            return check.response

        response = await call_next(request)

        user_id = await self._resolve_identity(request) or user_id
        return await self.limiter.decorate_response(
            path, request.headers, response, user_id=user_id, plan_tier=plan_tier
        )
