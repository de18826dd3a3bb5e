"""Route classification and rate limit key derivation.

Tiered limits by route category:
- API (authenticated): 100 req/min
- Auth routes: 10 req/15min
- Webhooks: 200 req/min
- AI generation: 20 req/min
- OAuth: 30 req/min
"""

import re
from typing import Dict, Mapping, Optional

from dashboard.app.core.config import Settings
from dashboard.app.middleware.rate_limit.models import RateLimitConfig, RouteCategory

DEFAULT_ROUTE_CONFIGS: Dict[RouteCategory, RateLimitConfig] = {
    RouteCategory.API: RateLimitConfig(limit=100, window_ms=60 * 1000),
    RouteCategory.AUTH: RateLimitConfig(limit=10, window_ms=15 * 60 * 1000),
    RouteCategory.WEBHOOK: RateLimitConfig(limit=200, window_ms=60 * 1000),
    RouteCategory.AI: RateLimitConfig(limit=20, window_ms=60 * 1000),
    RouteCategory.OAUTH: RateLimitConfig(limit=30, window_ms=60 * 1000),
}

_STATIC_PREFIXES = ("/_next", "/favicon", "/static")
_STATIC_SUFFIX = re.compile(r"\.(svg|png|jpg|jpeg|gif|webp|ico|css|js)$")

_AUTH_PAGES = frozenset({"/login", "/signup", "/forgot-password", "/reset-password"})


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def classify(path: str) -> Optional[RouteCategory]:
    """Map a request path to its route category.

    Only the path is considered; a query string is ignored. Specific
    categories are checked before the generic API fallback since most of
    them live under /api too.

    Returns:
        The RouteCategory, or None when the path is not rate limited
        (static assets and page requests).
    """
    path = path.split("?", 1)[0]

    if path.startswith(_STATIC_PREFIXES) or _STATIC_SUFFIX.search(path):
        return None

    if (
        _under(path, "/api/ai")
        or _under(path, "/api/generate")
        or (_under(path, "/api/tasks") and "generate" in path.split("/"))
    ):
        return RouteCategory.AI

    # Inbound webhooks and background job triggers
    if _under(path, "/api/webhooks") or _under(path, "/api/inngest"):
        return RouteCategory.WEBHOOK

    if _under(path, "/api/oauth"):
        return RouteCategory.OAUTH

    if path in _AUTH_PAGES or _under(path, "/api/auth"):
        return RouteCategory.AUTH

    if _under(path, "/api"):
        return RouteCategory.API

    return None


def resolve_client_ip(headers: Mapping[str, str]) -> str:
    """Best-effort client IP from proxy headers.

    Takes the first hop of X-Forwarded-For, then X-Real-IP, then "unknown".
    Plain dicts must use lowercase header names; Starlette Headers are
    case-insensitive.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
        if client_ip:
            return client_ip

    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return "unknown"


def derive_key(
    path: str,
    headers: Mapping[str, str],
    user_id: Optional[str] = None,
) -> Optional[str]:
    """Build the counter key for a request.

    The key holds the route category and the caller (user id when
    authenticated, client IP otherwise), so every path of one category
    shares a counter per caller.

    Returns:
        "rate_limit:{category}:{identifier}", or None for unmetered paths
    """
    category = classify(path)
    if category is None:
        return None

    identifier = user_id or resolve_client_ip(headers)
    return f"rate_limit:{category.value}:{identifier}"


def build_route_configs(settings: Settings) -> Dict[RouteCategory, RateLimitConfig]:
    """Per-category limits from settings."""
    return {
        RouteCategory.API: RateLimitConfig(
            limit=settings.rate_limit_api_limit,
            window_ms=settings.rate_limit_api_window_ms,
        ),
        RouteCategory.AUTH: RateLimitConfig(
            limit=settings.rate_limit_auth_limit,
            window_ms=settings.rate_limit_auth_window_ms,
        ),
        RouteCategory.WEBHOOK: RateLimitConfig(
            limit=settings.rate_limit_webhook_limit,
            window_ms=settings.rate_limit_webhook_window_ms,
        ),
        RouteCategory.AI: RateLimitConfig(
            limit=settings.rate_limit_ai_limit,
            window_ms=settings.rate_limit_ai_window_ms,
        ),
        RouteCategory.OAUTH: RateLimitConfig(
            limit=settings.rate_limit_oauth_limit,
            window_ms=settings.rate_limit_oauth_window_ms,
        ),
    }
