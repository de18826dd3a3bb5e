"""Rate limiting data models.

This module contains the enums and dataclasses shared by the store,
the classifier, the plan resolver and the limiter facade.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from dashboard.app.exceptions import RateLimitConfigError

if TYPE_CHECKING:
    from starlette.responses import Response


class RouteCategory(str, Enum):
    """Coarse endpoint classification used to pick a rate limit policy."""

    API = "api"
    AUTH = "auth"
    WEBHOOK = "webhook"
    AI = "ai"
    OAUTH = "oauth"


class PlanTier(str, Enum):
    """Subscription level of the organization making the request."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class RateLimitConfig:
    """Limit and window length for one route category."""
    limit: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.limit <= 0:
            raise RateLimitConfigError(f"limit must be positive, got {self.limit}")
        if self.window_ms <= 0:
            raise RateLimitConfigError(f"window_ms must be positive, got {self.window_ms}")


@dataclass
class RateLimitEntry:
    """Fixed-window counter state for one key.

    window_ms is remembered so the sweep never drops an entry before its
    own window has run out.
    """
    count: int
    window_start: float  # epoch milliseconds
    window_ms: int


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    success: bool
    limit: int
    remaining: int
    reset: int  # Unix seconds when the current window ends
    retry_after: Optional[int] = None


@dataclass
class RateLimitCheck:
    """Outcome of the limiter facade for one metered request.

    response is only set on denial and is the 429 to send back as-is.
    """
    allowed: bool
    category: RouteCategory
    key: str
    config: RateLimitConfig
    result: RateLimitResult
    response: Optional["Response"] = None
