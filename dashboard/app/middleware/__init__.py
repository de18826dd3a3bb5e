"""Middleware package for the dashboard."""

from dashboard.app.middleware.rate_limit import RateLimiter, RateLimitMiddleware

__all__ = [
    "RateLimiter",
    "RateLimitMiddleware",
]
