"""Custom exceptions for the dashboard application."""


class DashboardException(Exception):
    """Base class for dashboard exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "Dashboard error"):
        self.message = message
        super().__init__(message)


class RateLimitConfigError(DashboardException, ValueError):
    """Raised when a rate limit policy is malformed.

    Non-positive limits or windows, non-positive plan multipliers and
    retention bounds shorter than a window all end up here. These are
    programming or deployment mistakes and are raised when the config is
    built, never per request.
    """
    status_code = 500


class RateLimitStoreError(DashboardException):
    """Raised by a counter store backend when it cannot answer a check.

    The limiter catches this (and any other unexpected error from the
    store) and applies its fail-open / fail-closed policy.
    """
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"

    def __init__(self, message: str = "Rate limit store unavailable", backend: str | None = None):
        self.backend = backend
        super().__init__(message)
