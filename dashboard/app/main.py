from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dashboard.app.core.config import Settings, settings as default_settings
from dashboard.app.core.logging import get_logger, setup_logging
from dashboard.app.exceptions import DashboardException
from dashboard.app.middleware.rate_limit import (
    IdentityResolver,
    InMemoryRateLimitStore,
    PlanContextResolver,
    PlanResolver,
    RateLimiter,
    RateLimitMiddleware,
    RateLimitStore,
    RedisRateLimitStore,
    build_route_configs,
    create_rate_limit_store,
)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RateLimitStore] = None,
    identity_resolver: Optional[IdentityResolver] = None,
    plan_resolver: Optional[PlanContextResolver] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The rate limit store and limiter are built here and handed to the
    middleware; the store's background sweep lives as long as the app.

    Args:
        settings: Settings to use (defaults to the environment)
        store: Counter store, built from settings when omitted
        identity_resolver: Caller lookup for response decoration
        plan_resolver: Organization plan lookup for plan aware limits

    Returns:
        Configured FastAPI application instance
    """
    if settings is None:
        settings = default_settings

    setup_logging(settings)
    logger = get_logger(__name__)

    route_configs = build_route_configs(settings)
    if store is None:
        store = create_rate_limit_store(settings)
    limiter = RateLimiter(
        store=store,
        route_configs=route_configs,
        plan_resolver=PlanResolver(base_configs=route_configs),
        fail_closed=settings.rate_limit_fail_closed,
        enabled=settings.rate_limit_enabled,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the store's sweep on startup and stop it on shutdown."""
        await store.start()
        logger.info(
            "Application startup complete",
            extra={
                "rate_limit_store": type(store).__name__,
                "rate_limit_enabled": settings.rate_limit_enabled,
            }
        )

        yield

        await store.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Growthdesk Dashboard",
        description="Marketing automation dashboard backend",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.rate_limiter = limiter

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
        max_age=600,
    )

    # Rate limiting runs before routing and authentication
    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        identity_resolver=identity_resolver,
        plan_resolver=plan_resolver,
    )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with rate limiter backend status."""
        rate_limit: dict[str, Any] = {"enabled": limiter.enabled}
        if isinstance(store, InMemoryRateLimitStore):
            rate_limit["type"] = "memory"
            rate_limit["keys"] = len(store)
            rate_limit["sweep_running"] = store.running
        elif isinstance(store, RedisRateLimitStore):
            rate_limit["type"] = "redis"
        else:
            rate_limit["type"] = type(store).__name__

        return {"status": "ok", "components": {"rate_limit": rate_limit}}

    @app.exception_handler(DashboardException)
    async def dashboard_error_handler(request: Request, exc: DashboardException) -> JSONResponse:
        """Handle DashboardException with its own status code."""
        logger.error(
            f"{type(exc).__name__}: {exc.message}",
            extra={"path": request.url.path, "status_code": exc.status_code},
        )
        message = exc.message if settings.debug else "Internal server error"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": exc.error_code, "message": message}},
        )

    return app


# Create the application instance
app = create_app()
