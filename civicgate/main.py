import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import REGISTRY, generate_latest

from civicgate import __version__
from civicgate.config import Config

# Initialize logging with Loki integration
from civicgate.config.logging_config import configure_logging
from civicgate.middleware.security_middleware import EdgeSecurityMiddleware
from civicgate.routes import health
from civicgate.security.audit import SecurityAudit
from civicgate.security.rate_limiter import FixedWindowRateLimiter
from civicgate.services.startup import lifespan

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """
        Sampling strategy:
        - Errors: always (parent_sampled)
        - Development: 100%
        - Health/metrics endpoints: 0%
        - Everything else: SENTRY_TRACES_SAMPLE_RATE
        """
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0

        endpoint = ""
        if "asgi_scope" in sampling_context:
            endpoint = sampling_context["asgi_scope"].get("path", "")

        if endpoint in ["/health", "/metrics", "/api/health"]:
            return 0.0

        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(
        f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT}, "
        f"release: {Config.SENTRY_RELEASE})"
    )
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def _build_rate_limiter(audit: SecurityAudit) -> FixedWindowRateLimiter:
    """One limiter per process; Redis-backed when enabled and reachable."""
    redis_client = None
    if Config.RATE_LIMIT_USE_REDIS:
        from civicgate.config.redis_config import get_redis_client

        try:
            redis_client = get_redis_client()
        except Exception as e:
            logger.warning(f"Redis unavailable, using in-memory rate limiting: {e}")
            redis_client = None

        if redis_client is None:
            logger.warning("Rate limiting with LOCAL fallback (Redis not available)")

    return FixedWindowRateLimiter(audit=audit, redis_client=redis_client)


def create_app() -> FastAPI:
    app = FastAPI(
        title="CivicGate",
        description="Edge request gate for the municipal strategic-planning application",
        version=__version__,
        lifespan=lifespan,
    )

    audit = SecurityAudit()
    rate_limiter = _build_rate_limiter(audit)
    app.state.audit = audit
    app.state.rate_limiter = rate_limiter

    app.add_middleware(EdgeSecurityMiddleware, rate_limiter=rate_limiter, audit=audit)
    logger.info(f"  Edge security middleware enabled (store={rate_limiter.store_name})")

    app.include_router(health.router)

    if Config.PROMETHEUS_ENABLED:
        from civicgate.services import prometheus_metrics  # noqa: F401

        @app.get("/metrics", tags=["monitoring"], include_in_schema=False)
        async def metrics():
            """Prometheus metrics endpoint (gate decisions, security events, rate limits)."""
            return Response(generate_latest(REGISTRY), media_type="text/plain; charset=utf-8")

        logger.info("  [OK] Prometheus metrics endpoint at /metrics")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Log unexpected errors and answer with a generic 500."""
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    return app


# Export a default app instance for environments that import `app`
app = create_app()

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting CivicGate server...")
    uvicorn.run("civicgate.main:app", host="0.0.0.0", port=8000, reload=Config.IS_DEVELOPMENT)
