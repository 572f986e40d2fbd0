"""
Startup and shutdown of the gate's background work and shared clients.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from civicgate.config.config import Config
from civicgate.config.redis_config import get_redis_config
from civicgate.config.supabase_config import cleanup_supabase_client, get_supabase_client

logger = logging.getLogger(__name__)


async def _warm_up_supabase() -> bool:
    """Initialize the Supabase client off the event loop; failure means degraded mode."""
    try:
        await asyncio.to_thread(get_supabase_client)
        logger.info("Supabase client initialized")
        return True
    except Exception as e:
        logger.warning(f"Supabase client initialization failed: {e}")
        logger.warning("Starting in DEGRADED MODE - security settings fall back to defaults")
        return False


@asynccontextmanager
async def lifespan(app):
    """
    Application lifespan manager for startup and shutdown events
    """
    logger.info("Starting edge gate services...")

    is_valid, missing_vars = Config.validate_critical_env_vars()
    if not is_valid:
        # The gate fails open on a missing settings store, so this is not fatal
        logger.warning(f"Missing environment variables: {missing_vars}")
    else:
        await _warm_up_supabase()

    rate_limiter = getattr(app.state, "rate_limiter", None)
    if rate_limiter is not None:
        rate_limiter.start_sweeper(Config.RATE_LIMIT_SWEEP_INTERVAL_SECONDS)

    yield

    logger.info("Shutting down edge gate services...")

    if rate_limiter is not None:
        await rate_limiter.stop_sweeper()

    audit = getattr(app.state, "audit", None)
    if audit is not None:
        try:
            await asyncio.wait_for(audit.drain(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for pending security event inserts")

    try:
        cleanup_supabase_client()
    except Exception as e:
        logger.warning(f"Supabase cleanup warning: {e}")

    try:
        get_redis_config().close()
    except Exception as e:
        logger.warning(f"Redis cleanup warning: {e}")

    logger.info("Edge gate services stopped")
