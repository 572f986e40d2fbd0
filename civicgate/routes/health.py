"""
Health endpoints for load balancers and uptime checks.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from civicgate import __version__
from civicgate.config.supabase_config import get_initialization_status

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", tags=["health"])
@router.get("/api/health", tags=["health"], include_in_schema=False)
async def health_check(request: Request):
    """
    Simple health check endpoint

    Always returns HTTP 200 while the process serves traffic. A missing
    settings store is reported as degraded: the gate keeps running on
    default settings.
    """
    db_status = get_initialization_status()

    response = {
        "status": "healthy" if db_status["initialized"] else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "database": db_status,
    }

    rate_limiter = getattr(request.app.state, "rate_limiter", None)
    if rate_limiter is not None:
        response["rate_limiter"] = {
            "store": rate_limiter.store_name,
            "tracked_keys": rate_limiter.entry_count(),
        }

    return response
