"""
Database access for the municipality settings document.

The application stores one row per municipality; the deployment's security
settings live under ``settings.security`` of the oldest row.
"""

import logging
from typing import Any

from civicgate.config.config import Config
from civicgate.config.supabase_config import get_supabase_client

logger = logging.getLogger(__name__)


def fetch_security_settings_document() -> Any | None:
    """
    Fetch the raw ``settings.security`` value of the oldest municipality row.

    Returns:
        The nested value as stored (normally a dict), or None when there is no
        row or the row carries no security section.

    Raises:
        RuntimeError: If the Supabase client cannot be initialized.
        Exception: Whatever the PostgREST call raises; the settings loader
            turns every failure into the default settings.
    """
    supabase = get_supabase_client()

    result = (
        supabase.table(Config.MUNICIPALITIES_TABLE)
        .select("settings")
        .order("created_at", desc=False)
        .limit(1)
        .execute()
    )

    if not result.data:
        logger.debug(f"No rows in {Config.MUNICIPALITIES_TABLE}; security settings not configured")
        return None

    settings = result.data[0].get("settings") or {}
    if not isinstance(settings, dict):
        raise ValueError(f"municipality settings must be an object, got {type(settings).__name__}")

    return settings.get("security")
