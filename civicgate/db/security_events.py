"""
Database operations for persisted security events.

Inserts are fire-and-forget from the gate's point of view: failures are
logged and reported as None, never raised.
"""

import logging
from typing import Any

from civicgate.config.config import Config
from civicgate.config.supabase_config import get_supabase_client

logger = logging.getLogger(__name__)


def create_security_event(event_data: dict[str, Any]) -> dict[str, Any] | None:
    """
    Insert a security event row.

    Args:
        event_data: Serialized SecurityEvent (event_type, severity, metadata, timestamp)

    Returns:
        Created row or None if failed
    """
    try:
        supabase = get_supabase_client()

        result = supabase.table(Config.SECURITY_EVENTS_TABLE).insert(event_data).execute()

        if result.data:
            logger.debug(
                f"Persisted security event {event_data.get('event_type')} "
                f"(id={result.data[0].get('id')})"
            )
            return result.data[0]
        else:
            logger.error("Failed to persist security event: No data returned")
            return None

    except Exception as e:
        logger.error(f"Error persisting security event {event_data.get('event_type')}: {e}")
        return None
