"""
Process-wide Supabase client for the gate's two tables.

The gate reads ``municipalities.settings`` on each request and optionally
inserts into ``security_events``. Both go through PostgREST, so the client is
given a pooled httpx session with short timeouts. A failed initialization is
remembered for ERROR_CACHE_TTL seconds and re-raised without a new attempt.
"""

import logging
import time

import httpx
import sentry_sdk
from supabase import Client, create_client
from supabase.client import ClientOptions

from civicgate.config.config import Config

logger = logging.getLogger(__name__)

ERROR_CACHE_TTL = 60.0
POSTGREST_TIMEOUT_SECONDS = 10
POOL_LIMITS = httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=60.0)

_supabase_client: Client | None = None
_last_error: Exception | None = None
_last_error_time: float = 0


def _require_http_url() -> str:
    Config.validate()
    url = Config.SUPABASE_URL
    if not url.startswith(("http://", "https://")):
        raise RuntimeError(
            f"SUPABASE_URL must start with 'http://' or 'https://' "
            f"(got '{url}', expected e.g. 'https://{url}')"
        )
    return url


def _raise_if_recently_failed() -> None:
    global _last_error, _last_error_time

    if _last_error is None:
        return
    retry_in = ERROR_CACHE_TTL - (time.time() - _last_error_time)
    if retry_in > 0:
        raise RuntimeError(
            f"Supabase unavailable (retry in {int(retry_in)}s): {_last_error}"
        ) from _last_error

    logger.info("Supabase error cache expired; retrying initialization")
    _last_error = None
    _last_error_time = 0


def _build_client(url: str) -> Client:
    client = create_client(
        supabase_url=url,
        supabase_key=Config.SUPABASE_KEY,
        options=ClientOptions(
            postgrest_client_timeout=POSTGREST_TIMEOUT_SECONDS,
            schema="public",
            headers={"X-Client-Info": f"civicgate/{Config.APP_VERSION}"},
        ),
    )

    # postgrest resolves table paths relative to base_url
    client.postgrest.session = httpx.Client(
        base_url=f"{url}/rest/v1",
        headers={
            "apikey": Config.SUPABASE_KEY,
            "Authorization": f"Bearer {Config.SUPABASE_KEY}",
        },
        timeout=httpx.Timeout(POSTGREST_TIMEOUT_SECONDS, connect=3.0),
        limits=POOL_LIMITS,
    )
    return client


def get_supabase_client() -> Client:
    """
    Return the shared Supabase client, creating it on first use.

    Raises:
        RuntimeError: If the configuration is missing or invalid, the client
            cannot be created, or an earlier attempt failed less than
            ERROR_CACHE_TTL seconds ago.
    """
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is not None:
        return _supabase_client

    _raise_if_recently_failed()

    try:
        url = _require_http_url()
        logger.info(f"Initializing Supabase client for {url[:30]}")
        _supabase_client = _build_client(url)
        return _supabase_client
    except Exception as e:
        _last_error = e
        _last_error_time = time.time()
        logger.error(f"Failed to initialize Supabase client: {type(e).__name__}: {e}")

        with sentry_sdk.push_scope() as scope:
            scope.set_tag("component", "supabase_client")
            scope.set_context("supabase_config", {"supabase_url_set": bool(Config.SUPABASE_URL)})
            sentry_sdk.capture_exception(e)

        raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def cleanup_supabase_client():
    """Close the pooled session on shutdown."""
    global _supabase_client

    if _supabase_client is None:
        return
    try:
        _supabase_client.postgrest.session.close()
    except Exception as e:
        logger.warning(f"Error closing Supabase HTTP session: {e}")
    _supabase_client = None
    logger.info("Supabase client closed")


def get_initialization_status() -> dict:
    """Report client state for the health endpoint."""
    return {
        "initialized": _supabase_client is not None,
        "has_error": _last_error is not None,
        "error_type": type(_last_error).__name__ if _last_error else None,
    }
