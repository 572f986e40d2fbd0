"""
Loads the deployment's security settings for each gated request.

The settings store is authoritative but optional: any failure to read or
validate it yields the full default settings, so a broken store degrades to
"no IP allow-list" rather than to an outage.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from civicgate.config.config import Config
from civicgate.db.municipality_settings import fetch_security_settings_document
from civicgate.schemas.security_settings import (
    SecuritySettings,
    default_security_settings,
    parse_security_settings,
)
from civicgate.services.prometheus_metrics import record_settings_load_failure

logger = logging.getLogger(__name__)


class SecuritySettingsLoader:
    def __init__(
        self,
        fetch: Callable[[], Any] = fetch_security_settings_document,
        timeout_seconds: float | None = None,
        cache_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetch = fetch
        self.timeout_seconds = (
            Config.SECURITY_SETTINGS_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self.cache_ttl_seconds = (
            Config.SECURITY_SETTINGS_CACHE_TTL_SECONDS
            if cache_ttl_seconds is None
            else cache_ttl_seconds
        )
        self.clock = clock
        self._cached: SecuritySettings | None = None
        self._cached_at: float = 0.0

    def invalidate(self) -> None:
        self._cached = None

    async def load(self) -> SecuritySettings:
        """Return current settings; never raises."""
        if self.cache_ttl_seconds > 0 and self._cached is not None:
            if self.clock() - self._cached_at < self.cache_ttl_seconds:
                return self._cached

        try:
            raw = await asyncio.wait_for(asyncio.to_thread(self.fetch), timeout=self.timeout_seconds)
            settings = parse_security_settings(raw)
        except asyncio.TimeoutError:
            logger.warning(
                f"Security settings load timed out after {self.timeout_seconds}s; using defaults"
            )
            record_settings_load_failure("timeout")
            return default_security_settings()
        except ValidationError as e:
            logger.warning(
                f"Security settings failed validation ({e.error_count()} errors); using defaults"
            )
            record_settings_load_failure("validation")
            return default_security_settings()
        except Exception as e:
            logger.warning(f"Failed to load security settings, using defaults: {e}")
            record_settings_load_failure("store_error")
            return default_security_settings()

        if self.cache_ttl_seconds > 0:
            self._cached = settings
            self._cached_at = self.clock()

        return settings
