"""
Fixed-window rate limiting for sensitive endpoints.

Counters are keyed by (client IP, exact path). The in-memory table is
per-process; when a Redis client is injected the counters are shared across
workers and the local table is only used while Redis is failing.

Known limitations of a fixed window: a client can issue up to twice the
threshold around a window boundary, and counts reset when the process
restarts (in-memory store).
"""

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from redis.exceptions import RedisError

from civicgate.config.config import Config
from civicgate.security.audit import SecurityAudit, SecurityEventType, Severity
from civicgate.services.prometheus_metrics import record_rate_limited

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "civicgate:rl"


@dataclass
class RateLimitEntry:
    count: int
    reset_time: float


def is_sensitive_path(path: str, prefixes: list[str] | tuple[str, ...] | None = None) -> bool:
    if prefixes is None:
        prefixes = Config.RATE_LIMIT_SENSITIVE_PREFIXES
    return any(path.startswith(prefix) for prefix in prefixes)


class FixedWindowRateLimiter:
    """
    Counts requests per (ip, path) in fixed windows.

    The request that would exceed ``max_requests`` inside the current window
    is limited and emits a RATE_LIMIT_EXCEEDED event; limited requests do
    not advance the counter.
    """

    def __init__(
        self,
        window_seconds: int | None = None,
        max_requests: int | None = None,
        clock: Callable[[], float] | None = None,
        audit: SecurityAudit | None = None,
        redis_client=None,
    ):
        self.window_seconds = (
            Config.RATE_LIMIT_WINDOW_SECONDS if window_seconds is None else window_seconds
        )
        self.max_requests = Config.RATE_LIMIT_MAX_REQUESTS if max_requests is None else max_requests
        self.clock = clock or time.time
        self.audit = audit or SecurityAudit()
        self.redis = redis_client

        self._entries: dict[tuple[str, str], RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._sweeper_task: asyncio.Task | None = None

    @property
    def store_name(self) -> str:
        return "redis" if self.redis is not None else "memory"

    async def is_limited(self, client_ip: str, path: str) -> bool:
        if self.redis is not None:
            try:
                count = await self._redis_hit(client_ip, path)
                limited = count > self.max_requests
                if limited:
                    self._report_exceeded(client_ip, path, count - 1, store="redis")
                return limited
            except RedisError as e:
                logger.error(f"Redis rate limit error (falling back to local): {e}")

        return self._local_hit(client_ip, path)

    async def _redis_hit(self, client_ip: str, path: str) -> int:
        key = f"{REDIS_KEY_PREFIX}:{client_ip}:{path}"
        # Redis client is synchronous
        return await asyncio.to_thread(self._redis_incr, key)

    def _redis_incr(self, key: str) -> int:
        count = self.redis.incr(key)
        # A key left without a TTL (failed PEXPIRE) would never reset
        if count == 1 or self.redis.pttl(key) == -1:
            self.redis.pexpire(key, int(self.window_seconds * 1000))
        return int(count)

    def _local_hit(self, client_ip: str, path: str) -> bool:
        key = (client_ip, path)
        now = self.clock()

        with self._lock:
            entry = self._entries.get(key)

            if entry is None or now > entry.reset_time:
                self._entries[key] = RateLimitEntry(count=1, reset_time=now + self.window_seconds)
                return False

            if entry.count >= self.max_requests:
                count = entry.count
            else:
                entry.count += 1
                return False

        self._report_exceeded(client_ip, path, count, store="memory")
        return True

    def _report_exceeded(self, client_ip: str, path: str, count: int, store: str) -> None:
        record_rate_limited(store)
        self.audit.log_security_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            {
                "clientIP": client_ip,
                "path": path,
                "count": count,
                "maxRequests": self.max_requests,
            },
            Severity.HIGH,
        )

    def sweep(self) -> int:
        """Drop entries whose window has ended. Returns the number removed."""
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.reset_time < now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_entry(self, client_ip: str, path: str) -> RateLimitEntry | None:
        with self._lock:
            entry = self._entries.get((client_ip, path))
            return RateLimitEntry(entry.count, entry.reset_time) if entry else None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Rate limiter sweep removed {removed} expired entries")

    def start_sweeper(self, interval: float | None = None) -> asyncio.Task:
        """Start the periodic sweep on the running loop (idempotent)."""
        if self._sweeper_task is not None and not self._sweeper_task.done():
            return self._sweeper_task
        if interval is None:
            interval = Config.RATE_LIMIT_SWEEP_INTERVAL_SECONDS
        self._sweeper_task = asyncio.create_task(self._sweep_loop(interval))
        logger.info(f"Rate limiter sweeper started (interval={interval}s, store={self.store_name})")
        return self._sweeper_task

    async def stop_sweeper(self) -> None:
        task = self._sweeper_task
        self._sweeper_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Rate limiter sweeper stopped")
