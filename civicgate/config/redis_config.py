"""
Redis Configuration Module
Handles the optional Redis connection used as a shared rate-limit counter store.
"""

import logging
import os
import threading

import redis
from redis.connection import ConnectionPool

logger = logging.getLogger(__name__)


class RedisConfig:
    """Redis configuration and connection management"""

    def __init__(self):
        self.redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
        self.redis_max_connections = int(os.environ.get("REDIS_MAX_CONNECTIONS", "20"))
        # Short timeouts: the limiter falls back to its local table when Redis is slow
        self.redis_socket_timeout = float(os.environ.get("REDIS_SOCKET_TIMEOUT", "1"))
        self.redis_socket_connect_timeout = float(os.environ.get("REDIS_SOCKET_CONNECT_TIMEOUT", "1"))

        self._client: redis.Redis | None = None
        self._pool: ConnectionPool | None = None

    def get_connection_pool(self) -> ConnectionPool:
        """Get Redis connection pool"""
        if self._pool is None:
            connection_kwargs = {
                "max_connections": self.redis_max_connections,
                "socket_timeout": self.redis_socket_timeout,
                "socket_connect_timeout": self.redis_socket_connect_timeout,
                "decode_responses": True,
            }
            if self.redis_url.startswith("rediss://"):
                connection_kwargs["ssl_cert_reqs"] = None

            self._pool = ConnectionPool.from_url(self.redis_url, **connection_kwargs)
        return self._pool

    def get_client(self) -> redis.Redis | None:
        """Get Redis client instance, or None when Redis cannot be reached"""
        if self._client is None:
            try:
                client = redis.Redis(connection_pool=self.get_connection_pool())
                client.ping()
                self._client = client
                logger.info("Redis connection established successfully")
            except Exception as e:
                # Expected in environments without Redis; the limiter keeps counters locally
                logger.debug(f"Redis unavailable: {e}. Using in-process rate-limit table.")
                self._client = None
        return self._client

    def close(self) -> None:
        if self._pool is not None:
            self._pool.disconnect()
        self._pool = None
        self._client = None


_redis_config = None
_redis_config_lock = threading.Lock()


def get_redis_config() -> RedisConfig:
    """Get global Redis configuration instance (thread-safe singleton)."""
    global _redis_config
    if _redis_config is None:
        with _redis_config_lock:
            if _redis_config is None:
                _redis_config = RedisConfig()
    return _redis_config


def get_redis_client() -> redis.Redis | None:
    """Get Redis client instance"""
    return get_redis_config().get_client()
