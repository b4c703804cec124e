#!/usr/bin/env python3
"""
Redis Configuration Module
Handles the Redis connection backing the shared threat store.
"""

import logging
import os
import threading

import redis
from redis.connection import ConnectionPool

from riskgate.config.config import Config

logger = logging.getLogger(__name__)


class RedisConfig:
    """Redis configuration and connection management"""

    def __init__(self, redis_url: str | None = None, socket_timeout: float | None = None):
        self.redis_url = redis_url or Config.REDIS_URL
        self.redis_max_connections = int(os.environ.get("REDIS_MAX_CONNECTIONS", "50"))
        # Store calls sit on the request hot path: fail fast and let the
        # threat store's fail-open/fail-closed policy decide what happens
        self.redis_socket_timeout = (
            socket_timeout if socket_timeout is not None else Config.SECURITY_STORE_TIMEOUT
        )
        self.redis_socket_connect_timeout = float(
            os.environ.get("REDIS_SOCKET_CONNECT_TIMEOUT", str(self.redis_socket_timeout))
        )

        self._client: redis.Redis | None = None
        self._pool: ConnectionPool | None = None
        self._lock = threading.Lock()

    def get_connection_pool(self) -> ConnectionPool:
        """Get Redis connection pool"""
        if self._pool is None:
            connection_kwargs = {
                "max_connections": self.redis_max_connections,
                "socket_timeout": self.redis_socket_timeout,
                "socket_connect_timeout": self.redis_socket_connect_timeout,
                "decode_responses": True,
            }

            # rediss:// (managed Redis with TLS) without cert verification
            if self.redis_url.startswith("rediss://"):
                connection_kwargs["ssl_cert_reqs"] = None

            self._pool = ConnectionPool.from_url(self.redis_url, **connection_kwargs)
        return self._pool

    def get_client(self) -> redis.Redis | None:
        """Get Redis client instance, or None when Redis cannot be reached"""
        if self._client is None:
            with self._lock:
                if self._client is not None:
                    return self._client
                try:
                    client = redis.Redis(connection_pool=self.get_connection_pool())
                    client.ping()
                    self._client = client
                    logger.info("Redis connection established successfully")
                except (redis.RedisError, OSError) as e:
                    logger.warning(f"Redis unavailable: {e}. Falling back to in-memory threat store.")
                    self._client = None
        return self._client


# Global Redis configuration instance
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
    if not Config.REDIS_ENABLED:
        return None
    return get_redis_config().get_client()
