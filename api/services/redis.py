# SPDX-License-Identifier: Apache-2.0

"""
Redis service for caching, rate limit counters and JWT token management.

This module wraps the standard redis-py client. Cache-style operations fail
gracefully (logged, falsy result) so that an unavailable Redis degrades the
API instead of taking it down. The OTP session store talks to the raw client
through `client` because it needs WATCH/MULTI transactions.
"""

import os
from typing import Optional, Dict, Any
import redis
from opentelemetry import trace
import logging

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)


class RedisConnectionError(Exception):
    """Raised when Redis connection fails."""
    pass


class RedisService:
    """
    Redis service with the standard redis-py client.

    Provides JWT token blocklist functionality, fixed-window counters for
    rate limiting, and general caching operations.
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        """
        Initialize the Redis service.

        Args:
            redis_url: Redis connection URL (redis://host:port/db)
            client: Pre-built client, mainly for tests
        """
        self.redis_url = redis_url or os.getenv("REDIS_URL")

        if client is not None:
            self.client = client
            return

        if not self.redis_url:
            logger.warning("No REDIS_URL configured, Redis operations will be disabled")
            self.client = None
            return

        try:
            self.client = redis.from_url(self.redis_url, decode_responses=True)

            # Test connection
            self._test_connection()

            logger.info("Redis service initialized successfully")

        except RedisConnectionError as e:
            logger.error(f"Failed to initialize Redis service: {str(e)}")
            self.client = None

    def _test_connection(self) -> None:
        """Test Redis connection."""
        if not self.client:
            return

        try:
            if not self.client.ping():
                raise RedisConnectionError("Redis ping failed")
        except redis.RedisError as e:
            logger.error(f"Redis connection test failed: {str(e)}")
            raise RedisConnectionError(f"Redis connection failed: {str(e)}")

    def is_available(self) -> bool:
        """Check if Redis service is available."""
        return self.client is not None

    def _handle_redis_error(self, operation: str, error: Exception) -> None:
        """Handle Redis operation errors with logging."""
        logger.error(f"Redis {operation} failed: {str(error)}")
        # Don't raise exceptions for cache operations - fail gracefully

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> bool:
        """
        Set a key-value pair with TTL.

        Args:
            key: Redis key
            value: Value to store
            ttl_seconds: Time to live in seconds

        Returns:
            True if successful, False otherwise
        """
        if not self.is_available():
            return False

        with tracer.start_as_current_span("redis.set_with_ttl") as span:
            span.set_attributes({
                "redis.operation": "set_with_ttl",
                "redis.key": key,
                "redis.ttl": ttl_seconds
            })

            try:
                result = self.client.setex(key, ttl_seconds, value)

                span.set_attribute("redis.result", "success")
                logger.debug(f"Redis SET successful: {key} (TTL: {ttl_seconds}s)")

                return bool(result)

            except redis.RedisError as e:
                span.set_attribute("redis.result", "error")
                self._handle_redis_error("SET", e)
                return False

    def get(self, key: str) -> Optional[str]:
        """
        Get value by key.

        Args:
            key: Redis key

        Returns:
            Value as string or None if not found
        """
        if not self.is_available():
            return None

        with tracer.start_as_current_span("redis.get") as span:
            span.set_attributes({
                "redis.operation": "get",
                "redis.key": key
            })

            try:
                result = self.client.get(key)

                span.set_attribute("redis.result", "hit" if result else "miss")
                logger.debug(f"Redis GET: {key} -> {'hit' if result else 'miss'}")

                return result

            except redis.RedisError as e:
                span.set_attribute("redis.result", "error")
                self._handle_redis_error("GET", e)
                return None

    def delete(self, key: str) -> bool:
        """
        Delete a key.

        Args:
            key: Redis key to delete

        Returns:
            True if key was deleted, False otherwise
        """
        if not self.is_available():
            return False

        with tracer.start_as_current_span("redis.delete") as span:
            span.set_attributes({
                "redis.operation": "delete",
                "redis.key": key
            })

            try:
                result = self.client.delete(key)

                span.set_attribute("redis.result", "success")
                logger.debug(f"Redis DELETE: {key} -> {result}")

                return result > 0

            except redis.RedisError as e:
                span.set_attribute("redis.result", "error")
                self._handle_redis_error("DELETE", e)
                return False

    def exists(self, key: str) -> bool:
        """
        Check if key exists.

        Args:
            key: Redis key to check

        Returns:
            True if key exists, False otherwise
        """
        if not self.is_available():
            return False

        try:
            return self.client.exists(key) > 0
        except redis.RedisError as e:
            self._handle_redis_error("EXISTS", e)
            return False

    def incr_window(self, key: str, window_seconds: int) -> Optional[int]:
        """
        Increment a fixed-window counter, starting its TTL on first hit.

        Args:
            key: Counter key
            window_seconds: Window length in seconds

        Returns:
            Counter value after increment, or None if Redis is unavailable
        """
        if not self.is_available():
            return None

        with tracer.start_as_current_span("redis.incr_window") as span:
            span.set_attributes({
                "redis.operation": "incr_window",
                "redis.key": key,
                "redis.ttl": window_seconds
            })

            try:
                pipe = self.client.pipeline()
                pipe.set(key, 0, ex=window_seconds, nx=True)
                pipe.incr(key)
                _, count = pipe.execute()
                span.set_attribute("redis.counter", count)
                return int(count)
            except redis.RedisError as e:
                span.set_attribute("redis.result", "error")
                self._handle_redis_error("INCR", e)
                return None

    # JWT Token Blocklist Methods

    def is_token_blocked(self, token_id: str) -> bool:
        """
        Check if a JWT token is in the blocklist.

        Args:
            token_id: Unique token identifier

        Returns:
            True if token is blocked, False otherwise
        """
        if not self.is_available():
            # Fail open, logged for monitoring
            logger.warning("Redis unavailable for token blocklist check - allowing token")
            return False

        with tracer.start_as_current_span("redis.is_token_blocked") as span:
            span.set_attributes({
                "redis.operation": "is_token_blocked",
                "auth.token_id": token_id
            })

            key = f"jwt:blocked:{token_id}"
            result = self.exists(key)

            span.set_attribute("auth.token_blocked", result)
            return result

    def block_token(self, token_id: str, ttl_seconds: int) -> bool:
        """
        Add a JWT token to the blocklist.

        Args:
            token_id: Unique token identifier
            ttl_seconds: Time to live (should match token expiration)

        Returns:
            True if token was blocked, False otherwise
        """
        if not self.is_available():
            logger.error("Redis unavailable - cannot block token")
            return False

        if ttl_seconds <= 0:
            return True  # Token already expired

        with tracer.start_as_current_span("redis.block_token") as span:
            span.set_attributes({
                "redis.operation": "block_token",
                "auth.token_id": token_id,
                "redis.ttl": ttl_seconds
            })

            key = f"jwt:blocked:{token_id}"
            result = self.set_with_ttl(key, "1", ttl_seconds)

            span.set_attribute("auth.token_block_result", "success" if result else "failed")

            if result:
                logger.info(f"Token blocked successfully: {token_id} (TTL: {ttl_seconds}s)")
            else:
                logger.error(f"Failed to block token: {token_id}")

            return result

    # Health Check Methods

    def ping(self) -> bool:
        """
        Ping Redis server.

        Returns:
            True if ping successful, False otherwise
        """
        if not self.is_available():
            return False

        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {str(e)}")
            return False

    def get_info(self) -> Dict[str, Any]:
        """
        Get Redis server information.

        Returns:
            Dictionary with Redis server info
        """
        if not self.is_available():
            return {}

        try:
            info = self.client.info()
            return {
                "redis_version": info.get("redis_version", "unknown"),
                "used_memory": info.get("used_memory", 0),
                "connected_clients": info.get("connected_clients", 0),
                "uptime_in_seconds": info.get("uptime_in_seconds", 0)
            }
        except redis.RedisError as e:
            logger.error(f"Failed to get Redis info: {str(e)}")
            return {}

