# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Rate limiting middleware for API endpoints.
Provides per-client fixed-window rate limiting with a Redis backend.

This is request throttling per client; the per-phone resend cooldown lives
in the OTP session store.
"""

from functools import wraps
from flask import request, jsonify, g, make_response, current_app
from typing import Dict, Any, Optional, Callable
import time
import hashlib
import logging

from services.hal import HalFormatter

logger = logging.getLogger(__name__)


class RateLimiter:
    """Redis-based fixed-window rate limiter."""

    def __init__(self, redis_service, hal_formatter: HalFormatter):
        self.redis_service = redis_service
        self.hal_formatter = hal_formatter

    def get_client_identifier(self, user_context=None) -> str:
        """
        Get unique identifier for rate limiting.

        Args:
            user_context: Optional user context

        Returns:
            Unique client identifier
        """
        if user_context:
            return f"user:{user_context.user_id}"

        # remote_addr only reflects X-Forwarded-For when ProxyFix trusts the hop
        ip_address = request.remote_addr or 'unknown'
        user_agent = request.headers.get('User-Agent', '')
        identifier_string = f"{ip_address}:{user_agent}"
        identifier_hash = hashlib.sha256(identifier_string.encode()).hexdigest()[:32]
        return f"ip:{identifier_hash}"

    def get_rate_limit_key(self, identifier: str, endpoint: str, window_seconds: int) -> str:
        """Generate Redis key for the current window."""
        window_start = int(time.time()) // window_seconds
        return f"rate_limit:{identifier}:{endpoint}:{window_start}"

    def check_rate_limit(
        self,
        identifier: str,
        endpoint: str,
        limit: int,
        window_seconds: int = 60
    ) -> Dict[str, Any]:
        """
        Count a request and check it against the limit.

        Args:
            identifier: Client identifier
            endpoint: Endpoint identifier
            limit: Maximum requests allowed
            window_seconds: Time window in seconds

        Returns:
            Dictionary with rate limit status
        """
        key = self.get_rate_limit_key(identifier, endpoint, window_seconds)
        window_start = int(time.time()) // window_seconds
        reset_time = (window_start + 1) * window_seconds

        count = self.redis_service.incr_window(key, window_seconds)
        if count is None:
            # Fail open when Redis is unavailable
            return {
                'allowed': True,
                'limit': limit,
                'remaining': limit - 1,
                'reset_time': reset_time,
                'retry_after': 0
            }

        if count > limit:
            return {
                'allowed': False,
                'limit': limit,
                'remaining': 0,
                'reset_time': reset_time,
                'retry_after': max(1, reset_time - int(time.time()))
            }

        return {
            'allowed': True,
            'limit': limit,
            'remaining': limit - count,
            'reset_time': reset_time,
            'retry_after': 0
        }

    def add_rate_limit_headers(self, response, rate_limit_info: Dict[str, Any]):
        """Add rate limit headers to response."""
        response.headers['X-RateLimit-Limit'] = str(rate_limit_info['limit'])
        response.headers['X-RateLimit-Remaining'] = str(rate_limit_info['remaining'])
        response.headers['X-RateLimit-Reset'] = str(rate_limit_info['reset_time'])

        if rate_limit_info['retry_after'] > 0:
            response.headers['Retry-After'] = str(rate_limit_info['retry_after'])

        return response


def rate_limit(
    limit: int,
    window_seconds: int = 60,
    endpoint: Optional[str] = None,
    per_user: bool = False
):
    """
    Decorator for rate limiting endpoints.

    Args:
        limit: Maximum requests allowed
        window_seconds: Time window in seconds
        endpoint: Custom endpoint identifier
        per_user: Whether to apply limit per user (vs per IP)

    Returns:
        Decorator function
    """
    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated_function(*args, **kwargs):
            redis_service = getattr(current_app, 'redis_service', None)
            if redis_service is None or not redis_service.is_available():
                return f(*args, **kwargs)

            rate_limiter = RateLimiter(redis_service, current_app.hal_formatter)

            user_context = getattr(g, 'user_context', None) if per_user else None
            identifier = rate_limiter.get_client_identifier(user_context)
            endpoint_name = endpoint or f"{request.endpoint or f.__name__}"

            rate_limit_info = rate_limiter.check_rate_limit(
                identifier,
                endpoint_name,
                limit,
                window_seconds
            )

            logger.debug(
                "Rate limit check",
                extra={
                    'identifier': identifier,
                    'endpoint': endpoint_name,
                    'limit': limit,
                    'remaining': rate_limit_info['remaining'],
                    'allowed': rate_limit_info['allowed']
                }
            )

            if not rate_limit_info['allowed']:
                logger.warning(
                    "Rate limit exceeded",
                    extra={
                        'identifier': identifier,
                        'endpoint': endpoint_name,
                        'limit': limit,
                        'retry_after': rate_limit_info['retry_after']
                    }
                )

                error_response = rate_limiter.hal_formatter.builder.build_error_response(
                    "rate-limited",
                    "Too Many Requests",
                    429,
                    f"Muitas requisições. Aguarde {rate_limit_info['retry_after']} segundos",
                    request.path,
                    extra={
                        'code': 'RATE_LIMITED',
                        'message': f"Aguarde {rate_limit_info['retry_after']} segundos",
                        'retryAfter': rate_limit_info['retry_after']
                    }
                )

                response = jsonify(error_response)
                response.status_code = 429
                rate_limiter.add_rate_limit_headers(response, rate_limit_info)
                return response

            response = make_response(f(*args, **kwargs))
            rate_limiter.add_rate_limit_headers(response, rate_limit_info)
            return response

        return decorated_function
    return decorator


def rate_limit_otp_request(f: Callable) -> Callable:
    """Code requests and resends: 5 per minute per client."""
    return rate_limit(5, 60, endpoint="otp_request")(f)


def rate_limit_otp_verify(f: Callable) -> Callable:
    """Code verification: 10 per minute per client."""
    return rate_limit(10, 60, endpoint="otp_verify")(f)


def rate_limit_session_lookup(f: Callable) -> Callable:
    """Session context and magic link lookups: 30 per minute per client."""
    return rate_limit(30, 60, endpoint="otp_session")(f)
