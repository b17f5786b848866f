# SPDX-License-Identifier: Apache-2.0

"""
Authentication middleware for JWT token validation and user context extraction.

This module provides Flask middleware for validating JWT tokens, checking
the logout blocklist, and building user context for request processing.
"""

from functools import wraps
from flask import request, jsonify, g, current_app
from typing import Optional, Dict, Any, Callable
from opentelemetry import trace
import logging

from models.entities import UserContext
from services.auth import TokenValidationError

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)

PROBLEM_BASE_URL = "https://api.etijucas.com.br/problems"


def get_client_info() -> Dict[str, Any]:
    """
    Extract request metadata for audit and user context.

    Returns:
        Dictionary with request information
    """
    forwarded_for = request.headers.get('X-Forwarded-For', '')
    ip_address = forwarded_for.split(',')[0].strip() if forwarded_for else request.remote_addr
    return {
        "ip_address": ip_address,
        "user_agent": request.headers.get('User-Agent', ''),
        "request_id": request.headers.get('X-Request-ID')
    }


class AuthMiddleware:
    """
    JWT authentication middleware for Flask applications.

    Handles token extraction, validation, blocklist checking, and user context
    building for protected endpoints.
    """

    def __init__(self, auth_service, redis_service=None):
        """
        Initialize the authentication middleware.

        Args:
            auth_service: JWT authentication service
            redis_service: Redis service for token blocklist (optional)
        """
        self.auth_service = auth_service
        self.redis_service = redis_service

    @classmethod
    def from_app(cls, app) -> "AuthMiddleware":
        return cls(app.auth_service, getattr(app, 'redis_service', None))

    def extract_token_from_request(self) -> Optional[str]:
        """
        Extract JWT token from request headers.

        Returns:
            JWT token string or None if not found
        """
        auth_header = request.headers.get('Authorization', '')

        if not auth_header:
            return None

        if auth_header.startswith('Bearer '):
            return auth_header[7:].strip() or None

        return None

    def is_token_blocked(self, token_payload: Dict[str, Any]) -> bool:
        """
        Check if a validated token was revoked by logout.

        Args:
            token_payload: Decoded JWT payload

        Returns:
            True if token is blocked, False otherwise
        """
        if self.redis_service is None:
            return False
        return self.redis_service.is_token_blocked(token_payload["jti"])

    def build_user_context(self, token_payload: Dict[str, Any], request_info: Dict[str, Any]) -> UserContext:
        """
        Build user context from validated token payload and request information.

        Args:
            token_payload: Decoded JWT payload
            request_info: Request metadata (IP, user agent, etc.)

        Returns:
            UserContext object for request processing
        """
        return UserContext(
            user_id=token_payload["sub"],
            phone=token_payload.get("phone"),
            profile_completed=bool(token_payload.get("profile_completed", False)),
            token_payload=token_payload,
            ip_address=request_info.get("ip_address"),
            user_agent=request_info.get("user_agent")
        )


def _unauthorized(problem: str, title: str, detail: str):
    return jsonify({
        "type": f"{PROBLEM_BASE_URL}/{problem}",
        "title": title,
        "status": 401,
        "detail": detail,
        "instance": request.path
    }), 401


def require_auth(f: Callable) -> Callable:
    """
    Decorator to require JWT authentication for Flask routes.

    The protected view receives the UserContext as its first argument.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        with tracer.start_as_current_span("auth.middleware.validate_request") as span:
            span.set_attribute("auth.operation", "validate_request")
            auth_middleware = AuthMiddleware.from_app(current_app)

            token = auth_middleware.extract_token_from_request()
            if not token:
                span.set_attribute("auth.result", "missing_token")
                logger.warning("Authentication failed: missing token")
                return _unauthorized("authentication-required", "Authentication Required",
                                     "Missing authorization token")

            try:
                token_payload = auth_middleware.auth_service.validate_token(token, "access")
            except TokenValidationError as e:
                span.set_attribute("auth.result", "invalid_token")
                logger.warning(f"Authentication failed: {str(e)}")
                return _unauthorized("invalid-token", "Invalid Token", str(e))

            if auth_middleware.is_token_blocked(token_payload):
                span.set_attribute("auth.result", "token_blocked")
                logger.warning("Authentication failed: token is blocked")
                return _unauthorized("token-revoked", "Token Revoked", "Token has been revoked")

            user_context = auth_middleware.build_user_context(token_payload, get_client_info())
            g.user_context = user_context

            span.set_attributes({
                "auth.result": "success",
                "user.id": user_context.user_id
            })

            logger.debug(
                "Authentication successful",
                extra={
                    "user_id": user_context.user_id,
                    "ip_address": user_context.ip_address
                }
            )

            return f(user_context, *args, **kwargs)

    return decorated_function
