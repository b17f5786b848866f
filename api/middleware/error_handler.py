# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Error handling middleware with structured HAL responses.
Provides centralized error handling and formatting for Flask applications.

Expected flow failures are returned by the routes themselves; the handlers
here cover HTTP errors raised by Flask and infrastructure outages.
"""

from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException
from typing import Dict, Any, Tuple
from opentelemetry import trace
from pymongo.errors import PyMongoError
import redis
import logging

from services.hal import HalFormatter
from services.redis import RedisConnectionError

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)

_CLIENT_ERRORS = {
    400: ("bad-request", "Bad Request"),
    401: ("authentication-required", "Authentication Required"),
    404: ("resource-not-found", "Resource Not Found"),
    405: ("method-not-allowed", "Method Not Allowed"),
    415: ("unsupported-media-type", "Unsupported Media Type"),
    422: ("validation-error", "Validation Error"),
    429: ("rate-limited", "Too Many Requests"),
}


class ErrorHandlerMiddleware:
    """Centralized error handling middleware with HAL response formatting."""

    def __init__(self, app: Flask, hal_formatter: HalFormatter):
        self.app = app
        self.hal_formatter = hal_formatter
        self.register_error_handlers()

    def register_error_handlers(self):
        """Register error handlers with Flask application."""

        @self.app.errorhandler(HTTPException)
        def handle_http_exception(error: HTTPException):
            if error.code is not None and error.code >= 500:
                return self.handle_server_error(error)
            return self.handle_client_error(error)

        @self.app.errorhandler(RedisConnectionError)
        @self.app.errorhandler(redis.RedisError)
        @self.app.errorhandler(PyMongoError)
        def handle_dependency_error(error):
            return self.handle_dependency_error(error)

        # Handle generic exceptions
        @self.app.errorhandler(Exception)
        def handle_generic_exception(error):
            if isinstance(error, HTTPException):
                return handle_http_exception(error)
            return self.handle_unexpected_error(error)

    def handle_client_error(self, error: HTTPException) -> Tuple[Dict[str, Any], int]:
        """
        Handle client errors (4xx status codes).

        Args:
            error: HTTP exception

        Returns:
            Tuple of (error response, status code)
        """
        status = error.code or 400
        error_type, title = _CLIENT_ERRORS.get(status, ("client-error", error.name))

        with tracer.start_as_current_span("error_handler.client_error") as span:
            span.set_attributes({
                "error.type": error_type,
                "error.status": status,
                "http.method": request.method,
                "http.path": request.path
            })

            detail = str(error.description) if error.description else title

            logger.warning(
                f"Client error: {title}",
                extra={
                    "error_type": error_type,
                    "status_code": status,
                    "detail": detail,
                    "path": request.path,
                    "method": request.method
                }
            )

            if status == 401:
                error_response = self.hal_formatter.format_authentication_error(detail, request.path)
            elif status == 404:
                error_response = self.hal_formatter.format_not_found_error(detail, request.path)
            elif status == 422:
                error_response = self.hal_formatter.format_validation_error(detail, request.path, [])
            else:
                error_response = self.hal_formatter.builder.build_error_response(
                    error_type,
                    title,
                    status,
                    detail,
                    request.path
                )

            return jsonify(error_response), status

    def handle_server_error(self, error: HTTPException) -> Tuple[Dict[str, Any], int]:
        """Handle server errors (5xx status codes)."""
        status = error.code or 500
        with tracer.start_as_current_span("error_handler.server_error") as span:
            span.set_attributes({
                "error.status": status,
                "http.method": request.method,
                "http.path": request.path
            })

            logger.error(
                f"Server error: {error.name}",
                extra={
                    "status_code": status,
                    "path": request.path,
                    "method": request.method
                }
            )

            detail = str(error.description) if error.description else error.name
            # Don't expose internal error details in production
            if self.app.config.get('ENVIRONMENT') == 'production':
                detail = "An internal server error occurred"

            error_response = self.hal_formatter.builder.build_error_response(
                "server-error",
                error.name,
                status,
                detail,
                request.path
            )
            return jsonify(error_response), status

    def handle_dependency_error(self, error: Exception) -> Tuple[Dict[str, Any], int]:
        """
        Handle MongoDB and Redis outages as 503.

        Args:
            error: Driver exception

        Returns:
            Tuple of (error response, status code)
        """
        with tracer.start_as_current_span("error_handler.dependency_error") as span:
            span.set_attributes({
                "error.type": "service-unavailable",
                "error.class": error.__class__.__name__,
                "http.path": request.path
            })
            span.record_exception(error)

            logger.error(
                f"Dependency unavailable: {error.__class__.__name__}",
                extra={
                    "error_class": error.__class__.__name__,
                    "error_message": str(error),
                    "path": request.path,
                    "method": request.method
                },
                exc_info=True
            )

            error_response = self.hal_formatter.builder.build_error_response(
                "service-unavailable",
                "Service Unavailable",
                503,
                "Serviço temporariamente indisponível. Tente novamente",
                request.path
            )
            response = jsonify(error_response)
            response.status_code = 503
            response.headers['Retry-After'] = '5'
            return response

    def handle_unexpected_error(self, error: Exception) -> Tuple[Dict[str, Any], int]:
        """
        Handle unexpected exceptions not caught by specific handlers.

        Args:
            error: Unexpected exception

        Returns:
            Tuple of (error response, status code)
        """
        with tracer.start_as_current_span("error_handler.unexpected_error") as span:
            span.set_attributes({
                "error.type": "unexpected-error",
                "error.class": error.__class__.__name__,
                "http.method": request.method,
                "http.path": request.path
            })
            span.record_exception(error)

            logger.error(
                f"Unexpected error: {error.__class__.__name__}",
                extra={
                    "error_class": error.__class__.__name__,
                    "error_message": str(error),
                    "path": request.path,
                    "method": request.method
                },
                exc_info=True
            )

            # Don't expose internal error details
            detail = "An unexpected error occurred"
            if self.app.config.get('ENVIRONMENT') != 'production':
                detail = f"{error.__class__.__name__}: {str(error)}"

            error_response = self.hal_formatter.format_server_error(detail, request.path)
            return jsonify(error_response), 500
