"""
eTijucas Auth API - Flask Application Entry Point

This module builds the Flask application with OpenAPI 3.0 support, wires
the passwordless WhatsApp OTP login services and registers middleware.
"""

import os
import logging
from typing import Any, Dict, Optional
from flask import jsonify
from flask_openapi3 import OpenAPI, Info, Tag
from werkzeug.middleware.proxy_fix import ProxyFix

from config import OtpConfig, load_otp_config
from observability.config import setup_observability
from observability.middleware import add_observability_middleware
from middleware.cors import configure_cors
from middleware.error_handler import ErrorHandlerMiddleware
from models.base import utc_now
from services.audit import AuthAuditService
from services.auth import AuthService
from services.delivery import create_delivery_gateway
from services.hal import create_hal_formatter
from services.health import HealthCheckService
from services.magic_link import MagicLinkResolver
from services.mongodb import MongoDBService
from services.otp_flow import OtpFlowController
from services.otp_store import InMemoryOtpSessionStore, OtpSessionSweeper, create_otp_session_store
from services.redis import RedisService
from services.session_issuer import SessionIssuer
from services.users import InMemoryUserRepository, MongoUserRepository

logger = logging.getLogger(__name__)

# OpenAPI info
info = Info(
    title="eTijucas Auth API",
    version="1.0.0",
    description="Passwordless login via WhatsApp OTP with HATEOAS affordances"
)

# API tags for organization
tags = [
    Tag(name="Authentication", description="Passwordless login via WhatsApp OTP"),
    Tag(name="Health", description="System health and status")
]


def _load_app_config() -> Dict[str, Any]:
    environment = os.getenv('ENVIRONMENT', 'development')
    return {
        'ENVIRONMENT': environment,
        'DEBUG': environment == 'development',
        'BASE_URL': os.getenv('BASE_URL', 'http://localhost:5000'),
        'MONGODB_URI': os.getenv('MONGODB_URI'),
        'REDIS_URL': os.getenv('REDIS_URL'),
        'OTEL_ENABLED': os.getenv('OTEL_ENABLED', 'false').lower() == 'true',
        'JWT_ACCESS_TOKEN_EXPIRE_MINUTES': int(os.getenv('JWT_ACCESS_TOKEN_EXPIRE_MINUTES', '15')),
        'JWT_REFRESH_TOKEN_EXPIRE_DAYS': int(os.getenv('JWT_REFRESH_TOKEN_EXPIRE_DAYS', '30')),
        'TRUSTED_PROXY_HOPS': int(os.getenv('TRUSTED_PROXY_HOPS', '0')),
        'OTP_SWEEPER_ENABLED': True
    }


def create_app(config_overrides: Optional[Dict[str, Any]] = None, **services) -> OpenAPI:
    """
    Build the Flask application.

    Any service can be injected by keyword (otp_config, clock, redis_service,
    mongodb_service, otp_store, delivery_gateway, user_repository,
    auth_service, audit_service); the rest are built from the environment.

    Args:
        config_overrides: Values applied over the Flask config
        **services: Pre-built services, mainly for tests

    Returns:
        Configured OpenAPI (Flask) application
    """
    setup_observability()

    app = OpenAPI(__name__, info=info)
    app.config.update(_load_app_config())
    if config_overrides:
        app.config.update(config_overrides)

    add_observability_middleware(app, instrument=app.config['OTEL_ENABLED'])

    # Client IP from X-Forwarded-For only for the configured number of proxies
    proxy_hops = app.config.get('TRUSTED_PROXY_HOPS', 0)
    if proxy_hops:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=proxy_hops, x_proto=proxy_hops)

    otp_config: OtpConfig = services.get('otp_config') or load_otp_config()
    clock = services.get('clock', utc_now)

    # Infrastructure
    redis_service = services.get('redis_service')
    if redis_service is None and app.config.get('REDIS_URL'):
        redis_service = RedisService(app.config['REDIS_URL'])

    mongodb_service = services.get('mongodb_service')
    if mongodb_service is None and app.config.get('MONGODB_URI'):
        mongodb_service = MongoDBService(app.config['MONGODB_URI'])

    # OTP sessions and delivery
    otp_store = services.get('otp_store')
    if otp_store is None:
        redis_client = redis_service.client if redis_service is not None and redis_service.is_available() else None
        otp_store = create_otp_session_store(otp_config, redis_client, clock)

    sweeper = None
    if isinstance(otp_store, InMemoryOtpSessionStore) and app.config.get('OTP_SWEEPER_ENABLED'):
        sweeper = OtpSessionSweeper(otp_store, otp_config.sweep_interval_seconds)
        sweeper.start()

    delivery_gateway = services.get('delivery_gateway') or create_delivery_gateway(otp_config.ttl_seconds)

    # Accounts and tokens
    user_repository = services.get('user_repository')
    if user_repository is None:
        if mongodb_service is not None:
            user_repository = MongoUserRepository(mongodb_service)
        else:
            logger.warning("No MONGODB_URI configured, accounts are kept in memory")
            user_repository = InMemoryUserRepository()

    auth_service = services.get('auth_service') or AuthService(
        access_token_expire_minutes=app.config['JWT_ACCESS_TOKEN_EXPIRE_MINUTES'],
        refresh_token_expire_days=app.config['JWT_REFRESH_TOKEN_EXPIRE_DAYS']
    )
    audit_service = services.get('audit_service') or AuthAuditService(mongodb_service)

    issuer = SessionIssuer(otp_store, user_repository, auth_service)
    magic_links = MagicLinkResolver(otp_store, otp_config.frontend_url)
    otp_flow = OtpFlowController(
        otp_store,
        delivery_gateway,
        issuer,
        magic_links,
        user_repository,
        audit_service
    )

    hal_formatter = create_hal_formatter(app.config['BASE_URL'])
    health_service = HealthCheckService(mongodb_service, redis_service, otp_store)

    # Middleware
    ErrorHandlerMiddleware(app, hal_formatter)
    configure_cors(app, allowed_origins=app.config.get('CORS_ALLOWED_ORIGINS'))

    # Make services available to routes
    app.otp_config = otp_config
    app.redis_service = redis_service
    app.mongodb_service = mongodb_service
    app.otp_store = otp_store
    app.otp_sweeper = sweeper
    app.delivery_gateway = delivery_gateway
    app.user_repository = user_repository
    app.auth_service = auth_service
    app.audit_service = audit_service
    app.otp_flow = otp_flow
    app.hal_formatter = hal_formatter
    app.health_service = health_service

    # Register routes
    from routes.auth import auth_bp
    app.register_api(auth_bp)

    @app.get('/api/healthz', tags=[tags[1]])
    def health_check():
        """Health check with dependency status."""
        health_data = health_service.get_comprehensive_health()
        status_code = 503 if health_data["status"] == "unhealthy" else 200

        health_response = hal_formatter.builder.build_resource_response(health_data, "/api/healthz")
        return jsonify(health_response), status_code

    logger.info(
        "Application initialized",
        extra={
            "environment": app.config['ENVIRONMENT'],
            "otp_store": type(otp_store).__name__,
            "delivery_gateway": type(delivery_gateway).__name__,
            "user_repository": type(user_repository).__name__
        }
    )

    return app


if __name__ == '__main__':
    # Development server
    application = create_app()
    application.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        debug=application.config['DEBUG']
    )
