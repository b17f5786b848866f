# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Tests for middleware functionality.
"""

import pytest
from unittest.mock import Mock
from flask import Flask, jsonify, abort
from pymongo.errors import ServerSelectionTimeoutError

from middleware.auth import AuthMiddleware, require_auth
from middleware.error_handler import ErrorHandlerMiddleware
from middleware.cors import CORSMiddleware, configure_cors
from middleware.rate_limit import RateLimiter, rate_limit
from services.hal import HalFormatter


class TestErrorHandlerMiddleware:
    """Test error handler middleware functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.app = Flask(__name__)
        self.hal_formatter = HalFormatter("https://api.example.com")
        ErrorHandlerMiddleware(self.app, self.hal_formatter)

        @self.app.route('/boom')
        def boom():
            raise RuntimeError("secret stack detail")

        @self.app.route('/mongo')
        def mongo():
            raise ServerSelectionTimeoutError("no servers")

        @self.app.route('/forbidden-method', methods=['POST'])
        def post_only():
            return jsonify({})

        @self.app.route('/unprocessable')
        def unprocessable():
            abort(422)

        self.client = self.app.test_client()

    def test_not_found(self):
        """Test unknown routes return a problem document."""
        response = self.client.get('/missing')

        assert response.status_code == 404
        data = response.get_json()
        assert data['type'].endswith('/resource-not-found')
        assert data['instance'] == '/missing'
        assert 'help' in data['_links']

    def test_method_not_allowed(self):
        """Test 405 uses its own problem type."""
        response = self.client.get('/forbidden-method')

        assert response.status_code == 405
        assert response.get_json()['type'].endswith('/method-not-allowed')

    def test_abort_422(self):
        """Test aborted validation errors carry the error code."""
        response = self.client.get('/unprocessable')

        assert response.status_code == 422
        assert response.get_json()['code'] == 'VALIDATION_ERROR'

    def test_database_outage_is_503(self):
        """Test driver errors become a retryable 503."""
        response = self.client.get('/mongo')

        assert response.status_code == 503
        assert response.headers['Retry-After'] == '5'
        assert response.get_json()['type'].endswith('/service-unavailable')

    def test_unexpected_error_hides_detail_in_production(self):
        """Test internal details are hidden in production."""
        self.app.config['ENVIRONMENT'] = 'production'

        response = self.client.get('/boom')

        assert response.status_code == 500
        assert 'secret' not in response.get_json()['detail']


class TestCORSMiddleware:
    """Test CORS middleware functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.app = Flask(__name__)

        @self.app.route('/ping', methods=['GET', 'POST'])
        def ping():
            return jsonify({"ok": True})

        self.cors = CORSMiddleware(self.app, allowed_origins=[
            'https://etijucas.com.br',
            'https://preview-*'
        ])
        self.client = self.app.test_client()

    def test_origin_matching(self):
        """Test exact and prefix wildcard origins."""
        assert self.cors.is_origin_allowed('https://etijucas.com.br')
        assert self.cors.is_origin_allowed('https://preview-123.vercel.app')
        assert not self.cors.is_origin_allowed('https://evil.example.com')
        assert not self.cors.is_origin_allowed(None)

    def test_preflight_allowed(self):
        """Test preflight for an allowed origin."""
        response = self.client.open('/ping', method='OPTIONS', headers={'Origin': 'https://etijucas.com.br'})

        assert response.status_code == 204
        assert response.headers['Access-Control-Allow-Origin'] == 'https://etijucas.com.br'
        assert 'Authorization' in response.headers['Access-Control-Allow-Headers']

    def test_preflight_rejected(self):
        """Test preflight for an unknown origin."""
        response = self.client.open('/ping', method='OPTIONS', headers={'Origin': 'https://evil.example.com'})
        assert response.status_code == 403

    def test_simple_request_headers(self):
        """Test CORS headers on a normal response."""
        response = self.client.get('/ping', headers={'Origin': 'https://etijucas.com.br'})

        assert response.headers['Access-Control-Allow-Origin'] == 'https://etijucas.com.br'
        assert response.headers['Vary'] == 'Origin'
        assert 'Retry-After' in response.headers['Access-Control-Expose-Headers']

    def test_disallowed_origin_gets_no_headers(self):
        """Test no CORS headers for an unknown origin."""
        response = self.client.get('/ping', headers={'Origin': 'https://evil.example.com'})

        assert response.status_code == 200
        assert 'Access-Control-Allow-Origin' not in response.headers

    def test_default_origins_from_environment(self, monkeypatch):
        """Test origins read from FRONTEND_URL and CORS_ORIGINS."""
        monkeypatch.setenv('ENVIRONMENT', 'production')
        monkeypatch.setenv('FRONTEND_URL', 'https://etijucas.com.br/')
        monkeypatch.setenv('CORS_ORIGINS', 'https://a.example.com, https://b.example.com')

        cors = configure_cors(Flask(__name__))

        assert cors.allowed_origins == [
            'https://etijucas.com.br',
            'https://a.example.com',
            'https://b.example.com'
        ]


class TestRateLimiter:
    """Test rate limiting functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.app = Flask(__name__)
        self.redis_service = Mock()
        self.redis_service.is_available.return_value = True
        self.app.redis_service = self.redis_service
        self.app.hal_formatter = HalFormatter("https://api.example.com")

        @self.app.route('/limited', methods=['POST'])
        @rate_limit(3, 60, endpoint="limited")
        def limited():
            return jsonify({"ok": True})

        self.client = self.app.test_client()

    def test_client_identifier_hashes_ip(self):
        """Test IP addresses are not stored in keys."""
        limiter = RateLimiter(self.redis_service, self.app.hal_formatter)

        with self.app.test_request_context('/', environ_base={'REMOTE_ADDR': '203.0.113.9'}):
            identifier = limiter.get_client_identifier()

        assert identifier.startswith('ip:')
        assert '203.0.113.9' not in identifier
        assert len(identifier) == 35

    def test_client_identifier_ignores_forwarded_for(self):
        """Test a client cannot pick its own bucket through X-Forwarded-For."""
        limiter = RateLimiter(self.redis_service, self.app.hal_formatter)
        identifiers = set()

        for i in range(3):
            with self.app.test_request_context(
                '/',
                headers={'X-Forwarded-For': f'10.0.0.{i}'},
                environ_base={'REMOTE_ADDR': '203.0.113.9'}
            ):
                identifiers.add(limiter.get_client_identifier())

        assert len(identifiers) == 1

    def test_rotating_forwarded_for_shares_counter(self):
        """Test requests with different X-Forwarded-For values hit one counter."""
        self.redis_service.incr_window.side_effect = [1, 2, 3, 4]

        statuses = [
            self.client.post('/limited', headers={'X-Forwarded-For': f'198.51.100.{i}'}).status_code
            for i in range(4)
        ]

        assert statuses == [200, 200, 200, 429]
        keys = {call[0][0] for call in self.redis_service.incr_window.call_args_list}
        assert len(keys) == 1

    def test_user_identifier(self):
        """Test per-user identifiers."""
        limiter = RateLimiter(self.redis_service, self.app.hal_formatter)
        assert limiter.get_client_identifier(Mock(user_id="u1")) == "user:u1"

    def test_rate_limit_key_includes_window(self):
        """Test keys roll over with the window."""
        limiter = RateLimiter(self.redis_service, self.app.hal_formatter)
        key = limiter.get_rate_limit_key("ip:abc", "limited", 60)

        assert key.startswith("rate_limit:ip:abc:limited:")

    def test_within_limit(self):
        """Test requests under the limit pass with headers."""
        self.redis_service.incr_window.return_value = 1

        response = self.client.post('/limited')

        assert response.status_code == 200
        assert response.headers['X-RateLimit-Limit'] == '3'
        assert response.headers['X-RateLimit-Remaining'] == '2'
        key, window = self.redis_service.incr_window.call_args[0]
        assert ':limited:' in key
        assert window == 60

    def test_over_limit(self):
        """Test requests over the limit are rejected."""
        self.redis_service.incr_window.return_value = 4

        response = self.client.post('/limited')

        assert response.status_code == 429
        data = response.get_json()
        assert data['code'] == 'RATE_LIMITED'
        assert data['retryAfter'] >= 1
        assert response.headers['Retry-After'] == str(data['retryAfter'])

    def test_fails_open_when_counter_unavailable(self):
        """Test a missing count lets the request through."""
        self.redis_service.incr_window.return_value = None

        assert self.client.post('/limited').status_code == 200

    def test_skipped_without_redis(self):
        """Test limiting is skipped when Redis is down."""
        self.redis_service.is_available.return_value = False

        response = self.client.post('/limited')

        assert response.status_code == 200
        self.redis_service.incr_window.assert_not_called()


class TestAuthMiddleware:
    """Test JWT authentication middleware."""

    def setup_method(self):
        """Set up test fixtures."""
        self.app = Flask(__name__)
        self.app.auth_service = Mock()
        self.app.redis_service = None

        @self.app.route('/protected')
        @require_auth
        def protected(user_context):
            return jsonify({"user_id": user_context.user_id, "phone": user_context.phone})

        self.client = self.app.test_client()

    def test_extract_token(self):
        """Test Bearer token extraction."""
        middleware = AuthMiddleware(Mock())

        with self.app.test_request_context('/', headers={'Authorization': 'Bearer abc'}):
            assert middleware.extract_token_from_request() == 'abc'
        with self.app.test_request_context('/', headers={'Authorization': 'Basic abc'}):
            assert middleware.extract_token_from_request() is None

    def test_missing_token(self):
        """Test requests without a token are rejected."""
        response = self.client.get('/protected')

        assert response.status_code == 401
        assert response.get_json()['type'].endswith('/authentication-required')

    def test_valid_token(self):
        """Test the view receives the user context."""
        self.app.auth_service.validate_token.return_value = {
            "sub": "u1",
            "phone": "48999991234",
            "jti": "j1",
            "type": "access"
        }

        response = self.client.get('/protected', headers={'Authorization': 'Bearer good'})

        assert response.status_code == 200
        assert response.get_json() == {"user_id": "u1", "phone": "48999991234"}
        self.app.auth_service.validate_token.assert_called_once_with('good', 'access')

    def test_blocked_token(self):
        """Test revoked tokens are rejected."""
        self.app.auth_service.validate_token.return_value = {"sub": "u1", "jti": "j1"}
        self.app.redis_service = Mock()
        self.app.redis_service.is_token_blocked.return_value = True

        response = self.client.get('/protected', headers={'Authorization': 'Bearer revoked'})

        assert response.status_code == 401
        self.app.redis_service.is_token_blocked.assert_called_once_with("j1")

    @pytest.mark.parametrize("header", ["Bearer ", "Token abc"])
    def test_malformed_header(self, header):
        """Test malformed Authorization headers."""
        response = self.client.get('/protected', headers={'Authorization': header})
        assert response.status_code == 401
