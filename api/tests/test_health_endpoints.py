"""
Tests for health check endpoints.

This module tests the health monitoring functionality including
dependency checks, the OTP store summary and status reporting.
"""

import pytest
from unittest.mock import Mock
from pymongo.errors import ServerSelectionTimeoutError

from services.health import HealthCheckService


@pytest.fixture
def mongodb_service():
    service = Mock()
    service.client.admin.command.return_value = {"ok": 1}
    service.client.server_info.return_value = {"version": "7.0.2"}
    return service


@pytest.fixture
def redis_service():
    service = Mock()
    service.is_available.return_value = True
    service.ping.return_value = True
    stored = {}
    service.set_with_ttl.side_effect = lambda key, value, ttl: stored.__setitem__(key, value) or True
    service.get.side_effect = stored.get
    service.get_info.return_value = {"redis_version": "7.2.0", "used_memory": 2097152, "connected_clients": 3}
    return service


class TestHealthCheckEndpoint:
    """Test cases for the /api/healthz endpoint."""

    def test_health_without_external_dependencies(self, client):
        """Test health when MongoDB and Redis are not configured."""
        response = client.get('/api/healthz')

        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'healthy'
        assert data['service'] == 'etijucas-auth-api'
        assert data['dependencies']['mongodb']['status'] == 'disabled'
        assert data['dependencies']['redis']['status'] == 'disabled'
        assert data['otp_store'] == {'backend': 'memory', 'sessions': 0}
        assert 'self' in data['_links']

    def test_health_counts_sessions(self, client):
        """Test the in-memory store reports its size."""
        client.post('/api/v1/auth/otp/request', json={"phone": "48999991234"})

        data = client.get('/api/healthz').get_json()

        assert data['otp_store']['sessions'] == 1


class TestHealthCheckService:
    """Test dependency checks."""

    def test_all_healthy(self, mongodb_service, redis_service):
        """Test both dependencies healthy."""
        health = HealthCheckService(mongodb_service, redis_service).get_comprehensive_health()

        assert health['status'] == 'healthy'
        assert health['dependencies']['mongodb']['version'] == '7.0.2'
        assert health['dependencies']['redis']['memory_usage_mb'] == 2.0
        assert health['otp_store'] == {'backend': 'none'}

    def test_mongodb_down_is_degraded(self, mongodb_service, redis_service):
        """Test one failing dependency degrades the service."""
        mongodb_service.client.admin.command.side_effect = ServerSelectionTimeoutError("timeout")

        health = HealthCheckService(mongodb_service, redis_service).get_comprehensive_health()

        assert health['status'] == 'degraded'
        assert health['dependencies']['mongodb']['status'] == 'unhealthy'
        assert 'timeout' in health['dependencies']['mongodb']['error']

    def test_everything_down_is_unhealthy(self, mongodb_service, redis_service):
        """Test all failing dependencies make the service unhealthy."""
        mongodb_service.client.admin.command.side_effect = ServerSelectionTimeoutError("timeout")
        redis_service.ping.return_value = False

        health = HealthCheckService(mongodb_service, redis_service).get_comprehensive_health()

        assert health['status'] == 'unhealthy'
        assert health['dependencies']['redis']['error'] == 'Redis ping failed'

    def test_redis_store_backend(self):
        """Test a non-memory store is reported as redis."""
        health = HealthCheckService(None, None, Mock()).get_comprehensive_health()
        assert health['otp_store'] == {'backend': 'redis'}

    def test_unhealthy_endpoint_returns_503(self, app, mongodb_service):
        """Test the endpoint status code follows overall health."""
        mongodb_service.client.admin.command.side_effect = ServerSelectionTimeoutError("timeout")
        app.health_service.mongodb_service = mongodb_service

        response = app.test_client().get('/api/healthz')

        assert response.status_code == 503
        assert response.get_json()['status'] == 'unhealthy'
