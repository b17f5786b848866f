"""
Health Check Service

Provides health monitoring for the dependencies of the auth API (MongoDB,
Redis, the OTP session store) and basic system metrics.
"""

import os
import time
import psutil
from typing import Dict, Any, Optional
from opentelemetry import trace
from pymongo.errors import PyMongoError

from models.base import utc_now
from services.mongodb import MongoDBService
from services.otp_store import OtpSessionStore, InMemoryOtpSessionStore
from services.redis import RedisService

tracer = trace.get_tracer(__name__)


def _timestamp() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


class HealthCheckService:
    """Service for system health monitoring."""

    def __init__(self, mongodb_service: Optional[MongoDBService], redis_service: Optional[RedisService],
                 otp_store: Optional[OtpSessionStore] = None):
        self.mongodb_service = mongodb_service
        self.redis_service = redis_service
        self.otp_store = otp_store
        self.service_version = "1.0.0"

    def get_comprehensive_health(self) -> Dict[str, Any]:
        """Get health status including all dependencies and metrics."""
        with tracer.start_as_current_span("health.comprehensive_check") as span:
            start_time = time.time()

            mongodb_health = self._check_mongodb_health()
            redis_health = self._check_redis_health()

            overall_status = self._determine_overall_status([
                mongodb_health["status"],
                redis_health["status"]
            ])

            response_time_ms = round((time.time() - start_time) * 1000, 2)

            health_data = {
                "status": overall_status,
                "service": "etijucas-auth-api",
                "version": self.service_version,
                "environment": os.getenv('ENVIRONMENT', 'development'),
                "timestamp": _timestamp(),
                "response_time_ms": response_time_ms,
                "dependencies": {
                    "mongodb": mongodb_health,
                    "redis": redis_health
                },
                "otp_store": self._describe_otp_store(),
                "system_metrics": self._get_system_metrics(),
                "configuration": self._get_configuration_status()
            }

            span.set_attributes({
                "health.overall_status": overall_status,
                "health.response_time_ms": response_time_ms,
                "health.mongodb_status": mongodb_health["status"],
                "health.redis_status": redis_health["status"]
            })

            return health_data

    def _check_mongodb_health(self) -> Dict[str, Any]:
        """Check MongoDB connectivity and performance."""
        if self.mongodb_service is None:
            return {"status": "disabled", "last_check": _timestamp()}

        with tracer.start_as_current_span("health.mongodb_check") as span:
            try:
                start_time = time.time()

                self.mongodb_service.client.admin.command('ping')
                server_info = self.mongodb_service.client.server_info()

                response_time = round((time.time() - start_time) * 1000, 2)

                span.set_attributes({
                    "mongodb.status": "healthy",
                    "mongodb.response_time_ms": response_time
                })

                return {
                    "status": "healthy",
                    "response_time_ms": response_time,
                    "version": server_info.get("version", "unknown"),
                    "last_check": _timestamp()
                }

            except PyMongoError as e:
                span.set_attribute("mongodb.status", "unhealthy")
                span.record_exception(e)

                return {
                    "status": "unhealthy",
                    "error": str(e),
                    "last_check": _timestamp()
                }

    def _check_redis_health(self) -> Dict[str, Any]:
        """Check Redis connectivity and performance."""
        if self.redis_service is None or not self.redis_service.is_available():
            return {"status": "disabled", "last_check": _timestamp()}

        with tracer.start_as_current_span("health.redis_check") as span:
            start_time = time.time()

            test_key = "health_check_test"
            test_value = f"test_{int(time.time())}"

            error = None
            if not self.redis_service.ping():
                error = "Redis ping failed"
            else:
                self.redis_service.set_with_ttl(test_key, test_value, 10)
                retrieved_value = self.redis_service.get(test_key)
                self.redis_service.delete(test_key)
                if retrieved_value != test_value:
                    error = "Redis set/get test failed"

            if error:
                span.set_attribute("redis.status", "unhealthy")
                return {
                    "status": "unhealthy",
                    "error": error,
                    "last_check": _timestamp()
                }

            response_time = round((time.time() - start_time) * 1000, 2)
            redis_info = self.redis_service.get_info()

            health_info = {
                "status": "healthy",
                "response_time_ms": response_time,
                "version": redis_info.get("redis_version", "unknown"),
                "memory_usage_mb": round(redis_info.get("used_memory", 0) / 1024 / 1024, 2),
                "connected_clients": redis_info.get("connected_clients", 0),
                "last_check": _timestamp()
            }

            span.set_attributes({
                "redis.status": "healthy",
                "redis.response_time_ms": response_time,
                "redis.memory_usage_mb": health_info["memory_usage_mb"]
            })

            return health_info

    def _describe_otp_store(self) -> Dict[str, Any]:
        if self.otp_store is None:
            return {"backend": "none"}
        if isinstance(self.otp_store, InMemoryOtpSessionStore):
            return {"backend": "memory", "sessions": len(self.otp_store)}
        return {"backend": "redis"}

    def _get_system_metrics(self) -> Dict[str, Any]:
        """Get basic system performance metrics."""
        cpu_percent = psutil.cpu_percent(interval=None)

        memory = psutil.virtual_memory()

        return {
            "cpu_percent": cpu_percent,
            "memory": {
                "used_mb": round(memory.used / 1024 / 1024, 2),
                "total_mb": round(memory.total / 1024 / 1024, 2),
                "percent": memory.percent
            },
            "load_average": list(os.getloadavg()) if hasattr(os, 'getloadavg') else None
        }

    def _get_configuration_status(self) -> Dict[str, Any]:
        """Get configuration validation status."""
        return {
            "mongodb_uri_configured": bool(os.getenv('MONGODB_URI')),
            "redis_configured": bool(os.getenv('REDIS_URL')),
            "jwt_keys_configured": bool(os.getenv('JWT_PRIVATE_KEY') and os.getenv('JWT_PUBLIC_KEY')),
            "whatsapp_configured": bool(os.getenv('ZAPI_INSTANCE_ID') and os.getenv('ZAPI_TOKEN')),
            "environment": os.getenv('ENVIRONMENT', 'development')
        }

    def _determine_overall_status(self, dependency_statuses: list) -> str:
        """Determine overall system status based on dependency health."""
        enabled = [status for status in dependency_statuses if status != "disabled"]
        if all(status == "healthy" for status in enabled):
            return "healthy"
        elif any(status == "healthy" for status in enabled):
            return "degraded"
        else:
            return "unhealthy"
