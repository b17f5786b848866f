# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Pytest configuration and fixtures.
"""

import os
import pytest
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

# Set test environment
os.environ['ENVIRONMENT'] = 'test'
os.environ['OTEL_ENABLED'] = 'false'
os.environ['MONGODB_DATABASE'] = 'etijucas_test'

from config import OtpConfig
from services.audit import AuthAuditService
from services.auth import AuthService
from services.delivery import DeliveryFailed, OtpDeliveryGateway
from services.magic_link import MagicLinkResolver
from services.otp_flow import OtpFlowController
from services.otp_store import InMemoryOtpSessionStore
from services.session_issuer import SessionIssuer
from services.users import InMemoryUserRepository

PHONE = "48999991234"


class FakeClock:
    """Controllable time source for the OTP store."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingGateway(OtpDeliveryGateway):
    """Delivery gateway that keeps sent messages in memory."""

    def __init__(self):
        self.sent: List[Tuple[str, str, Optional[str]]] = []
        self.fail = False

    def send(self, phone: str, code: str, magic_link_url: Optional[str] = None) -> None:
        if self.fail:
            raise DeliveryFailed("provider down", status_code=500)
        self.sent.append((phone, code, magic_link_url))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]

    @property
    def last_link(self) -> Optional[str]:
        return self.sent[-1][2]

    @property
    def last_token(self) -> str:
        return self.last_link.split("token=", 1)[1]


@pytest.fixture
def clock():
    """Fixed clock advanced explicitly by tests."""
    return FakeClock()


@pytest.fixture
def otp_config():
    """OTP settings with the production limits and a cheap bcrypt cost."""
    return OtpConfig(
        ttl_seconds=300,
        cooldown_seconds=30,
        max_attempts=5,
        code_length=6,
        hash_rounds=4,
        frontend_url="https://app.etijucas.test"
    )


@pytest.fixture
def store(otp_config, clock):
    """In-memory OTP session store on the fake clock."""
    return InMemoryOtpSessionStore(otp_config, clock)


@pytest.fixture
def gateway():
    """Recording delivery gateway."""
    return RecordingGateway()


@pytest.fixture
def users():
    """In-memory user repository."""
    return InMemoryUserRepository()


@pytest.fixture(scope="session")
def auth_service():
    """JWT service with one key pair for the whole run."""
    private_key, public_key = AuthService.generate_key_pair()
    return AuthService(private_key, public_key)


@pytest.fixture
def audit():
    """Audit service that only logs."""
    return AuthAuditService()


@pytest.fixture
def issuer(store, users, auth_service):
    return SessionIssuer(store, users, auth_service)


@pytest.fixture
def magic_links(store, otp_config):
    return MagicLinkResolver(store, otp_config.frontend_url)


@pytest.fixture
def flow(store, gateway, issuer, magic_links, users, audit):
    """Flow controller wired to in-memory collaborators."""
    return OtpFlowController(store, gateway, issuer, magic_links, users, audit)


@pytest.fixture
def app(otp_config, clock, store, gateway, users, auth_service, audit):
    """Flask application with in-memory services."""
    from app import create_app

    application = create_app(
        {
            'TESTING': True,
            'OTP_SWEEPER_ENABLED': False,
            'REDIS_URL': None,
            'MONGODB_URI': None,
            'BASE_URL': 'http://localhost:5000'
        },
        otp_config=otp_config,
        clock=clock,
        otp_store=store,
        delivery_gateway=gateway,
        user_repository=users,
        auth_service=auth_service,
        audit_service=audit
    )
    return application


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def login(client, gateway):
    """Run request + verify for a phone and return the verify response JSON."""
    def _login(phone: str = PHONE):
        response = client.post('/api/v1/auth/otp/request', json={"phone": phone})
        assert response.status_code == 200, response.get_json()
        sid = response.get_json()["sid"]
        response = client.post('/api/v1/auth/otp/verify', json={"sid": sid, "code": gateway.last_code})
        assert response.status_code == 200, response.get_json()
        return response.get_json()
    return _login
