"""
Fixtures for acceptance tests.

The application is built with its in-memory backends; WhatsApp messages are
captured instead of sent and time is advanced explicitly.
"""

import os
import pytest
from datetime import datetime, timedelta, timezone

os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('OTEL_ENABLED', 'false')

from config import OtpConfig
from services.auth import AuthService
from services.delivery import OtpDeliveryGateway


class CapturedMessages(OtpDeliveryGateway):
    """WhatsApp stand-in that keeps every message."""

    def __init__(self):
        self.messages = []

    def send(self, phone, code, magic_link_url=None):
        self.messages.append({"phone": phone, "code": code, "link": magic_link_url})

    def last_for(self, phone):
        return [message for message in self.messages if message["phone"] == phone][-1]


class SteppedClock:
    """Clock that only moves when told to."""

    def __init__(self):
        self.now = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def whatsapp():
    return CapturedMessages()


@pytest.fixture
def clock():
    return SteppedClock()


@pytest.fixture
def acceptance_client(whatsapp, clock):
    """Test client for an app wired like a single-instance deployment."""
    from app import create_app

    private_key, public_key = AuthService.generate_key_pair()
    app = create_app(
        {
            'TESTING': True,
            'OTP_SWEEPER_ENABLED': False,
            'REDIS_URL': None,
            'MONGODB_URI': None
        },
        otp_config=OtpConfig(hash_rounds=4, frontend_url="https://etijucas.test"),
        clock=clock,
        delivery_gateway=whatsapp,
        auth_service=AuthService(private_key, public_key)
    )
    return app.test_client()
