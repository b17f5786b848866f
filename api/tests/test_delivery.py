# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Unit tests for WhatsApp OTP delivery.
"""

import pytest
from unittest.mock import Mock

import requests

from services.delivery import (
    ConsoleDeliveryGateway,
    DeliveryFailed,
    ZApiConfig,
    ZApiWhatsAppGateway,
    create_delivery_gateway,
    format_otp_message
)

PHONE = "48999991234"
LINK = "https://app.etijucas.test/login/otp?token=abc"


def make_response(ok=True, status_code=200, payload=None):
    response = Mock()
    response.ok = ok
    response.status_code = status_code
    response.text = "error body"
    response.json.return_value = payload or {"zaapId": "z1", "messageId": "m1"}
    return response


@pytest.fixture
def zapi_config():
    return ZApiConfig(instance_id="inst", token="tok", client_token="client", base_url="https://zapi.test")


@pytest.fixture
def http():
    return Mock()


@pytest.fixture
def gateway(zapi_config, http):
    return ZApiWhatsAppGateway(zapi_config, ttl_minutes=5, session=http)


class TestZApiWhatsAppGateway:
    """Test the Z-API gateway against a mocked HTTP session."""

    def test_button_message_sent(self, gateway, http):
        http.post.return_value = make_response()

        gateway.send(PHONE, "123456", LINK)

        assert http.post.call_count == 1
        args, kwargs = http.post.call_args
        assert args[0] == "https://zapi.test/instances/inst/token/tok/send-button-actions"
        assert kwargs["headers"]["Client-Token"] == "client"
        assert kwargs["timeout"] == 10.0
        payload = kwargs["json"]
        assert payload["phone"] == "5548999991234"
        assert "*123456*" in payload["message"]
        assert payload["buttonActions"][0]["url"] == LINK
        assert payload["buttonActions"][1]["url"].endswith("code=123456")

    def test_rejected_buttons_fall_back_to_text(self, gateway, http):
        http.post.side_effect = [make_response(ok=False, status_code=400), make_response()]

        gateway.send(PHONE, "123456", LINK)

        assert http.post.call_count == 2
        args, kwargs = http.post.call_args
        assert args[0].endswith("/send-text")
        assert kwargs["json"]["message"] == format_otp_message("123456", 5)

    def test_button_exception_falls_back_to_text(self, gateway, http):
        http.post.side_effect = [requests.ConnectionError("reset"), make_response()]

        gateway.send(PHONE, "123456", LINK)

        assert http.post.call_args[0][0].endswith("/send-text")

    def test_without_link_sends_text_only(self, gateway, http):
        http.post.return_value = make_response()

        gateway.send(PHONE, "123456")

        assert http.post.call_count == 1
        assert http.post.call_args[0][0].endswith("/send-text")

    def test_rejected_text_raises(self, gateway, http):
        http.post.return_value = make_response(ok=False, status_code=401)

        with pytest.raises(DeliveryFailed) as exc_info:
            gateway.send(PHONE, "123456")
        assert exc_info.value.status_code == 401

    def test_unreachable_provider_raises(self, gateway, http):
        http.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(DeliveryFailed):
            gateway.send(PHONE, "123456", LINK)
        assert http.post.call_count == 2

    def test_button_read_timeout_does_not_resend_as_text(self, gateway, http):
        http.post.side_effect = [requests.ReadTimeout("slow"), make_response()]

        with pytest.raises(DeliveryFailed):
            gateway.send(PHONE, "123456", LINK)

        assert http.post.call_count == 1
        assert http.post.call_args[0][0].endswith("/send-button-actions")

    def test_button_connect_timeout_falls_back_to_text(self, gateway, http):
        http.post.side_effect = [requests.ConnectTimeout("no route"), make_response()]

        gateway.send(PHONE, "123456", LINK)

        assert http.post.call_args[0][0].endswith("/send-text")

    def test_unparseable_success_body(self, gateway, http):
        response = make_response()
        response.json.side_effect = ValueError("not json")
        http.post.return_value = response

        gateway.send(PHONE, "123456")


class TestGatewayFactory:
    """Test gateway selection."""

    def test_console_without_credentials(self):
        gateway = create_delivery_gateway(300, ZApiConfig(instance_id="", token=""))
        assert isinstance(gateway, ConsoleDeliveryGateway)
        assert gateway.ttl_minutes == 5

    def test_zapi_with_credentials(self, zapi_config):
        gateway = create_delivery_gateway(600, zapi_config)
        assert isinstance(gateway, ZApiWhatsAppGateway)
        assert gateway.ttl_minutes == 10

    def test_console_gateway_never_raises(self):
        ConsoleDeliveryGateway().send(PHONE, "123456", LINK)

    def test_config_from_environment(self, monkeypatch):
        from services.delivery import load_zapi_config

        monkeypatch.setenv("ZAPI_INSTANCE_ID", "i")
        monkeypatch.setenv("ZAPI_TOKEN", "t")
        monkeypatch.setenv("ZAPI_TIMEOUT_SECONDS", "3")

        config = load_zapi_config()

        assert config.is_configured
        assert config.timeout_seconds == 3.0
