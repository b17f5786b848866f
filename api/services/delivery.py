# SPDX-License-Identifier: Apache-2.0

"""
OTP delivery over WhatsApp.

Gateways send one message carrying the code and the magic link. A gateway
either delivers or raises DeliveryFailed; it never retries on its own. The
Z-API gateway sends a button message and falls back to plain text when the
button endpoint rejects it.
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from opentelemetry import trace

from domain.phone import mask_phone, to_international

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class DeliveryFailed(Exception):
    """Raised when a code could not be handed to the messaging provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def format_otp_message(code: str, ttl_minutes: int = 5) -> str:
    """Plain-text OTP message."""
    return (
        "🔐 *eTijucas - Código de Verificação*\n\n"
        f"Seu código é: *{code}*\n\n"
        f"⏱️ Este código expira em {ttl_minutes} minutos.\n\n"
        "_Se você não solicitou este código, ignore esta mensagem._"
    )


def format_otp_button_message(code: str, ttl_minutes: int = 5) -> str:
    """Message body used alongside the action buttons."""
    return (
        f"🔐 Seu código de acesso ao eTijucas é: *{code}*\n\n"
        f"Ele expira em {ttl_minutes} minutos.\n"
        "Se você não solicitou, ignore."
    )


class OtpDeliveryGateway(ABC):
    """Sends OTP codes to a phone."""

    @abstractmethod
    def send(self, phone: str, code: str, magic_link_url: Optional[str] = None) -> None:
        """
        Deliver a code to a normalized phone.

        Args:
            phone: Normalized phone (10-11 digits)
            code: Clear OTP code
            magic_link_url: Link that resumes the login on the same session

        Raises:
            DeliveryFailed: If the provider did not accept the message
        """


class ConsoleDeliveryGateway(OtpDeliveryGateway):
    """Development gateway that logs messages instead of sending them."""

    def __init__(self, ttl_minutes: int = 5):
        self.ttl_minutes = ttl_minutes

    def send(self, phone: str, code: str, magic_link_url: Optional[str] = None) -> None:
        logger.info("WhatsApp [DEV MODE]: OTP message logged", extra={
            "phone": to_international(phone),
            "code": code,
            "magic_link_url": magic_link_url,
            "whatsapp_message": format_otp_button_message(code, self.ttl_minutes)
        })


@dataclass
class ZApiConfig:
    """Z-API WhatsApp connection settings."""
    instance_id: str
    token: str
    client_token: str = ""
    base_url: str = "https://api.z-api.io"
    timeout_seconds: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(self.instance_id and self.token)


def load_zapi_config() -> ZApiConfig:
    """
    Build Z-API configuration from environment variables.

    Returns:
        ZApiConfig: Configuration, possibly without credentials
    """
    return ZApiConfig(
        instance_id=os.getenv('ZAPI_INSTANCE_ID', ''),
        token=os.getenv('ZAPI_TOKEN', ''),
        client_token=os.getenv('ZAPI_CLIENT_TOKEN', ''),
        base_url=os.getenv('ZAPI_BASE_URL', 'https://api.z-api.io'),
        timeout_seconds=float(os.getenv('ZAPI_TIMEOUT_SECONDS', '10'))
    )


class ZApiWhatsAppGateway(OtpDeliveryGateway):
    """WhatsApp delivery through the Z-API HTTP API."""

    def __init__(self, config: ZApiConfig, ttl_minutes: int = 5, session: Optional[requests.Session] = None):
        self.config = config
        self.ttl_minutes = ttl_minutes
        self.http = session or requests.Session()

    def _url(self, endpoint: str) -> str:
        return f"{self.config.base_url}/instances/{self.config.instance_id}/token/{self.config.token}/{endpoint}"

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> requests.Response:
        return self.http.post(
            self._url(endpoint),
            json=payload,
            headers={
                "Client-Token": self.config.client_token,
                "Content-Type": "application/json"
            },
            timeout=self.config.timeout_seconds
        )

    def _button_payload(self, phone: str, code: str, magic_link_url: str) -> Dict[str, Any]:
        copy_code_url = f"https://www.whatsapp.com/otp/code/?otp_type=COPY_CODE&code={code}"
        return {
            "phone": to_international(phone),
            "message": format_otp_button_message(code, self.ttl_minutes),
            "title": "Acesso rápido",
            "footer": "Não compartilhe este código.",
            "buttonActions": [
                {"id": "1", "type": "URL", "url": magic_link_url, "label": "Abrir eTijucas"},
                {"id": "2", "type": "URL", "url": copy_code_url, "label": "Copiar código"}
            ]
        }

    def send(self, phone: str, code: str, magic_link_url: Optional[str] = None) -> None:
        with tracer.start_as_current_span("whatsapp.send_otp") as span:
            span.set_attributes({
                "whatsapp.provider": "zapi",
                "whatsapp.with_buttons": magic_link_url is not None
            })

            if magic_link_url:
                try:
                    response = self._post("send-button-actions", self._button_payload(phone, code, magic_link_url))
                    if response.ok:
                        self._log_sent(phone, response, "send-button-actions")
                        return
                    logger.warning("Z-API: button message rejected, falling back to text", extra={
                        "phone": mask_phone(phone),
                        "status_code": response.status_code
                    })
                except requests.ConnectionError as e:
                    # Never reached the provider, text is safe to try
                    logger.warning(f"Z-API: button message failed, falling back to text: {str(e)}", extra={
                        "phone": mask_phone(phone)
                    })
                except requests.RequestException as e:
                    # The provider may have delivered, a text fallback would send the code twice
                    span.set_attribute("whatsapp.result", "unknown")
                    logger.error(f"Z-API: button message outcome unknown: {str(e)}", extra={
                        "phone": mask_phone(phone)
                    })
                    raise DeliveryFailed(f"WhatsApp provider did not answer: {str(e)}")

            try:
                response = self._post("send-text", {
                    "phone": to_international(phone),
                    "message": format_otp_message(code, self.ttl_minutes)
                })
            except requests.RequestException as e:
                span.set_attribute("whatsapp.result", "error")
                logger.error(f"Z-API: exception while sending OTP: {str(e)}", extra={"phone": mask_phone(phone)})
                raise DeliveryFailed(f"WhatsApp provider unreachable: {str(e)}")

            if not response.ok:
                span.set_attribute("whatsapp.result", "rejected")
                logger.error("Z-API: failed to send OTP", extra={
                    "phone": mask_phone(phone),
                    "status_code": response.status_code,
                    "response": response.text[:500]
                })
                raise DeliveryFailed("WhatsApp provider rejected the message", status_code=response.status_code)

            span.set_attribute("whatsapp.result", "sent")
            self._log_sent(phone, response, "send-text")

    def _log_sent(self, phone: str, response: requests.Response, endpoint: str) -> None:
        try:
            data = response.json()
        except ValueError:
            data = {}
        logger.info("Z-API: OTP sent successfully", extra={
            "phone": mask_phone(phone),
            "endpoint": endpoint,
            "zaap_id": data.get("zaapId"),
            "message_id": data.get("messageId")
        })


def create_delivery_gateway(ttl_seconds: int = 300, config: Optional[ZApiConfig] = None) -> OtpDeliveryGateway:
    """
    Factory function to create the delivery gateway.

    Z-API is used when credentials are configured, the console gateway otherwise.

    Args:
        ttl_seconds: Code lifetime, quoted in the message
        config: Z-API configuration (read from environment if omitted)

    Returns:
        OtpDeliveryGateway instance
    """
    config = config or load_zapi_config()
    ttl_minutes = max(1, ttl_seconds // 60)
    if config.is_configured:
        logger.info("Using Z-API WhatsApp delivery gateway")
        return ZApiWhatsAppGateway(config, ttl_minutes)
    logger.warning("Z-API credentials not configured, OTP codes will be logged to console")
    return ConsoleDeliveryGateway(ttl_minutes)
