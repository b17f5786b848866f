# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
HAL (Hypertext Application Language) response formatting utilities.
Adds affordance links for the next step of the login flow and formats
RFC 7807 problem documents for errors.
"""

from typing import Dict, List, Any, Optional
from urllib.parse import urljoin

from domain.errors import AuthError
from models.enums import NextStep
from models.responses import HalLink

AUTH_PREFIX = "/api/v1/auth"
PROBLEM_BASE_URL = "https://api.etijucas.com.br/problems"

_ERROR_TITLES = {
    400: "Bad Request",
    401: "Authentication Required",
    404: "Resource Not Found",
    409: "Resource Conflict",
    410: "Gone",
    422: "Validation Error",
    429: "Too Many Requests",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


class HalLinkBuilder:
    """Builder for HAL links with proper URL construction."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip('/') + '/'

    def build_link(
        self,
        path: str,
        method: str = "GET",
        content_type: Optional[str] = None,
        title: Optional[str] = None,
        templated: bool = False
    ) -> HalLink:
        """Build a HAL link with proper URL construction."""
        href = urljoin(self.base_url, path.lstrip('/'))

        return HalLink(
            href=href,
            method=method,
            type=content_type,
            title=title,
            templated=templated or None
        )

    def build_self_link(self, resource_path: str) -> HalLink:
        """Build self link for a resource."""
        return self.build_link(resource_path, title="Self")

    def build_action_link(self, path: str, title: str, method: str = "POST") -> HalLink:
        """Build action link for a flow step."""
        return self.build_link(path, method=method, content_type="application/json", title=title)


class AffordanceLinkBuilder:
    """Builds the links a client may follow from each step of the login flow."""

    def __init__(self, base_url: str):
        self.link_builder = HalLinkBuilder(base_url)

    def build_flow_affordances(self, next_step: str, sid: Optional[str] = None) -> Dict[str, HalLink]:
        """
        Links for the step the client should show next.

        Args:
            next_step: NextStep value
            sid: Current OTP session, if any

        Returns:
            Mapping of relation name to link
        """
        links: Dict[str, HalLink] = {}
        build = self.link_builder.build_action_link

        if next_step == NextStep.PHONE:
            links['request-otp'] = build(f"{AUTH_PREFIX}/otp/request", "Solicitar código")
        elif next_step == NextStep.OTP_VERIFY:
            links['verify'] = build(f"{AUTH_PREFIX}/otp/verify", "Verificar código")
            links['resend'] = build(f"{AUTH_PREFIX}/otp/resend", "Reenviar código")
            links['restart'] = build(f"{AUTH_PREFIX}/otp/restart", "Trocar número")
            if sid:
                links['session'] = self.link_builder.build_link(
                    f"{AUTH_PREFIX}/otp/session/{sid}", title="Sessão"
                )
        elif next_step == NextStep.ONBOARDING:
            links['complete-profile'] = build(f"{AUTH_PREFIX}/profile/complete", "Completar perfil")
            links['me'] = self.link_builder.build_link(f"{AUTH_PREFIX}/me", title="Usuário atual")
        elif next_step == NextStep.HOME:
            links['me'] = self.link_builder.build_link(f"{AUTH_PREFIX}/me", title="Usuário atual")
            links['logout'] = build(f"{AUTH_PREFIX}/logout", "Sair")

        return links


class HalResponseBuilder:
    """Main HAL response builder."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip('/')
        self.link_builder = HalLinkBuilder(base_url)
        self.affordance_builder = AffordanceLinkBuilder(base_url)

    def build_resource_response(
        self,
        data: Dict[str, Any],
        self_path: str,
        next_step: Optional[str] = None,
        sid: Optional[str] = None
    ) -> Dict[str, Any]:
        """Build a HAL resource response with affordance links for the next step."""
        response = dict(data)

        links = {'self': self.link_builder.build_self_link(self_path)}
        if next_step:
            links.update(self.affordance_builder.build_flow_affordances(next_step, sid))

        response['_links'] = {rel: link.model_dump(exclude_none=True) for rel, link in links.items()}
        return response

    def build_error_response(
        self,
        error_type: str,
        title: str,
        status: int,
        detail: str,
        instance: str,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        extra: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Build RFC 7807 compliant error response with HAL links."""
        error_response = {
            'type': f"{PROBLEM_BASE_URL}/{error_type}",
            'title': title,
            'status': status,
            'detail': detail,
            'instance': instance
        }

        if validation_errors:
            error_response['errors'] = validation_errors

        if extra:
            error_response.update(extra)

        links = {
            'help': self.link_builder.build_link(
                f"/docs/errors#{error_type}",
                title="Error documentation"
            )
        }

        if error_type == "validation-error":
            links['schema'] = self.link_builder.build_link("/openapi/openapi.json", title="API schema")
        elif error_type == "authentication-required":
            links['login'] = self.link_builder.build_action_link(f"{AUTH_PREFIX}/otp/request", "Login")

        error_response['_links'] = {rel: link.model_dump(exclude_none=True) for rel, link in links.items()}
        return error_response


class HalFormatter:
    """High-level HAL formatter with convenience methods."""

    def __init__(self, base_url: str):
        self.builder = HalResponseBuilder(base_url)

    def format_flow_response(self, data: Dict[str, Any], self_path: str) -> Dict[str, Any]:
        """Format a camelCase flow payload, linking its nextStep."""
        return self.builder.build_resource_response(
            data,
            self_path,
            next_step=data.get('nextStep'),
            sid=data.get('sid')
        )

    def format_auth_error(self, error: AuthError, instance: str) -> Dict[str, Any]:
        """Format a flow error, keeping its code and message for the client."""
        status = error.http_status
        return self.builder.build_error_response(
            error.code.value.lower().replace('_', '-'),
            _ERROR_TITLES.get(status, "Error"),
            status,
            error.message,
            instance,
            extra=error.to_dict()
        )

    def format_validation_error(
        self,
        detail: str,
        instance: str,
        validation_errors: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Format a validation error response."""
        return self.builder.build_error_response(
            "validation-error",
            "Validation Error",
            422,
            detail,
            instance,
            validation_errors,
            extra={'code': 'VALIDATION_ERROR', 'message': detail}
        )

    def format_authentication_error(self, detail: str, instance: str) -> Dict[str, Any]:
        """Format an authentication error response."""
        return self.builder.build_error_response(
            "authentication-required",
            "Authentication Required",
            401,
            detail,
            instance
        )

    def format_not_found_error(self, detail: str, instance: str) -> Dict[str, Any]:
        """Format a not found error response."""
        return self.builder.build_error_response(
            "resource-not-found",
            "Resource Not Found",
            404,
            detail,
            instance
        )

    def format_server_error(self, detail: str, instance: str) -> Dict[str, Any]:
        """Format a server error response."""
        return self.builder.build_error_response(
            "internal-server-error",
            "Internal Server Error",
            500,
            detail,
            instance
        )


def create_hal_formatter(base_url: str) -> HalFormatter:
    """Create a HAL formatter instance."""
    return HalFormatter(base_url)
