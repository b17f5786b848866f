# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Passwordless authentication endpoints.

WhatsApp OTP request, resend, magic link and verification, followed by
profile completion, token refresh and logout.
"""

from flask import request, jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError
from typing import Any, Dict, List, Optional, Type
import logging

from models.base import CamelModel
from models.entities import UserContext
from models.enums import AuthEvent, NextStep
from models.requests import (
    RequestOtpRequest,
    ResendOtpRequest,
    ResolveMagicLinkRequest,
    VerifyOtpRequest,
    RestartFlowRequest,
    CompleteProfileRequest,
    RefreshTokenRequest,
    OtpSessionPath
)
from models.responses import (
    OtpChallengeResponse,
    SessionContextResponse,
    AuthSessionResponse,
    ProfileResponse,
    RefreshTokenResponse
)
from middleware.auth import require_auth, get_client_info
from middleware.rate_limit import rate_limit_otp_request, rate_limit_otp_verify, rate_limit_session_lookup
from services.auth import AuthenticationError, TokenValidationError
from services.hal import AUTH_PREFIX

# Set up logging and tracing
logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Create API blueprint
auth_tag = Tag(name="Authentication", description="Passwordless login via WhatsApp OTP")
auth_bp = APIBlueprint(
    'auth',
    __name__,
    url_prefix=AUTH_PREFIX,
    abp_tags=[auth_tag]
)


def format_validation_errors(validation_error: ValidationError) -> List[Dict[str, Any]]:
    """
    Format Pydantic validation errors for API response.

    Args:
        validation_error: Pydantic ValidationError

    Returns:
        List of formatted error dictionaries
    """
    errors = []
    for error in validation_error.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })
    return errors


def _parse_body(model_class: Type[CamelModel], optional: bool = False):
    """
    Validate the JSON body against a request model.

    Returns:
        Tuple of (model, None) on success or (None, error response)
    """
    request_data = request.get_json(silent=True)
    if request_data is None:
        if optional:
            request_data = {}
        else:
            error_response = current_app.hal_formatter.format_validation_error(
                "Missing request body",
                request.path,
                [{"field": "body", "message": "Expected a JSON object", "type": "missing"}]
            )
            return None, (jsonify(error_response), 422)

    if not isinstance(request_data, dict):
        error_response = current_app.hal_formatter.format_validation_error(
            "Request body must be a JSON object",
            request.path,
            [{"field": "body", "message": "Expected a JSON object", "type": "dict_type"}]
        )
        return None, (jsonify(error_response), 422)

    try:
        return model_class(**request_data), None
    except ValidationError as e:
        validation_errors = format_validation_errors(e)
        logger.warning(
            "Request validation failed",
            extra={
                "model": model_class.__name__,
                "path": request.path,
                "errors": validation_errors
            }
        )
        error_response = current_app.hal_formatter.format_validation_error(
            f"Request validation failed for {model_class.__name__}",
            request.path,
            validation_errors
        )
        return None, (jsonify(error_response), 422)


def _error_response(error, span=None):
    """Render a flow AuthError as a problem document."""
    if span is not None:
        span.set_status(Status(StatusCode.ERROR, error.code.value))
        span.set_attribute("auth.error_code", error.code.value)

    response = jsonify(current_app.hal_formatter.format_auth_error(error, request.path))
    response.status_code = error.http_status
    if error.retry_after:
        response.headers['Retry-After'] = str(error.retry_after)
    return response


def _flow_response(payload: CamelModel, next_step: Optional[NextStep] = None, status: int = 200):
    data = payload.to_api()
    if next_step is not None:
        data.setdefault("nextStep", NextStep(next_step).value)
    return jsonify(current_app.hal_formatter.format_flow_response(data, request.path)), status


def _unauthorized(detail: str):
    return jsonify(current_app.hal_formatter.format_authentication_error(detail, request.path)), 401


@auth_bp.post('/otp/request')
@rate_limit_otp_request
def request_otp():
    """
    Start a passwordless login.

    Normalizes the phone number, opens an OTP session and sends the code
    over WhatsApp. Returns the session ID the client verifies against.
    """
    with tracer.start_as_current_span("auth.otp.request") as span:
        body, error_response = _parse_body(RequestOtpRequest)
        if error_response:
            return error_response

        result = current_app.otp_flow.request_otp(body.phone, get_client_info())
        if not result.ok:
            return _error_response(result.error, span)

        span.set_attribute("otp.sid", result.data["sid"])
        return _flow_response(OtpChallengeResponse(**result.data))


@auth_bp.post('/otp/resend')
@rate_limit_otp_request
def resend_otp():
    """
    Send a new code for a pending session.

    The previous code stops working; the response carries the new session ID.
    """
    with tracer.start_as_current_span("auth.otp.resend") as span:
        body, error_response = _parse_body(ResendOtpRequest)
        if error_response:
            return error_response

        span.set_attribute("otp.previous_sid", body.sid)
        result = current_app.otp_flow.resend_otp(body.sid, get_client_info())
        if not result.ok:
            return _error_response(result.error, span)

        return _flow_response(OtpChallengeResponse(**result.data))


@auth_bp.get('/otp/session/<string:sid>')
@rate_limit_session_lookup
def get_otp_session(path: OtpSessionPath):
    """Context of a pending session, used to resume the code screen."""
    sid = path.sid
    with tracer.start_as_current_span("auth.otp.session") as span:
        span.set_attribute("otp.sid", sid)
        result = current_app.otp_flow.describe_session(sid)
        if not result.ok:
            return _error_response(result.error, span)

        return _flow_response(SessionContextResponse(**result.data), result.next_step)


@auth_bp.post('/otp/magic')
@rate_limit_session_lookup
def resolve_magic_link():
    """
    Resolve a magic link token.

    Tokens are single use; the response has the context of the session the
    link was sent for, and the client still enters the code.
    """
    with tracer.start_as_current_span("auth.otp.magic") as span:
        body, error_response = _parse_body(ResolveMagicLinkRequest)
        if error_response:
            return error_response

        result = current_app.otp_flow.resolve_magic_link(body.token, get_client_info())
        if not result.ok:
            return _error_response(result.error, span)

        return _flow_response(SessionContextResponse(**result.data), result.next_step)


@auth_bp.post('/otp/verify')
@rate_limit_otp_verify
def verify_otp():
    """
    Verify a code and sign in.

    Creates the account on first login and returns access and refresh
    tokens. nextStep is "onboarding" until the profile is completed.
    """
    with tracer.start_as_current_span("auth.otp.verify") as span:
        body, error_response = _parse_body(VerifyOtpRequest)
        if error_response:
            return error_response

        span.set_attribute("otp.sid", body.sid)
        result = current_app.otp_flow.verify_otp(body.sid, body.code, get_client_info())
        if not result.ok:
            return _error_response(result.error, span)

        span.set_attributes({
            "user.id": result.data["user_id"],
            "auth.is_new_user": result.data["is_new_user"]
        })
        return _flow_response(AuthSessionResponse(**result.data))


@auth_bp.post('/otp/restart')
def restart_flow():
    """Abandon the current session, e.g. to change the phone number."""
    body, error_response = _parse_body(RestartFlowRequest, optional=True)
    if error_response:
        return error_response

    result = current_app.otp_flow.restart(body.sid)
    data = {"nextStep": NextStep(result.data["next_step"]).value}
    return jsonify(current_app.hal_formatter.format_flow_response(data, request.path)), 200


@auth_bp.post('/profile/complete')
@require_auth
def complete_profile(user_context: UserContext):
    """
    Complete the profile of a new account.

    Requires the access token issued by verification.
    """
    with tracer.start_as_current_span("auth.profile.complete") as span:
        span.set_attribute("user.id", user_context.user_id)
        body, error_response = _parse_body(CompleteProfileRequest)
        if error_response:
            return error_response

        result = current_app.otp_flow.complete_profile(
            user_context.user_id,
            body.name,
            body.terms_accepted,
            body.neighborhood_id,
            get_client_info()
        )
        if not result.ok:
            return _error_response(result.error, span)

        return _flow_response(ProfileResponse(**result.data))


@auth_bp.post('/refresh')
def refresh_token():
    """Issue a new access token from a refresh token."""
    with tracer.start_as_current_span("auth.refresh") as span:
        body, error_response = _parse_body(RefreshTokenRequest)
        if error_response:
            return error_response

        auth_service = current_app.auth_service
        audit = current_app.audit_service
        try:
            user_id = auth_service.peek_subject(body.refresh_token)
            user = current_app.user_repository.find_by_id(user_id)
            if user is None:
                raise TokenValidationError("Token subject no longer exists")
            token_data = auth_service.refresh_access_token(body.refresh_token, user)
        except TokenValidationError as e:
            span.set_status(Status(StatusCode.ERROR, "Invalid refresh token"))
            logger.warning(f"Token refresh rejected: {str(e)}")
            audit.record(AuthEvent.TOKEN_REFRESH, False, failure_reason="invalid_token",
                         client=get_client_info())
            return _unauthorized("Invalid or expired refresh token")
        except AuthenticationError as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            logger.error(f"Token refresh failed: {str(e)}")
            return jsonify(current_app.hal_formatter.format_server_error(
                "Failed to refresh token", request.path
            )), 500

        audit.record(AuthEvent.TOKEN_REFRESH, True, user_id=user.id, client=get_client_info())
        return jsonify(RefreshTokenResponse(**token_data).to_api()), 200


@auth_bp.post('/logout')
@require_auth
def logout(user_context: UserContext):
    """Revoke the access token until it would have expired."""
    with tracer.start_as_current_span("auth.logout") as span:
        span.set_attribute("user.id", user_context.user_id)
        payload = user_context.token_payload

        revoked = False
        redis_service = getattr(current_app, 'redis_service', None)
        if redis_service is not None and redis_service.is_available():
            ttl = current_app.auth_service.remaining_lifetime(payload)
            if ttl > 0:
                revoked = redis_service.block_token(payload["jti"], ttl)
        else:
            logger.warning("Token blocklist unavailable, logout is client-side only",
                           extra={"user_id": user_context.user_id})

        span.set_attribute("auth.token_revoked", revoked)
        current_app.audit_service.record(AuthEvent.LOGOUT, True, user_id=user_context.user_id,
                                         client=get_client_info(), token_revoked=revoked)

        data = {"loggedOut": True, "nextStep": NextStep.PHONE.value}
        return jsonify(current_app.hal_formatter.format_flow_response(data, request.path)), 200


@auth_bp.get('/me')
@require_auth
def get_current_user(user_context: UserContext):
    """Current user and the step the client should show."""
    user = current_app.user_repository.find_by_id(user_context.user_id)
    if user is None:
        return jsonify(current_app.hal_formatter.format_not_found_error(
            "User not found", request.path
        )), 404

    next_step = NextStep.HOME if user.profile_completed else NextStep.ONBOARDING
    return _flow_response(ProfileResponse(user=user.to_public_dict(), next_step=next_step))
