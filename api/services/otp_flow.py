# SPDX-License-Identifier: Apache-2.0

"""
Passwordless login flow controller.

Orchestrates the OTP session store, the delivery gateway and the session
issuer, and reports every expected failure as a typed AuthError inside a
FlowResult. Only programming faults and infrastructure outages raise.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from opentelemetry import trace

from domain.errors import AuthError, AuthErrorCode, auth_error
from domain.flow import AuthFlowState, FlowAction, initial_state, transition
from domain.phone import InvalidPhoneFormat, mask_phone, normalize_phone
from models.base import utc_now
from models.enums import AuthEvent, AuthStep, NextStep, OtpSessionStatus
from services.audit import AuthAuditService
from services.delivery import DeliveryFailed, OtpDeliveryGateway
from services.magic_link import MagicLinkResolver, MagicLinkStatus
from services.otp_store import IssuedOtp, OtpSessionStore, RateLimited, SessionStateError, VerifyOutcome
from services.session_issuer import SessionIssuer
from services.users import UserCreationConflict, UserNotFound, UserRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100

LOCKED_MESSAGE = "Muitas tentativas incorretas. Solicite um novo código"


@dataclass(frozen=True)
class FlowResult:
    """Outcome of a flow operation: the new state plus data or an error."""
    state: AuthFlowState
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[AuthError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def next_step(self) -> NextStep:
        return self.state.next_step


class OtpFlowController:
    """Drives a client through PHONE -> OTP_PENDING -> VERIFIED -> PROFILE_PENDING -> DONE."""

    def __init__(
        self,
        store: OtpSessionStore,
        gateway: OtpDeliveryGateway,
        issuer: SessionIssuer,
        magic_links: MagicLinkResolver,
        users: UserRepository,
        audit: Optional[AuthAuditService] = None
    ):
        self.store = store
        self.gateway = gateway
        self.issuer = issuer
        self.magic_links = magic_links
        self.users = users
        self.audit = audit or AuthAuditService()

    # Helpers

    def _challenge(self, issued: IssuedOtp) -> Dict[str, Any]:
        now = self.store.clock()
        return {
            "sid": issued.sid,
            "expires_in": issued.session.expires_in(now),
            "cooldown": issued.session.cooldown_remaining(now),
            "next_step": NextStep.OTP_VERIFY
        }

    def _issue_and_deliver(self, phone: str, state: AuthFlowState, action: FlowAction,
                           client: Optional[Dict[str, Any]]) -> FlowResult:
        try:
            issued = self.store.create(phone)
        except RateLimited as e:
            self.audit.record(AuthEvent.OTP_REQUEST, False, phone=phone, sid=e.sid,
                              failure_reason=AuthErrorCode.RATE_LIMITED.value, client=client)
            error = auth_error(AuthErrorCode.RATE_LIMITED, retry_after=e.retry_after_seconds)
            return FlowResult(state=state, error=error)

        pending = transition(state, action, sid=issued.sid)

        try:
            self.gateway.send(phone, issued.code, self.magic_links.build_url(issued.magic_token))
        except DeliveryFailed as e:
            logger.error("OTP delivery failed", extra={
                "sid": issued.sid,
                "phone": mask_phone(phone),
                "error": str(e)
            })
            self.audit.record(AuthEvent.OTP_REQUEST, False, phone=phone, sid=issued.sid,
                              failure_reason=AuthErrorCode.DELIVERY_FAILED.value, client=client)
            return FlowResult(state=pending, error=auth_error(AuthErrorCode.DELIVERY_FAILED, sid=issued.sid))

        self.audit.record(AuthEvent.OTP_REQUEST, True, phone=phone, sid=issued.sid, client=client,
                          resend=action == FlowAction.RESEND_OTP)
        return FlowResult(state=pending, data=self._challenge(issued))

    # Operations

    def request_otp(self, raw_phone: str, client: Optional[Dict[str, Any]] = None) -> FlowResult:
        """
        Start a login for a phone number as typed by the user.

        The session is committed before delivery is attempted, so a delivery
        failure leaves a valid sid the client can resend on.

        Args:
            raw_phone: Phone in any common Brazilian format
            client: Request context (ip_address, user_agent)

        Returns:
            FlowResult in OTP_PENDING with {sid, expires_in, cooldown}, or an
            INVALID_PHONE / RATE_LIMITED / DELIVERY_FAILED error
        """
        with tracer.start_as_current_span("otp_flow.request_otp") as span:
            state = initial_state()
            try:
                phone = normalize_phone(raw_phone)
            except InvalidPhoneFormat as e:
                span.set_attribute("otp_flow.error", AuthErrorCode.INVALID_PHONE.value)
                logger.info(f"Rejected phone number: {e.reason}")
                return FlowResult(state=state, error=auth_error(AuthErrorCode.INVALID_PHONE))

            result = self._issue_and_deliver(phone, state, FlowAction.REQUEST_OTP, client)
            span.set_attribute("otp_flow.ok", result.ok)
            return result

    def resend_otp(self, sid: str, client: Optional[Dict[str, Any]] = None) -> FlowResult:
        """
        Send a new code for the phone of a pending session.

        The old session is invalidated and replaced by a new sid; the request
        is bounded by the old session's cooldown.
        """
        with tracer.start_as_current_span("otp_flow.resend_otp") as span:
            span.set_attribute("otp.sid", sid)
            session = self.store.lookup(sid)
            if session is None or session.status != OtpSessionStatus.PENDING:
                return FlowResult(state=initial_state(), error=auth_error(AuthErrorCode.SID_EXPIRED))

            state = AuthFlowState(step=AuthStep.OTP_PENDING, sid=sid)
            return self._issue_and_deliver(session.phone, state, FlowAction.RESEND_OTP, client)

    def describe_session(self, sid: str) -> FlowResult:
        """Context of a pending session so the code screen can be resumed."""
        session = self.store.lookup(sid)
        if session is None or session.status != OtpSessionStatus.PENDING:
            return FlowResult(state=initial_state(), error=auth_error(AuthErrorCode.SID_EXPIRED))

        now = self.store.clock()
        return FlowResult(
            state=AuthFlowState(step=AuthStep.OTP_PENDING, sid=sid),
            data={
                "sid": sid,
                "masked_phone": mask_phone(session.phone),
                "expires_in": session.expires_in(now),
                "cooldown": session.cooldown_remaining(now)
            }
        )

    def resolve_magic_link(self, token: str, client: Optional[Dict[str, Any]] = None) -> FlowResult:
        """Resolve a magic link token to the code screen of its session."""
        result = self.magic_links.resolve(token)
        self.audit.record(AuthEvent.MAGIC_LINK, result.ok, sid=result.sid,
                          failure_reason=None if result.ok else result.status.value, client=client)
        if result.status == MagicLinkStatus.INVALID:
            return FlowResult(state=initial_state(), error=auth_error(AuthErrorCode.MAGIC_LINK_INVALID))
        if not result.ok:
            return FlowResult(state=initial_state(), error=auth_error(AuthErrorCode.MAGIC_LINK_EXPIRED))
        return FlowResult(
            state=AuthFlowState(step=AuthStep.OTP_PENDING, sid=result.sid),
            data=result.to_context()
        )

    def verify_otp(self, sid: str, code: str, client: Optional[Dict[str, Any]] = None) -> FlowResult:
        """
        Verify a code and, on success, issue the authenticated session.

        Args:
            sid: OTP session ID
            code: Code typed by the user
            client: Request context (ip_address, user_agent)

        Returns:
            FlowResult in PROFILE_PENDING or DONE with tokens, OTP_PENDING on a
            wrong code, or PHONE when the session can no longer be used
        """
        with tracer.start_as_current_span("otp_flow.verify_otp") as span:
            span.set_attribute("otp.sid", sid)
            state = AuthFlowState(step=AuthStep.OTP_PENDING, sid=sid)

            result = self.store.verify(sid, code)
            span.set_attribute("otp.outcome", result.outcome.value)
            phone = result.session.phone if result.session else None

            if not result.ok:
                error = self._verify_error(result.outcome, result.attempts_left)
                self.audit.record(AuthEvent.OTP_VERIFY, False, phone=phone, sid=sid,
                                  failure_reason=error.code.value, client=client,
                                  outcome=result.outcome.value)
                if result.outcome == VerifyOutcome.INVALID_CODE:
                    return FlowResult(state=transition(state, FlowAction.VERIFY_REJECTED), error=error)
                return FlowResult(state=transition(state, FlowAction.SESSION_LOST), error=error)

            verified = transition(state, FlowAction.VERIFY_OK)
            self.audit.record(AuthEvent.OTP_VERIFY, True, phone=phone, sid=sid, client=client)

            try:
                auth_session = self.issuer.issue(result.session)
            except SessionStateError:
                logger.warning("Verified session consumed concurrently", extra={"sid": sid})
                return FlowResult(state=transition(verified, FlowAction.SESSION_LOST),
                                  error=auth_error(AuthErrorCode.OTP_ALREADY_USED))
            except UserCreationConflict:
                logger.error("Account could not be created or read", extra={"sid": sid})
                return FlowResult(state=verified, error=auth_error(AuthErrorCode.USER_CREATION_CONFLICT))

            action = FlowAction.ISSUE_DONE if auth_session.user.profile_completed else FlowAction.ISSUE_PROFILE_PENDING
            done = transition(verified, action, user_id=auth_session.user_id)
            self.audit.record(AuthEvent.LOGIN, True, phone=phone, sid=sid, user_id=auth_session.user_id,
                              client=client, is_new_user=auth_session.is_new_user)
            return FlowResult(state=done, data=auth_session.to_response())

    @staticmethod
    def _verify_error(outcome: VerifyOutcome, attempts_left: Optional[int]) -> AuthError:
        if outcome == VerifyOutcome.INVALID_CODE:
            return auth_error(AuthErrorCode.OTP_INVALID, attemptsLeft=attempts_left)
        if outcome == VerifyOutcome.LOCKED:
            return auth_error(AuthErrorCode.OTP_EXPIRED, LOCKED_MESSAGE, locked=True)
        if outcome == VerifyOutcome.EXPIRED:
            return auth_error(AuthErrorCode.OTP_EXPIRED)
        if outcome == VerifyOutcome.ALREADY_USED:
            return auth_error(AuthErrorCode.OTP_ALREADY_USED)
        return auth_error(AuthErrorCode.SID_EXPIRED)

    def complete_profile(
        self,
        user_id: str,
        name: str,
        terms_accepted: bool,
        neighborhood_id: Optional[str] = None,
        client: Optional[Dict[str, Any]] = None
    ) -> FlowResult:
        """
        Finish onboarding for a freshly created account.

        A rejected completion leaves the flow in PROFILE_PENDING.

        Args:
            user_id: Authenticated user
            name: Display name, 2 to 100 characters after trimming
            terms_accepted: Must be True
            neighborhood_id: Optional neighborhood (bairro)
            client: Request context

        Returns:
            FlowResult in DONE with the updated user, or a VALIDATION_ERROR
        """
        with tracer.start_as_current_span("otp_flow.complete_profile") as span:
            span.set_attribute("user.id", user_id)
            state = AuthFlowState(step=AuthStep.PROFILE_PENDING, user_id=user_id)

            name = (name or "").strip()
            errors = {}
            if len(name) < NAME_MIN_LENGTH:
                errors["name"] = f"O nome deve ter pelo menos {NAME_MIN_LENGTH} caracteres"
            elif len(name) > NAME_MAX_LENGTH:
                errors["name"] = f"O nome deve ter no máximo {NAME_MAX_LENGTH} caracteres"
            if terms_accepted is not True:
                errors["termsAccepted"] = "É necessário aceitar os termos de uso"

            if errors:
                self.audit.record(AuthEvent.PROFILE_COMPLETE, False, user_id=user_id,
                                  failure_reason=AuthErrorCode.VALIDATION_ERROR.value, client=client)
                return FlowResult(state=state, error=auth_error(AuthErrorCode.VALIDATION_ERROR, errors=errors))

            try:
                user = self.users.mark_profile_completed(user_id, name, utc_now(), neighborhood_id)
            except UserNotFound:
                return FlowResult(state=initial_state(), error=auth_error(AuthErrorCode.USER_NOT_FOUND))

            self.audit.record(AuthEvent.PROFILE_COMPLETE, True, user_id=user_id, client=client)
            return FlowResult(
                state=transition(state, FlowAction.COMPLETE_PROFILE),
                data={"user": user.to_public_dict(), "next_step": NextStep.HOME}
            )

    def restart(self, sid: Optional[str] = None) -> FlowResult:
        """Abandon the current session and go back to the phone step."""
        if sid:
            self.store.discard(sid)
        return FlowResult(state=transition(initial_state(), FlowAction.RESTART),
                          data={"next_step": NextStep.PHONE})
