# SPDX-License-Identifier: Apache-2.0

"""
Session issuance after a successful phone verification.

Order matters: the user is resolved first, the OTP session is consumed second
and tokens are minted last, so a session that cannot be consumed never yields
tokens and a verified session yields tokens at most once.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict

from opentelemetry import trace

from models.entities import OtpSession, UserProfile
from models.enums import NextStep
from services.auth import AuthService
from services.otp_store import OtpSessionStore
from services.users import UserRepository, UserCreationConflict

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True)
class AuthSession:
    """Tokens and user state handed to the client after login."""
    access_token: str
    refresh_token: str
    user: UserProfile
    is_new_user: bool
    token_type: str = "Bearer"
    expires_in: int = 900

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def next_step(self) -> NextStep:
        """New or incomplete profiles go to onboarding."""
        return NextStep.HOME if self.user.profile_completed else NextStep.ONBOARDING

    def to_response(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "user_id": self.user_id,
            "is_new_user": self.is_new_user,
            "next_step": self.next_step,
            "user": self.user.to_public_dict()
        }


class SessionIssuer:
    """Turns a VERIFIED OTP session into an authenticated session."""

    def __init__(self, store: OtpSessionStore, users: UserRepository, auth_service: AuthService):
        self.store = store
        self.users = users
        self.auth_service = auth_service

    def _find_or_create(self, otp_session: OtpSession):
        verified_at = otp_session.verified_at or self.store.clock()
        user = self.users.find_by_phone(otp_session.phone)
        if user is not None:
            return self.users.mark_phone_verified(user.id, verified_at), False

        try:
            return self.users.create_with_phone(otp_session.phone, verified_at), True
        except UserCreationConflict:
            # Lost a race with another first login for this phone
            user = self.users.find_by_phone(otp_session.phone)
            if user is None:
                raise
            logger.info("Account created concurrently, using existing user", extra={"user_id": user.id})
            return self.users.mark_phone_verified(user.id, verified_at), False

    def issue(self, otp_session: OtpSession) -> AuthSession:
        """
        Issue tokens for a verified OTP session.

        Args:
            otp_session: Session returned by a successful verification

        Returns:
            AuthSession with tokens and user

        Raises:
            SessionStateError: If the session is not VERIFIED (already consumed)
            UserCreationConflict: If the account can be neither created nor read
        """
        with tracer.start_as_current_span("session_issuer.issue") as span:
            span.set_attribute("otp.sid", otp_session.sid)

            user, is_new_user = self._find_or_create(otp_session)
            self.store.consume(otp_session.sid)
            tokens = self.auth_service.generate_tokens(user, sid=otp_session.sid)

            span.set_attributes({
                "user.id": user.id,
                "auth.new_user": is_new_user
            })
            logger.info("Authenticated session issued", extra={
                "user_id": user.id,
                "sid": otp_session.sid,
                "is_new_user": is_new_user
            })

            return AuthSession(
                access_token=tokens["access_token"],
                refresh_token=tokens["refresh_token"],
                user=user,
                is_new_user=is_new_user,
                token_type=tokens["token_type"],
                expires_in=tokens["expires_in"]
            )
