# SPDX-License-Identifier: Apache-2.0

"""
Authentication service for JWT token management.

This module provides JWT token generation, validation and refresh using RS256
signing. Tokens carry a `jti` so that logout can blocklist them in Redis.
"""

import os
import uuid
import jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Tuple
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from opentelemetry import trace
import logging

from models.entities import UserProfile

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


class TokenValidationError(Exception):
    """Raised when token validation fails."""
    pass


class AuthService:
    """
    JWT authentication service with RS256 signing.

    Provides token generation, validation and refresh for citizens who logged
    in with a verified phone.
    """

    def __init__(self, private_key: Optional[str] = None, public_key: Optional[str] = None,
                 access_token_expire_minutes: int = 15, refresh_token_expire_days: int = 30):
        """
        Initialize the authentication service.

        Args:
            private_key: RS256 private key for token signing (PEM format)
            public_key: RS256 public key for token verification (PEM format)
            access_token_expire_minutes: Access token lifetime
            refresh_token_expire_days: Refresh token lifetime
        """
        private_key = private_key or os.getenv("JWT_PRIVATE_KEY", "").replace("\\n", "\n")
        public_key = public_key or os.getenv("JWT_PUBLIC_KEY", "").replace("\\n", "\n")

        if not private_key or not public_key:
            # Both halves must come from the same pair
            logger.warning("No JWT key pair configured, generating development key pair")
            private_key, public_key = self.generate_key_pair()

        self.private_key = private_key
        self.public_key = public_key
        self.algorithm = "RS256"
        self.access_token_expire_minutes = access_token_expire_minutes
        self.refresh_token_expire_days = refresh_token_expire_days

    @staticmethod
    def generate_key_pair() -> Tuple[str, str]:
        """Generate a 2048-bit RSA key pair as PEM strings."""
        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048
        )

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ).decode('utf-8')

        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode('utf-8')

        return private_pem, public_pem

    def _access_payload(self, user: UserProfile, now: datetime, sid: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "sub": user.id,
            "phone": user.phone,
            "profile_completed": user.profile_completed,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + timedelta(minutes=self.access_token_expire_minutes),
            "type": "access"
        }
        if sid:
            payload["sid"] = sid
        return payload

    def generate_tokens(self, user: UserProfile, sid: Optional[str] = None) -> Dict[str, Any]:
        """
        Generate access and refresh tokens for a user.

        Args:
            user: Authenticated user
            sid: OTP session the login came from

        Returns:
            Dictionary containing access_token, refresh_token, and metadata
        """
        with tracer.start_as_current_span("auth.generate_tokens") as span:
            span.set_attributes({
                "auth.operation": "generate_tokens",
                "user.id": user.id
            })

            now = datetime.now(timezone.utc)
            access_payload = self._access_payload(user, now, sid)
            refresh_exp = now + timedelta(days=self.refresh_token_expire_days)

            refresh_payload = {
                "sub": user.id,
                "jti": uuid.uuid4().hex,
                "iat": now,
                "exp": refresh_exp,
                "type": "refresh"
            }

            try:
                access_token = jwt.encode(access_payload, self.private_key, algorithm=self.algorithm)
                refresh_token = jwt.encode(refresh_payload, self.private_key, algorithm=self.algorithm)
            except (jwt.PyJWTError, ValueError, TypeError) as e:
                span.set_attribute("auth.tokens_generated", "error")
                logger.error(f"Token generation failed: {str(e)}")
                raise AuthenticationError(f"Failed to generate tokens: {str(e)}")

            span.set_attribute("auth.tokens_generated", "success")

            logger.info(
                "JWT tokens generated successfully",
                extra={
                    "user_id": user.id,
                    "access_expires_at": access_payload["exp"].isoformat(),
                    "refresh_expires_at": refresh_exp.isoformat()
                }
            )

            return {
                "access_token": access_token,
                "refresh_token": refresh_token,
                "token_type": "Bearer",
                "expires_in": self.access_token_expire_minutes * 60,
                "access_expires_at": access_payload["exp"].isoformat(),
                "refresh_expires_at": refresh_exp.isoformat()
            }

    def validate_token(self, token: str, token_type: str = "access") -> Dict[str, Any]:
        """
        Validate and decode a JWT token.

        Args:
            token: JWT token string to validate
            token_type: Expected token type ("access" or "refresh")

        Returns:
            Decoded token payload

        Raises:
            TokenValidationError: If token is invalid or expired
        """
        with tracer.start_as_current_span("auth.validate_token") as span:
            span.set_attributes({
                "auth.operation": "validate_token",
                "auth.token_type": token_type
            })

            try:
                payload = jwt.decode(
                    token,
                    self.public_key,
                    algorithms=[self.algorithm],
                    options={"verify_exp": True, "require": ["sub", "exp", "jti"]}
                )
            except jwt.ExpiredSignatureError:
                span.set_attribute("auth.validation_result", "expired")
                logger.warning("Token validation failed: token expired")
                raise TokenValidationError("Token has expired")
            except jwt.InvalidTokenError as e:
                span.set_attribute("auth.validation_result", "invalid")
                logger.warning(f"Token validation failed: {str(e)}")
                raise TokenValidationError(f"Invalid token: {str(e)}")

            if payload.get("type") != token_type:
                span.set_attribute("auth.validation_result", "wrong_type")
                raise TokenValidationError(f"Invalid token type. Expected {token_type}")

            span.set_attributes({
                "auth.validation_result": "success",
                "user.id": payload.get("sub")
            })

            logger.debug(
                "Token validated successfully",
                extra={"user_id": payload.get("sub"), "token_type": token_type}
            )

            return payload

    def refresh_access_token(self, refresh_token: str, user: UserProfile) -> Dict[str, Any]:
        """
        Generate a new access token using a valid refresh token.

        Args:
            refresh_token: Valid refresh token
            user: Current state of the token's subject

        Returns:
            New access token and metadata

        Raises:
            TokenValidationError: If refresh token is invalid or not the user's
        """
        with tracer.start_as_current_span("auth.refresh_access_token") as span:
            span.set_attribute("auth.operation", "refresh_access_token")

            refresh_payload = self.validate_token(refresh_token, "refresh")
            if refresh_payload["sub"] != user.id:
                raise TokenValidationError("Refresh token subject mismatch")

            now = datetime.now(timezone.utc)
            access_payload = self._access_payload(user, now)

            try:
                access_token = jwt.encode(access_payload, self.private_key, algorithm=self.algorithm)
            except (jwt.PyJWTError, ValueError, TypeError) as e:
                span.set_attribute("auth.refresh_result", "error")
                logger.error(f"Token refresh failed: {str(e)}")
                raise AuthenticationError(f"Failed to refresh token: {str(e)}")

            span.set_attribute("auth.refresh_result", "success")

            logger.info(
                "Access token refreshed successfully",
                extra={
                    "user_id": user.id,
                    "new_expires_at": access_payload["exp"].isoformat()
                }
            )

            return {
                "access_token": access_token,
                "token_type": "Bearer",
                "expires_in": self.access_token_expire_minutes * 60,
                "expires_at": access_payload["exp"].isoformat()
            }

    def peek_subject(self, token: str) -> str:
        """
        Read the subject of a token without verifying it.

        Used to load the user before a full refresh-token validation.
        """
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError as e:
            raise TokenValidationError(f"Invalid token format: {str(e)}")
        subject = payload.get("sub")
        if not subject:
            raise TokenValidationError("Token has no subject")
        return subject

    @staticmethod
    def remaining_lifetime(payload: Dict[str, Any]) -> int:
        """Seconds until a decoded token expires, never negative."""
        exp = int(payload.get("exp", 0))
        return max(0, exp - int(datetime.now(timezone.utc).timestamp()))
