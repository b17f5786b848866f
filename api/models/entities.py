# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Core entity models for the eTijucas authentication API.
"""

import math
from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator, ConfigDict
from .base import BaseEntity, utc_now
from .enums import OtpSessionStatus, AuthEvent


class OtpSession(BaseModel):
    """Short-lived server-side OTP verification session."""

    model_config = ConfigDict(
        use_enum_values=True,
        validate_assignment=True
    )

    sid: str = Field(..., description="Opaque session identifier")
    phone: str = Field(..., description="Normalized phone the code was sent to")
    code_hash: str = Field(..., description="bcrypt hash of the OTP code")
    created_at: datetime = Field(..., description="Creation timestamp")
    expires_at: datetime = Field(..., description="Hard expiry deadline")
    cooldown_until: datetime = Field(..., description="Resend is rejected before this time")
    attempts: int = Field(default=0, ge=0, description="Failed verification attempts")
    status: OtpSessionStatus = Field(default=OtpSessionStatus.PENDING, description="Lifecycle status")
    verified_at: Optional[datetime] = Field(None, description="Verification timestamp")
    consumed_at: Optional[datetime] = Field(None, description="Token issuance timestamp")
    replaced_by: Optional[str] = Field(None, description="Session that invalidated this one")

    def is_expired_at(self, now: datetime) -> bool:
        """Check the hard deadline, independent of stored status."""
        return now >= self.expires_at

    def effective_status(self, now: datetime) -> OtpSessionStatus:
        """Status with lazy expiry applied."""
        if self.is_expired_at(now):
            return OtpSessionStatus.EXPIRED
        return OtpSessionStatus(self.status)

    def expires_in(self, now: datetime) -> int:
        """Whole seconds left before expiry, never negative."""
        return max(0, int((self.expires_at - now).total_seconds()))

    def cooldown_remaining(self, now: datetime) -> int:
        """Whole seconds left before a resend is allowed, never negative."""
        return max(0, math.ceil((self.cooldown_until - now).total_seconds()))


class UserProfile(BaseEntity):
    """Citizen account created on first phone verification."""

    phone: str = Field(..., min_length=10, max_length=11, description="Verified phone, unique")
    name: Optional[str] = Field(None, max_length=100, description="Display name")
    profile_completed: bool = Field(default=False, description="Onboarding finished")
    phone_verified_at: Optional[datetime] = Field(None, description="Last phone verification")
    terms_accepted_at: Optional[datetime] = Field(None, description="Terms acceptance timestamp")
    neighborhood_id: Optional[str] = Field(None, description="Neighborhood (bairro) identifier")
    last_login: Optional[datetime] = Field(None, description="Last login timestamp")

    @field_validator('phone')
    @classmethod
    def validate_phone(cls, v):
        """Phone must already be normalized digits."""
        if not v.isdigit():
            raise ValueError('Phone must contain only digits')
        return v

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        """Strip surrounding whitespace from names."""
        if v is None:
            return v
        return v.strip()

    def to_public_dict(self) -> Dict[str, Any]:
        """User representation returned to the client."""
        return {
            "id": self.id,
            "phone": self.phone,
            "name": self.name,
            "profileCompleted": self.profile_completed,
            "neighborhoodId": self.neighborhood_id,
            "phoneVerifiedAt": self.phone_verified_at.isoformat() if self.phone_verified_at else None,
            "createdAt": self.created_at.isoformat()
        }


class AuthLog(BaseModel):
    """Authentication audit record."""

    model_config = ConfigDict(use_enum_values=True)

    event: AuthEvent = Field(..., description="Event type")
    success: bool = Field(..., description="Whether the event succeeded")
    failure_reason: Optional[str] = Field(None, description="Error code on failure")
    user_id: Optional[str] = Field(None, description="User involved, if known")
    phone_hash: Optional[str] = Field(None, description="SHA-256 of the normalized phone")
    phone_masked: Optional[str] = Field(None, description="Masked phone for display")
    sid: Optional[str] = Field(None, description="OTP session involved")
    ip_address: Optional[str] = Field(None, description="Client IP address")
    user_agent: Optional[str] = Field(None, description="Client user agent")
    trace_id: Optional[str] = Field(None, description="OpenTelemetry trace ID")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional event data")
    created_at: datetime = Field(default_factory=utc_now, description="Event timestamp")


class UserContext(BaseModel):
    """User context for authenticated requests."""

    user_id: str = Field(..., description="User ID")
    phone: Optional[str] = Field(None, description="Verified phone")
    profile_completed: bool = Field(default=False, description="Onboarding finished")
    token_payload: Dict[str, Any] = Field(default_factory=dict, description="Decoded access token")
    ip_address: Optional[str] = Field(None, description="Request IP address")
    user_agent: Optional[str] = Field(None, description="Request user agent")
    scopes: List[str] = Field(default_factory=list, description="Token scopes")
