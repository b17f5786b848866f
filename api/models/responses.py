# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Response models for API endpoints with HAL support.
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from .base import CamelModel
from .enums import NextStep


class HalLink(BaseModel):
    """HAL link representation."""

    href: str = Field(..., description="Link URL")
    method: Optional[str] = Field(None, description="HTTP method")
    type: Optional[str] = Field(None, description="Content type")
    title: Optional[str] = Field(None, description="Link title")
    templated: Optional[bool] = Field(None, description="Whether URL is templated")


class OtpChallengeResponse(CamelModel):
    """Response after an OTP was issued for a phone."""

    sid: str = Field(..., description="OTP session ID")
    expires_in: int = Field(..., description="Seconds until the code expires")
    cooldown: int = Field(..., description="Seconds until a resend is allowed")
    next_step: NextStep = Field(default=NextStep.OTP_VERIFY, description="Next client step")


class SessionContextResponse(CamelModel):
    """Metadata of a pending OTP session, for magic links and resumption."""

    sid: str = Field(..., description="OTP session ID")
    masked_phone: str = Field(..., description="Phone with all but the last 4 digits masked")
    expires_in: int = Field(..., description="Seconds until the code expires")
    cooldown: int = Field(..., description="Seconds until a resend is allowed")


class AuthSessionResponse(CamelModel):
    """Token pair issued after a successful verification."""

    access_token: str = Field(..., description="Bearer access token")
    refresh_token: str = Field(..., description="Refresh token")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    user_id: str = Field(..., description="Authenticated user ID")
    is_new_user: bool = Field(..., description="Whether the account was created by this login")
    next_step: NextStep = Field(..., description="Onboarding or home")
    user: Dict[str, Any] = Field(default_factory=dict, description="User representation")


class ProfileResponse(CamelModel):
    """Response after profile completion or for the current user."""

    user: Dict[str, Any] = Field(..., description="User representation")
    next_step: NextStep = Field(default=NextStep.HOME, description="Next client step")


class RefreshTokenResponse(CamelModel):
    """Response for token refresh."""

    access_token: str = Field(..., description="New access token")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_in: int = Field(..., description="Access token lifetime in seconds")
