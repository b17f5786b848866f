# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Request models for API endpoints.
"""

from typing import Optional
from pydantic import BaseModel, Field, field_validator
from .base import CamelModel


class RequestOtpRequest(CamelModel):
    """Request model for starting a passwordless login."""

    phone: str = Field(..., min_length=1, max_length=32, description="Phone number as typed by the user")


class ResendOtpRequest(CamelModel):
    """Request model for resending a code for an existing session."""

    sid: str = Field(..., min_length=1, max_length=128, description="OTP session ID")


class ResolveMagicLinkRequest(CamelModel):
    """Request model for resolving a magic link token."""

    token: str = Field(..., min_length=1, max_length=256, description="Magic link token")


class VerifyOtpRequest(CamelModel):
    """Request model for verifying an OTP code."""

    sid: str = Field(..., min_length=1, max_length=128, description="OTP session ID")
    code: str = Field(..., description="Code received via WhatsApp")

    @field_validator('code')
    @classmethod
    def validate_code(cls, v):
        """Codes are numeric; surrounding whitespace from paste is dropped."""
        v = v.strip()
        if not v.isdigit():
            raise ValueError('Code must contain only digits')
        return v


class RestartFlowRequest(CamelModel):
    """Request model for abandoning the current OTP session."""

    sid: Optional[str] = Field(None, max_length=128, description="OTP session ID to discard")


class CompleteProfileRequest(CamelModel):
    """
    Request model for profile completion.

    Name length and terms acceptance are checked by the flow controller so
    that a rejected completion is reported as VALIDATION_ERROR.
    """

    name: str = Field(..., max_length=100, description="User display name")
    terms_accepted: bool = Field(..., description="Whether terms of use were accepted")
    neighborhood_id: Optional[str] = Field(None, max_length=64, description="Neighborhood (bairro) ID")


class RefreshTokenRequest(CamelModel):
    """Request model for token refresh."""

    refresh_token: str = Field(..., min_length=1, description="Refresh token")


class OtpSessionPath(BaseModel):
    """Path parameters for session lookup."""

    sid: str = Field(..., min_length=1, max_length=128, description="OTP session ID")
