# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Models package - Pydantic schemas and data models for the eTijucas auth API.
"""

# Base models
from .base import BaseEntity, CamelModel

# Enumerations
from .enums import (
    OtpSessionStatus,
    AuthStep,
    NextStep,
    AuthEvent
)

# Core entities
from .entities import (
    OtpSession,
    UserProfile,
    AuthLog,
    UserContext
)

# Request models
from .requests import (
    RequestOtpRequest,
    ResendOtpRequest,
    ResolveMagicLinkRequest,
    VerifyOtpRequest,
    RestartFlowRequest,
    CompleteProfileRequest,
    RefreshTokenRequest,
    OtpSessionPath
)

# Response models
from .responses import (
    HalLink,
    OtpChallengeResponse,
    SessionContextResponse,
    AuthSessionResponse,
    ProfileResponse,
    RefreshTokenResponse
)

__all__ = [
    # Base models
    "BaseEntity",
    "CamelModel",

    # Enumerations
    "OtpSessionStatus",
    "AuthStep",
    "NextStep",
    "AuthEvent",

    # Core entities
    "OtpSession",
    "UserProfile",
    "AuthLog",
    "UserContext",

    # Request models
    "RequestOtpRequest",
    "ResendOtpRequest",
    "ResolveMagicLinkRequest",
    "VerifyOtpRequest",
    "RestartFlowRequest",
    "CompleteProfileRequest",
    "RefreshTokenRequest",
    "OtpSessionPath",

    # Response models
    "HalLink",
    "OtpChallengeResponse",
    "SessionContextResponse",
    "AuthSessionResponse",
    "ProfileResponse",
    "RefreshTokenResponse"
]
