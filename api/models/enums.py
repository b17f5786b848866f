# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Enumeration types for the eTijucas authentication API.
"""

from enum import Enum


class OtpSessionStatus(str, Enum):
    """Server-side OTP session lifecycle status."""
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    CONSUMED = "consumed"


class AuthStep(str, Enum):
    """Client-visible step of the passwordless login flow."""
    PHONE = "phone"
    OTP_PENDING = "otp_pending"
    VERIFIED = "verified"
    PROFILE_PENDING = "profile_pending"
    DONE = "done"


class NextStep(str, Enum):
    """Screen the client should show after a flow response."""
    PHONE = "phone"
    OTP_VERIFY = "otp_verify"
    ONBOARDING = "onboarding"
    HOME = "home"


class AuthEvent(str, Enum):
    """Authentication audit event types."""
    OTP_REQUEST = "otp_request"
    OTP_VERIFY = "otp_verify"
    MAGIC_LINK = "magic_link"
    LOGIN = "login"
    LOGOUT = "logout"
    PROFILE_COMPLETE = "profile_complete"
    TOKEN_REFRESH = "token_refresh"
