# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Configuration for the OTP authentication flow.
"""

import os
from dataclasses import dataclass


@dataclass
class OtpConfig:
    """OTP session and delivery settings."""
    ttl_seconds: int = 300
    cooldown_seconds: int = 30
    max_attempts: int = 5
    code_length: int = 6
    hash_rounds: int = 10
    store_backend: str = "memory"
    sweep_interval_seconds: int = 60
    sweep_grace_seconds: int = 3600
    send_limit: int = 3
    send_window_seconds: int = 300
    frontend_url: str = "https://etijucas.com.br"


def load_otp_config() -> OtpConfig:
    """
    Build OTP configuration from environment variables.

    Returns:
        OtpConfig: Configuration with environment overrides applied
    """
    return OtpConfig(
        ttl_seconds=int(os.getenv('OTP_TTL_SECONDS', '300')),
        cooldown_seconds=int(os.getenv('OTP_COOLDOWN_SECONDS', '30')),
        max_attempts=int(os.getenv('OTP_MAX_ATTEMPTS', '5')),
        code_length=int(os.getenv('OTP_CODE_LENGTH', '6')),
        hash_rounds=int(os.getenv('OTP_HASH_ROUNDS', '10')),
        store_backend=os.getenv('OTP_STORE_BACKEND', 'memory').lower(),
        sweep_interval_seconds=int(os.getenv('OTP_SWEEP_INTERVAL_SECONDS', '60')),
        sweep_grace_seconds=int(os.getenv('OTP_SWEEP_GRACE_SECONDS', '3600')),
        send_limit=int(os.getenv('OTP_SEND_LIMIT', '3')),
        send_window_seconds=int(os.getenv('OTP_SEND_WINDOW_SECONDS', '300')),
        frontend_url=os.getenv('FRONTEND_URL', 'https://etijucas.com.br')
    )
