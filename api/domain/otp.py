# SPDX-License-Identifier: Apache-2.0

"""
OTP primitives: code and identifier generation, one-way code hashing.

Codes are hashed with bcrypt so the clear code never reaches storage;
bcrypt.checkpw compares digests in constant time.
"""

import secrets
import bcrypt

SID_BYTES = 16
MAGIC_TOKEN_BYTES = 32


def generate_code(length: int = 6) -> str:
    """Generate a zero-padded random numeric code."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def generate_sid() -> str:
    """Generate an opaque, URL-safe session identifier."""
    return secrets.token_urlsafe(SID_BYTES)


def generate_magic_token() -> str:
    """Generate a one-time magic link token."""
    return secrets.token_urlsafe(MAGIC_TOKEN_BYTES)


def hash_code(code: str, rounds: int = 10) -> str:
    """
    Hash an OTP code with bcrypt.

    Args:
        code: Clear numeric code
        rounds: bcrypt cost factor (4-31)

    Returns:
        bcrypt hash string
    """
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(code.encode('utf-8'), salt).decode('utf-8')


def code_matches(code: str, code_hash: str) -> bool:
    """
    Check a submitted code against its stored hash.

    Args:
        code: Code submitted by the user
        code_hash: Stored bcrypt hash

    Returns:
        True if the code matches
    """
    if not code or not code.isdigit():
        return False
    try:
        return bcrypt.checkpw(code.encode('utf-8'), code_hash.encode('utf-8'))
    except ValueError:
        return False
