# SPDX-License-Identifier: Apache-2.0

"""
Phone number normalization for Brazilian numbers.

Pure functions that canonicalize user-entered phone strings into the digit
form used as the identity key for OTP sessions and user accounts.
"""

import re

COUNTRY_CODE = "55"

# ASCII only, \D would keep other scripts' digits
_NON_DIGITS = re.compile(r"[^0-9]")


class InvalidPhoneFormat(ValueError):
    """Raised when a phone string cannot be normalized to a BR number."""

    def __init__(self, raw: str, reason: str):
        super().__init__(f"Invalid phone number: {reason}")
        self.raw = raw
        self.reason = reason


def normalize_phone(raw: str) -> str:
    """
    Normalize a phone string to DDD + subscriber digits.

    Accepts formatting characters, an optional +55 country code and an
    optional trunk prefix 0. The result has 10 digits (landline) or
    11 digits (mobile, third digit 9).

    Args:
        raw: User-entered phone string

    Returns:
        Canonical digit string, e.g. "48999991234"

    Raises:
        InvalidPhoneFormat: If the cleaned digits are not a valid BR number
    """
    if raw is None:
        raise InvalidPhoneFormat("", "phone is required")

    digits = _NON_DIGITS.sub("", str(raw))

    if len(digits) in (12, 13) and digits.startswith(COUNTRY_CODE):
        digits = digits[len(COUNTRY_CODE):]

    if len(digits) in (11, 12) and digits.startswith("0"):
        digits = digits[1:]

    if len(digits) not in (10, 11):
        raise InvalidPhoneFormat(raw, "expected 10 or 11 digits including DDD")

    ddd = digits[:2]
    if "0" in ddd:
        raise InvalidPhoneFormat(raw, f"invalid area code {ddd}")

    if len(digits) == 11 and digits[2] != "9":
        raise InvalidPhoneFormat(raw, "mobile numbers must start with 9")

    return digits


def is_valid_phone(raw: str) -> bool:
    """Check whether a phone string normalizes cleanly."""
    try:
        normalize_phone(raw)
        return True
    except InvalidPhoneFormat:
        return False


def mask_phone(phone: str) -> str:
    """Mask a normalized phone for display, keeping the last 4 digits."""
    subscriber = "X" * max(len(phone) - 6, 4)
    return f"(XX) {subscriber}-{phone[-4:]}"


def to_international(phone: str) -> str:
    """Prefix a normalized phone with the BR country code."""
    return f"{COUNTRY_CODE}{phone}"
