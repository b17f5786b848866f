# SPDX-License-Identifier: Apache-2.0

"""
Domain logic package for the eTijucas authentication API.

This package contains pure business logic functions with no side effects:
phone normalization, OTP primitives, the login flow state machine and the
error taxonomy.
"""
