# SPDX-License-Identifier: Apache-2.0

"""
Middleware package for request processing.

This package contains middleware components for authentication, rate
limiting, CORS and error formatting in the eTijucas auth API.
"""
