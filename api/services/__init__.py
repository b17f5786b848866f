# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Services package - External integrations and side effects.
"""

from .mongodb import MongoDBService, get_mongodb_service, close_mongodb_connection
from .redis import RedisService
from .otp_store import (
    OtpSessionStore,
    InMemoryOtpSessionStore,
    RedisOtpSessionStore,
    OtpSessionSweeper,
    create_otp_session_store
)
from .delivery import OtpDeliveryGateway, create_delivery_gateway

__all__ = [
    "MongoDBService",
    "get_mongodb_service",
    "close_mongodb_connection",
    "RedisService",
    "OtpSessionStore",
    "InMemoryOtpSessionStore",
    "RedisOtpSessionStore",
    "OtpSessionSweeper",
    "create_otp_session_store",
    "OtpDeliveryGateway",
    "create_delivery_gateway"
]
