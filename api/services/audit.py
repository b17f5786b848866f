# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Audit service for authentication events with OpenTelemetry correlation.

Every step of the login flow leaves an AuthLog entry. Writes are best effort:
a failing audit store is logged and never fails the login itself.
"""

import hashlib
import logging
from typing import Any, Dict, Optional
from opentelemetry import trace
from pymongo.errors import PyMongoError

from domain.phone import mask_phone
from models.entities import AuthLog
from models.enums import AuthEvent
from .mongodb import MongoDBService, AUTH_LOGS_COLLECTION

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def hash_phone(phone: str) -> str:
    """SHA-256 of a normalized phone, for correlating events without storing it."""
    return hashlib.sha256(phone.encode('utf-8')).hexdigest()


class AuthAuditService:
    """Records authentication events to MongoDB and the structured log."""

    def __init__(self, mongo_service: Optional[MongoDBService] = None):
        """
        Initialize the audit service.

        Args:
            mongo_service: MongoDB service; events are only logged when omitted
        """
        self.mongo_service = mongo_service
        self.collection_name = AUTH_LOGS_COLLECTION

    def record(
        self,
        event: AuthEvent,
        success: bool,
        phone: Optional[str] = None,
        user_id: Optional[str] = None,
        sid: Optional[str] = None,
        failure_reason: Optional[str] = None,
        client: Optional[Dict[str, Any]] = None,
        **metadata: Any
    ) -> AuthLog:
        """
        Record an authentication event.

        Args:
            event: Event type
            success: Whether the step succeeded
            phone: Normalized phone, stored hashed and masked only
            user_id: User involved, if known
            sid: OTP session involved
            failure_reason: Error code when the step failed
            client: Request context (ip_address, user_agent)
            **metadata: Additional event data

        Returns:
            AuthLog: The recorded entry
        """
        client = client or {}
        span_context = trace.get_current_span().get_span_context()

        entry = AuthLog(
            event=event,
            success=success,
            failure_reason=failure_reason,
            user_id=user_id,
            phone_hash=hash_phone(phone) if phone else None,
            phone_masked=mask_phone(phone) if phone else None,
            sid=sid,
            ip_address=client.get("ip_address"),
            user_agent=client.get("user_agent"),
            trace_id=format(span_context.trace_id, "032x") if span_context.is_valid else None,
            metadata=metadata
        )

        logger.info(
            "Auth event recorded",
            extra={
                "auth_event": entry.event,
                "success": success,
                "failure_reason": failure_reason,
                "user_id": user_id,
                "sid": sid,
                "phone": entry.phone_masked,
                "trace_id": entry.trace_id,
                "audit_category": "authentication"
            }
        )

        if self.mongo_service is not None:
            self._store(entry)

        return entry

    def _store(self, entry: AuthLog) -> None:
        with tracer.start_as_current_span("audit.store_auth_log") as span:
            document = {
                "event": entry.event,
                "success": entry.success,
                "failureReason": entry.failure_reason,
                "userId": entry.user_id,
                "phoneHash": entry.phone_hash,
                "phoneMasked": entry.phone_masked,
                "sid": entry.sid,
                "ipAddress": entry.ip_address,
                "userAgent": entry.user_agent,
                "traceId": entry.trace_id,
                "metadata": entry.metadata,
                "createdAt": entry.created_at
            }
            try:
                self.mongo_service.get_collection(self.collection_name).insert_one(document)
            except PyMongoError as e:
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                logger.error(
                    "Failed to store auth log entry",
                    extra={"auth_event": entry.event, "sid": entry.sid, "error": str(e)}
                )
