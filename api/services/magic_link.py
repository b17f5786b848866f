# SPDX-License-Identifier: Apache-2.0

"""
Magic link resolution.

The WhatsApp message carries a link with a one-time token. Opening it lands
the user on the code screen of the same OTP session; it never authenticates
by itself.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from opentelemetry import trace

from domain.phone import mask_phone
from models.enums import OtpSessionStatus
from services.otp_store import OtpSessionStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class MagicLinkStatus(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class MagicLinkResult:
    """Outcome of resolving a magic link token."""
    status: MagicLinkStatus
    sid: Optional[str] = None
    masked_phone: Optional[str] = None
    expires_in: int = 0
    cooldown: int = 0

    @property
    def ok(self) -> bool:
        return self.status == MagicLinkStatus.OK

    def to_context(self) -> Dict[str, Any]:
        return {
            "sid": self.sid,
            "masked_phone": self.masked_phone,
            "expires_in": self.expires_in,
            "cooldown": self.cooldown
        }


class MagicLinkResolver:
    """Resolves magic link tokens to pending OTP sessions."""

    def __init__(self, store: OtpSessionStore, frontend_url: str):
        self.store = store
        self.frontend_url = frontend_url.rstrip("/")

    def build_url(self, token: str) -> str:
        """Link embedded in the delivery message."""
        return f"{self.frontend_url}/login/otp?{urlencode({'token': token})}"

    def resolve(self, token: str) -> MagicLinkResult:
        """
        Redeem a magic link token.

        Tokens are single use: a second resolve of the same token is INVALID.

        Args:
            token: Token from the link

        Returns:
            MagicLinkResult with the session context when the session is still PENDING
        """
        with tracer.start_as_current_span("magic_link.resolve") as span:
            sid = self.store.redeem_magic_token(token) if token else None
            if sid is None:
                span.set_attribute("magic_link.status", MagicLinkStatus.INVALID.value)
                return MagicLinkResult(status=MagicLinkStatus.INVALID)

            session = self.store.lookup(sid)
            if session is None:
                span.set_attribute("magic_link.status", MagicLinkStatus.INVALID.value)
                return MagicLinkResult(status=MagicLinkStatus.INVALID)

            span.set_attribute("otp.sid", sid)
            if session.status != OtpSessionStatus.PENDING:
                span.set_attribute("magic_link.status", MagicLinkStatus.EXPIRED.value)
                logger.info("Magic link for non-pending session", extra={"sid": sid, "status": session.status})
                return MagicLinkResult(status=MagicLinkStatus.EXPIRED, sid=sid)

            now = self.store.clock()
            span.set_attribute("magic_link.status", MagicLinkStatus.OK.value)
            return MagicLinkResult(
                status=MagicLinkStatus.OK,
                sid=sid,
                masked_phone=mask_phone(session.phone),
                expires_in=session.expires_in(now),
                cooldown=session.cooldown_remaining(now)
            )
