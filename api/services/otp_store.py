# SPDX-License-Identifier: Apache-2.0

"""
OTP session store.

Holds short-lived OTP sessions keyed by an opaque sid, with a phone index for
resend cooldowns and a one-time magic token index. All mutations of a single
session are serialized: the in-memory backend holds one lock per sid, the
Redis backend runs WATCH/MULTI transactions on the session key.

Expiry is lazy. A session whose deadline has passed reads as EXPIRED whatever
its stored status; `sweep_expired` only reclaims memory.
"""

import logging
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import redis
from opentelemetry import trace

from config import OtpConfig
from domain.otp import generate_code, generate_sid, generate_magic_token, hash_code, code_matches
from domain.phone import mask_phone
from models.base import utc_now
from models.entities import OtpSession
from models.enums import OtpSessionStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Clock = Callable[[], datetime]


class VerifyOutcome(str, Enum):
    """Result of checking a code against a session."""
    OK = "ok"
    INVALID_CODE = "invalid_code"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    LOCKED = "locked"


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a verification plus the session as left by it."""
    outcome: VerifyOutcome
    session: Optional[OtpSession] = None
    attempts_left: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome == VerifyOutcome.OK


@dataclass(frozen=True)
class IssuedOtp:
    """A freshly created session with its clear code and magic token for delivery."""
    session: OtpSession
    code: str
    magic_token: str

    @property
    def sid(self) -> str:
        return self.session.sid


class RateLimited(Exception):
    """Raised when a phone must wait before another code is sent."""

    def __init__(self, retry_after_seconds: int, sid: Optional[str] = None):
        super().__init__(f"Resend blocked for {retry_after_seconds}s")
        self.retry_after_seconds = retry_after_seconds
        self.sid = sid


class SessionStateError(Exception):
    """Raised when a session is not in the state an operation requires."""

    def __init__(self, sid: str, status: Optional[OtpSessionStatus], expected: OtpSessionStatus):
        found = status.value if status else "missing"
        super().__init__(f"Session {sid} is {found}, expected {expected.value}")
        self.sid = sid
        self.status = status
        self.expected = expected


class OtpSessionStore(ABC):
    """Interface and shared rules of OTP session storage."""

    def __init__(self, config: OtpConfig, clock: Clock = utc_now):
        self.config = config
        self.clock = clock

    @abstractmethod
    def create(self, phone: str) -> IssuedOtp:
        """
        Create a session for a normalized phone.

        A still-valid session for the same phone is invalidated and replaced.

        Raises:
            RateLimited: If the phone's latest session is inside its cooldown,
                or the phone used up its sends for the current window
        """

    @abstractmethod
    def lookup(self, sid: str) -> Optional[OtpSession]:
        """Get a session with lazy expiry applied, or None."""

    @abstractmethod
    def verify(self, sid: str, code: str) -> VerifyResult:
        """Check a code against a session, counting failed attempts."""

    @abstractmethod
    def consume(self, sid: str) -> OtpSession:
        """
        Mark a VERIFIED session CONSUMED.

        Raises:
            SessionStateError: If the session is missing or not VERIFIED
        """

    @abstractmethod
    def discard(self, sid: str) -> bool:
        """Expire a session. The phone keeps its cooldown."""

    @abstractmethod
    def redeem_magic_token(self, token: str) -> Optional[str]:
        """Remove a magic token and return the sid it pointed to."""

    @abstractmethod
    def sweep_expired(self) -> int:
        """Reclaim sessions past their retention window. Returns count removed."""

    # Shared rules

    def _new_session(self, phone: str, now: datetime) -> Tuple[OtpSession, str, str]:
        code = generate_code(self.config.code_length)
        session = OtpSession(
            sid=generate_sid(),
            phone=phone,
            code_hash=hash_code(code, self.config.hash_rounds),
            created_at=now,
            expires_at=now + timedelta(seconds=self.config.ttl_seconds),
            cooldown_until=now + timedelta(seconds=self.config.cooldown_seconds),
        )
        return session, code, generate_magic_token()

    def _check_cooldown(self, current: Optional[OtpSession], now: datetime) -> None:
        # Any status counts, a restart or a login does not reset the wait
        if current is None:
            return
        remaining = current.cooldown_remaining(now)
        if remaining > 0:
            raise RateLimited(remaining, sid=current.sid)

    def _check_send_limit(self, sends: int, window_remaining: int, sid: Optional[str]) -> None:
        if sends >= self.config.send_limit and window_remaining > 0:
            raise RateLimited(window_remaining, sid=sid)

    def _apply_verify(self, session: OtpSession, code: str,
                      now: datetime) -> Tuple[VerifyOutcome, Optional[OtpSession]]:
        """
        Decide a verification against a session snapshot.

        Returns:
            Tuple of outcome and the updated session to persist (None if unchanged)
        """
        status = session.effective_status(now)
        if status == OtpSessionStatus.EXPIRED:
            return VerifyOutcome.EXPIRED, None
        if status in (OtpSessionStatus.VERIFIED, OtpSessionStatus.CONSUMED):
            return VerifyOutcome.ALREADY_USED, None

        if code_matches(code, session.code_hash):
            return VerifyOutcome.OK, session.model_copy(update={
                "status": OtpSessionStatus.VERIFIED,
                "verified_at": now,
            })

        attempts = session.attempts + 1
        if attempts >= self.config.max_attempts:
            return VerifyOutcome.LOCKED, session.model_copy(update={
                "attempts": attempts,
                "status": OtpSessionStatus.EXPIRED,
            })
        return VerifyOutcome.INVALID_CODE, session.model_copy(update={"attempts": attempts})

    def _result(self, outcome: VerifyOutcome, session: Optional[OtpSession]) -> VerifyResult:
        attempts_left = None
        if session is not None:
            attempts_left = max(0, self.config.max_attempts - session.attempts)
        with_expiry = self._with_lazy_expiry(session) if session is not None else None
        return VerifyResult(outcome=outcome, session=with_expiry, attempts_left=attempts_left)

    def _with_lazy_expiry(self, session: OtpSession) -> OtpSession:
        status = session.effective_status(self.clock())
        if status == session.status:
            return session
        return session.model_copy(update={"status": status})

    def _retention_deadline(self, session: OtpSession) -> datetime:
        return session.expires_at + timedelta(seconds=self.config.sweep_grace_seconds)


class InMemoryOtpSessionStore(OtpSessionStore):
    """
    Process-local store.

    Lock order is index lock, then sid lock. Verification only takes the sid
    lock so checks on different sessions run in parallel.
    """

    def __init__(self, config: OtpConfig, clock: Clock = utc_now):
        super().__init__(config, clock)
        self._sessions: Dict[str, OtpSession] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._by_phone: Dict[str, str] = {}
        self._magic_tokens: Dict[str, str] = {}
        self._token_by_sid: Dict[str, str] = {}
        # phone -> (sends in window, window end)
        self._send_windows: Dict[str, Tuple[int, datetime]] = {}
        self._index_lock = threading.Lock()

    def _sends_in_window(self, phone: str, now: datetime) -> Tuple[int, datetime]:
        sends, window_end = self._send_windows.get(phone, (0, now))
        if now >= window_end:
            return 0, now + timedelta(seconds=self.config.send_window_seconds)
        return sends, window_end

    def create(self, phone: str) -> IssuedOtp:
        with tracer.start_as_current_span("otp_store.create") as span:
            span.set_attribute("otp.backend", "memory")
            with self._index_lock:
                now = self.clock()
                current_sid = self._by_phone.get(phone)
                current = self._sessions.get(current_sid) if current_sid else None
                self._check_cooldown(current, now)
                sends, window_end = self._sends_in_window(phone, now)
                self._check_send_limit(sends, math.ceil((window_end - now).total_seconds()), current_sid)

                session, code, magic_token = self._new_session(phone, now)
                self._send_windows[phone] = (sends + 1, window_end)

                if current is not None:
                    with self._locks[current.sid]:
                        # Re-read under the sid lock, a verify may have landed
                        current = self._sessions[current.sid]
                        if current.effective_status(now) == OtpSessionStatus.PENDING:
                            self._sessions[current.sid] = current.model_copy(update={
                                "status": OtpSessionStatus.EXPIRED,
                                "replaced_by": session.sid,
                            })

                self._sessions[session.sid] = session
                self._locks[session.sid] = threading.Lock()
                self._by_phone[phone] = session.sid
                self._magic_tokens[magic_token] = session.sid
                self._token_by_sid[session.sid] = magic_token

            span.set_attribute("otp.sid", session.sid)
            logger.info("OTP session created", extra={
                "sid": session.sid,
                "phone": mask_phone(phone),
                "replaced_sid": current.sid if current else None
            })
            return IssuedOtp(session=session, code=code, magic_token=magic_token)

    def lookup(self, sid: str) -> Optional[OtpSession]:
        session = self._sessions.get(sid)
        if session is None:
            return None
        return self._with_lazy_expiry(session)

    def verify(self, sid: str, code: str) -> VerifyResult:
        with tracer.start_as_current_span("otp_store.verify") as span:
            span.set_attribute("otp.sid", sid)
            lock = self._locks.get(sid)
            if lock is None:
                span.set_attribute("otp.outcome", VerifyOutcome.NOT_FOUND.value)
                return VerifyResult(outcome=VerifyOutcome.NOT_FOUND)

            with lock:
                session = self._sessions.get(sid)
                if session is None:
                    return VerifyResult(outcome=VerifyOutcome.NOT_FOUND)
                outcome, updated = self._apply_verify(session, code, self.clock())
                if updated is not None:
                    self._sessions[sid] = updated
                    session = updated

            if outcome == VerifyOutcome.OK:
                # A successful login resets the phone's send window
                with self._index_lock:
                    self._send_windows.pop(session.phone, None)

            span.set_attribute("otp.outcome", outcome.value)
            return self._result(outcome, session)

    def consume(self, sid: str) -> OtpSession:
        lock = self._locks.get(sid)
        if lock is None:
            raise SessionStateError(sid, None, OtpSessionStatus.VERIFIED)

        with lock:
            session = self._sessions.get(sid)
            if session is None:
                raise SessionStateError(sid, None, OtpSessionStatus.VERIFIED)
            status = OtpSessionStatus(session.status)
            if status != OtpSessionStatus.VERIFIED:
                raise SessionStateError(sid, status, OtpSessionStatus.VERIFIED)
            consumed = session.model_copy(update={
                "status": OtpSessionStatus.CONSUMED,
                "consumed_at": self.clock(),
            })
            self._sessions[sid] = consumed

        logger.debug("OTP session consumed", extra={"sid": sid})
        return consumed

    def discard(self, sid: str) -> bool:
        with self._index_lock:
            lock = self._locks.get(sid)
            if lock is None:
                return False
            with lock:
                session = self._sessions[sid]
                status = OtpSessionStatus(session.status)
                if status in (OtpSessionStatus.PENDING, OtpSessionStatus.VERIFIED):
                    self._sessions[sid] = session.model_copy(update={"status": OtpSessionStatus.EXPIRED})
            token = self._token_by_sid.pop(sid, None)
            if token:
                self._magic_tokens.pop(token, None)

        logger.info("OTP session discarded", extra={"sid": sid})
        return True

    def redeem_magic_token(self, token: str) -> Optional[str]:
        with self._index_lock:
            sid = self._magic_tokens.pop(token, None)
            if sid is not None:
                self._token_by_sid.pop(sid, None)
            return sid

    def sweep_expired(self) -> int:
        now = self.clock()
        removed = 0
        with self._index_lock:
            for sid, session in list(self._sessions.items()):
                if now < self._retention_deadline(session):
                    continue
                del self._sessions[sid]
                self._locks.pop(sid, None)
                if self._by_phone.get(session.phone) == sid:
                    del self._by_phone[session.phone]
                token = self._token_by_sid.pop(sid, None)
                if token:
                    self._magic_tokens.pop(token, None)
                removed += 1
            for phone, (_, window_end) in list(self._send_windows.items()):
                if now >= window_end:
                    del self._send_windows[phone]

        if removed:
            logger.info(f"Swept {removed} expired OTP sessions")
        return removed

    def __len__(self) -> int:
        return len(self._sessions)


class RedisOtpSessionStore(OtpSessionStore):
    """
    Redis-backed store for multi-process deployments.

    Keys:
        otp:session:{sid}  session JSON, kept for ttl + grace so that late
                           verifications report EXPIRED or ALREADY_USED
        otp:phone:{phone}  sid of the phone's latest session
        otp:magic:{token}  sid for a one-time magic link token, kept as long as
                           the session so a late click reports EXPIRED
        otp:sends:{phone}  codes sent to the phone in the current window

    Redis key TTLs do the sweeping; expiry semantics still come from
    `expires_at` so the store clock stays authoritative.
    """

    SESSION_PREFIX = "otp:session:"
    PHONE_PREFIX = "otp:phone:"
    MAGIC_PREFIX = "otp:magic:"
    SENDS_PREFIX = "otp:sends:"

    def __init__(self, client: redis.Redis, config: OtpConfig, clock: Clock = utc_now):
        super().__init__(config, clock)
        self.client = client

    def _session_key(self, sid: str) -> str:
        return f"{self.SESSION_PREFIX}{sid}"

    def _phone_key(self, phone: str) -> str:
        return f"{self.PHONE_PREFIX}{phone}"

    def _magic_key(self, token: str) -> str:
        return f"{self.MAGIC_PREFIX}{token}"

    def _sends_key(self, phone: str) -> str:
        return f"{self.SENDS_PREFIX}{phone}"

    @property
    def _session_ttl(self) -> int:
        return self.config.ttl_seconds + self.config.sweep_grace_seconds

    @staticmethod
    def _load(raw: Optional[str]) -> Optional[OtpSession]:
        if raw is None:
            return None
        return OtpSession.model_validate_json(raw)

    def create(self, phone: str) -> IssuedOtp:
        phone_key = self._phone_key(phone)
        sends_key = self._sends_key(phone)

        def _create(pipe: redis.client.Pipeline) -> Tuple[IssuedOtp, Optional[str]]:
            now = self.clock()
            current_sid = pipe.get(phone_key)
            current = None
            if current_sid:
                pipe.watch(self._session_key(current_sid))
                current = self._load(pipe.get(self._session_key(current_sid)))
            self._check_cooldown(current, now)
            sends = int(pipe.get(sends_key) or 0)
            window_remaining = pipe.ttl(sends_key) if sends else -1
            self._check_send_limit(sends, window_remaining, current_sid)

            session, code, magic_token = self._new_session(phone, now)

            pipe.multi()
            if current is not None and current.effective_status(now) == OtpSessionStatus.PENDING:
                replaced = current.model_copy(update={
                    "status": OtpSessionStatus.EXPIRED,
                    "replaced_by": session.sid,
                })
                pipe.set(self._session_key(current.sid), replaced.model_dump_json(), keepttl=True)
            pipe.set(self._session_key(session.sid), session.model_dump_json(), ex=self._session_ttl)
            pipe.set(phone_key, session.sid, ex=self.config.ttl_seconds)
            pipe.set(self._magic_key(magic_token), session.sid, ex=self._session_ttl)
            pipe.incr(sends_key)
            # The window starts with the first send; a counter without TTL restarts it
            if window_remaining < 0:
                pipe.expire(sends_key, self.config.send_window_seconds)
            return IssuedOtp(session=session, code=code, magic_token=magic_token), current_sid

        with tracer.start_as_current_span("otp_store.create") as span:
            span.set_attribute("otp.backend", "redis")
            issued, replaced_sid = self.client.transaction(_create, phone_key, sends_key, value_from_callable=True)
            span.set_attribute("otp.sid", issued.sid)

        logger.info("OTP session created", extra={
            "sid": issued.sid,
            "phone": mask_phone(phone),
            "replaced_sid": replaced_sid
        })
        return issued

    def lookup(self, sid: str) -> Optional[OtpSession]:
        session = self._load(self.client.get(self._session_key(sid)))
        if session is None:
            return None
        return self._with_lazy_expiry(session)

    def verify(self, sid: str, code: str) -> VerifyResult:
        key = self._session_key(sid)

        def _verify(pipe: redis.client.Pipeline) -> Tuple[VerifyOutcome, Optional[OtpSession]]:
            session = self._load(pipe.get(key))
            if session is None:
                return VerifyOutcome.NOT_FOUND, None
            outcome, updated = self._apply_verify(session, code, self.clock())
            pipe.multi()
            if updated is not None:
                pipe.set(key, updated.model_dump_json(), keepttl=True)
                session = updated
            if outcome == VerifyOutcome.OK:
                pipe.delete(self._sends_key(session.phone))
            return outcome, session

        with tracer.start_as_current_span("otp_store.verify") as span:
            span.set_attribute("otp.sid", sid)
            outcome, session = self.client.transaction(_verify, key, value_from_callable=True)
            span.set_attribute("otp.outcome", outcome.value)

        if session is None:
            return VerifyResult(outcome=outcome)
        return self._result(outcome, session)

    def consume(self, sid: str) -> OtpSession:
        key = self._session_key(sid)

        def _consume(pipe: redis.client.Pipeline) -> OtpSession:
            session = self._load(pipe.get(key))
            if session is None:
                raise SessionStateError(sid, None, OtpSessionStatus.VERIFIED)
            status = OtpSessionStatus(session.status)
            if status != OtpSessionStatus.VERIFIED:
                raise SessionStateError(sid, status, OtpSessionStatus.VERIFIED)
            consumed = session.model_copy(update={
                "status": OtpSessionStatus.CONSUMED,
                "consumed_at": self.clock(),
            })
            pipe.multi()
            pipe.set(key, consumed.model_dump_json(), keepttl=True)
            return consumed

        return self.client.transaction(_consume, key, value_from_callable=True)

    def discard(self, sid: str) -> bool:
        key = self._session_key(sid)

        def _discard(pipe: redis.client.Pipeline) -> bool:
            session = self._load(pipe.get(key))
            if session is None:
                return False
            pipe.multi()
            if OtpSessionStatus(session.status) in (OtpSessionStatus.PENDING, OtpSessionStatus.VERIFIED):
                expired = session.model_copy(update={"status": OtpSessionStatus.EXPIRED})
                pipe.set(key, expired.model_dump_json(), keepttl=True)
            return True

        discarded = self.client.transaction(_discard, key, value_from_callable=True)
        if discarded:
            logger.info("OTP session discarded", extra={"sid": sid})
        return discarded

    def redeem_magic_token(self, token: str) -> Optional[str]:
        return self.client.getdel(self._magic_key(token))

    def sweep_expired(self) -> int:
        # Key TTLs reclaim sessions, nothing to do
        return 0


class OtpSessionSweeper:
    """Background thread calling `sweep_expired` on a fixed interval."""

    def __init__(self, store: OtpSessionStore, interval_seconds: int = 60):
        self.store = store
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="otp-session-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"OTP session sweeper started (interval: {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> int:
        """Run a single sweep, logging instead of propagating failures."""
        try:
            return self.store.sweep_expired()
        except redis.RedisError as e:
            logger.error(f"OTP session sweep failed: {str(e)}")
            return 0

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()


def create_otp_session_store(config: OtpConfig, redis_client: Optional[redis.Redis] = None,
                             clock: Clock = utc_now) -> OtpSessionStore:
    """
    Factory function to create the configured OTP session store.

    Args:
        config: OTP configuration (store_backend selects the backend)
        redis_client: Redis client, required for the redis backend
        clock: Time source

    Returns:
        OtpSessionStore instance
    """
    if config.store_backend == "redis":
        if redis_client is None:
            logger.warning("OTP_STORE_BACKEND=redis but Redis is unavailable, using in-memory store")
        else:
            return RedisOtpSessionStore(redis_client, config, clock)
    return InMemoryOtpSessionStore(config, clock)
