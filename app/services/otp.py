from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import hmac
import logging
import secrets
from typing import Callable, Optional

from app.schemas.users import normalize_email, normalize_phone
from app.services.otp_store import (
    MAX_ATTEMPTS,
    OtpRecord,
    OtpRecordStore,
    StoreError,
)

LOGGER = logging.getLogger(__name__)

CHANNELS = ("email", "phone")
PURPOSES = ("verification", "password_reset", "login")

CODE_MIN = 100000
CODE_MAX = 999999
OTP_CAS_RETRIES = 3

STATE_ISSUED = "issued"
STATE_CONSUMED = "consumed"
STATE_EXPIRED = "expired"
STATE_EXHAUSTED = "exhausted"


class OtpVerificationError(ValueError):
    message = "OTP verification failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)


class OtpNotFound(OtpVerificationError):
    message = "Invalid or expired OTP"


class OtpAlreadyUsed(OtpVerificationError):
    message = "OTP has already been used"


class OtpExpired(OtpVerificationError):
    message = "OTP has expired"


class OtpAttemptsExceeded(OtpVerificationError):
    message = "Maximum attempts exceeded"


class OtpInvalidCode(OtpVerificationError):
    message = "Invalid OTP"


_STATE_ERRORS = {
    STATE_CONSUMED: OtpAlreadyUsed,
    STATE_EXPIRED: OtpExpired,
    STATE_EXHAUSTED: OtpAttemptsExceeded,
}


@dataclass(frozen=True)
class IssuedOtp:
    code: str
    expires_at: datetime
    ttl_seconds: int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


def otp_state(record: OtpRecord, now: datetime) -> str:
    """Lifecycle state of a stored entry at ``now``.

    Consumed wins over the other terminal states, then expiry, then
    exhaustion. Anything else is still issued and verifiable.
    """
    if record.used:
        return STATE_CONSUMED
    if record.expires_at <= now:
        return STATE_EXPIRED
    if record.attempts >= MAX_ATTEMPTS:
        return STATE_EXHAUSTED
    return STATE_ISSUED


def _check_tuple(channel: str, purpose: str) -> None:
    if channel not in CHANNELS:
        raise ValueError(f"Unsupported OTP channel: {channel}")
    if purpose not in PURPOSES:
        raise ValueError(f"Unsupported OTP purpose: {purpose}")


def _check_address(channel: str, address: str) -> str:
    """Normalised ``address``; raises ValueError when it does not fit ``channel``."""
    if channel == "email":
        return normalize_email(address or "")
    return normalize_phone(address or "")


class OtpEngine:
    def __init__(
        self,
        store: OtpRecordStore,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
        debug: bool = False,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._debug = debug

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def issue(
        self,
        user_id: int,
        channel: str,
        purpose: str,
        address: str,
        ttl_seconds: Optional[int] = None,
    ) -> IssuedOtp:
        _check_tuple(channel, purpose)
        address = _check_address(channel, address)
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl < 0:
            raise ValueError("OTP ttl must not be negative")

        removed = self._store.delete_unused_for(user_id, channel, purpose)
        now = self._clock()
        record = OtpRecord(
            user_id=user_id,
            channel=channel,
            address=address,
            purpose=purpose,
            code=generate_code(),
            used=False,
            attempts=0,
            expires_at=now + timedelta(seconds=ttl),
            created_at=now,
        )
        entry_id = self._store.insert(record)
        LOGGER.info(
            "Issued OTP id=%s user=%s channel=%s purpose=%s replaced=%s",
            entry_id,
            user_id,
            channel,
            purpose,
            removed,
        )
        if self._debug:
            LOGGER.debug("OTP code for user=%s is %s", user_id, record.code)
        return IssuedOtp(code=record.code, expires_at=record.expires_at, ttl_seconds=ttl)

    def verify(
        self, user_id: int, channel: str, purpose: str, submitted_code: str
    ) -> OtpRecord:
        _check_tuple(channel, purpose)
        clean_code = (submitted_code or "").strip()

        for _ in range(OTP_CAS_RETRIES):
            now = self._clock()
            record = self._store.find_active(user_id, channel, purpose, now)
            if record is None:
                raise OtpNotFound()
            state = otp_state(record, now)
            if state != STATE_ISSUED:
                raise _STATE_ERRORS[state]()

            matched = hmac.compare_digest(
                record.code.encode("ascii"), clean_code.encode("utf-8")
            )
            if self._store.record_attempt(record.id, record.attempts, consume=matched):
                break
            LOGGER.info("OTP attempt conflict on id=%s, retrying", record.id)
        else:
            raise StoreError("Concurrent OTP verification could not be recorded")

        if not matched:
            LOGGER.info(
                "Rejected OTP user=%s channel=%s purpose=%s attempt=%s",
                user_id,
                channel,
                purpose,
                record.attempts + 1,
            )
            raise OtpInvalidCode()

        LOGGER.info(
            "Verified OTP id=%s user=%s channel=%s purpose=%s",
            record.id,
            user_id,
            channel,
            purpose,
        )
        return replace(record, used=True, attempts=record.attempts + 1)

    def purge_expired(self) -> int:
        removed = self._store.delete_expired(self._clock())
        if removed:
            LOGGER.info("Purged %s expired OTP codes", removed)
        return removed
