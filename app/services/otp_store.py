from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.database import Database
from app.models.otp import OtpEntry

MAX_ATTEMPTS = 3


class StoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class OtpRecord:
    user_id: int
    channel: str
    address: str
    purpose: str
    code: str
    expires_at: datetime
    created_at: datetime
    used: bool = False
    attempts: int = 0
    id: Optional[int] = None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(entry: OtpEntry) -> OtpRecord:
    return OtpRecord(
        id=entry.id,
        user_id=entry.user_id,
        channel=entry.channel,
        address=entry.address,
        purpose=entry.purpose,
        code=entry.code,
        used=bool(entry.used),
        attempts=entry.attempts,
        expires_at=_as_utc(entry.expires_at),
        created_at=_as_utc(entry.created_at),
    )


class OtpRecordStore(ABC):
    """Persistence port used by the OTP engine."""

    @abstractmethod
    def delete_unused_for(self, user_id: int, channel: str, purpose: str) -> int:
        """Remove every unused entry for the tuple, whatever its expiry or attempts."""

    @abstractmethod
    def insert(self, record: OtpRecord) -> int:
        """Persist a new entry and return its id."""

    @abstractmethod
    def find_active(
        self, user_id: int, channel: str, purpose: str, now: datetime
    ) -> Optional[OtpRecord]:
        """Newest entry that is unused, unexpired and below the attempt cap."""

    @abstractmethod
    def record_attempt(
        self, entry_id: int, expected_attempts: int, consume: bool
    ) -> bool:
        """Compare-and-set one verification attempt.

        Increments ``attempts`` (and sets ``used`` when ``consume`` is true)
        only if the entry is still unused and still has ``expected_attempts``.
        Returns False when another caller got there first.
        """

    @abstractmethod
    def delete_expired(self, now: datetime) -> int:
        """Remove entries with ``expires_at <= now``."""


class SqlOtpRecordStore(OtpRecordStore):
    def __init__(self, database: Database) -> None:
        self._database = database

    def delete_unused_for(self, user_id: int, channel: str, purpose: str) -> int:
        try:
            with self._database.session_scope() as session:
                result = session.execute(
                    delete(OtpEntry).where(
                        OtpEntry.user_id == user_id,
                        OtpEntry.channel == channel,
                        OtpEntry.purpose == purpose,
                        OtpEntry.used.is_(False),
                    )
                )
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError("Failed to invalidate pending OTP codes") from exc

    def insert(self, record: OtpRecord) -> int:
        entry = OtpEntry(
            user_id=record.user_id,
            channel=record.channel,
            address=record.address,
            purpose=record.purpose,
            code=record.code,
            used=record.used,
            attempts=record.attempts,
            expires_at=record.expires_at,
            created_at=record.created_at,
        )
        try:
            with self._database.session_scope() as session:
                session.add(entry)
                session.flush()
                return entry.id
        except SQLAlchemyError as exc:
            raise StoreError("Failed to store OTP code") from exc

    def find_active(
        self, user_id: int, channel: str, purpose: str, now: datetime
    ) -> Optional[OtpRecord]:
        try:
            with self._database.session_scope() as session:
                entry = session.execute(
                    select(OtpEntry)
                    .where(
                        OtpEntry.user_id == user_id,
                        OtpEntry.channel == channel,
                        OtpEntry.purpose == purpose,
                        OtpEntry.used.is_(False),
                        OtpEntry.expires_at > now,
                        OtpEntry.attempts < MAX_ATTEMPTS,
                    )
                    .order_by(OtpEntry.created_at.desc(), OtpEntry.id.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if entry is None:
                    return None
                return _to_record(entry)
        except SQLAlchemyError as exc:
            raise StoreError("Failed to look up OTP code") from exc

    def record_attempt(
        self, entry_id: int, expected_attempts: int, consume: bool
    ) -> bool:
        values = {"attempts": expected_attempts + 1}
        if consume:
            values["used"] = True
        try:
            with self._database.session_scope() as session:
                result = session.execute(
                    update(OtpEntry)
                    .where(
                        OtpEntry.id == entry_id,
                        OtpEntry.attempts == expected_attempts,
                        OtpEntry.used.is_(False),
                    )
                    .values(**values)
                )
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise StoreError("Failed to record OTP attempt") from exc

    def delete_expired(self, now: datetime) -> int:
        try:
            with self._database.session_scope() as session:
                result = session.execute(
                    delete(OtpEntry).where(OtpEntry.expires_at <= now)
                )
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError("Failed to purge expired OTP codes") from exc
