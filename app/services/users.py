from datetime import datetime, timezone
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.database import Database
from app.models.user import UserEntry
from app.schemas.users import RegisterRequest, UserResponse
from app.services.passwords import hash_password, verify_password

LOGGER = logging.getLogger(__name__)


class UserError(ValueError):
    pass


class UserNotFound(UserError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStore:
    def __init__(self, database: Database) -> None:
        self._database = database

    def register(self, payload: RegisterRequest) -> UserResponse:
        now = _utcnow()
        with self._database.session_scope() as session:
            existing = session.execute(
                select(UserEntry).where(UserEntry.email == payload.email)
            ).scalar_one_or_none()
            if existing:
                raise UserError("User with this email already exists")
            entry = UserEntry(
                email=payload.email,
                password_hash=hash_password(payload.password),
                first_name=payload.first_name,
                last_name=payload.last_name,
                phone=payload.phone,
                is_email_verified=False,
                is_phone_verified=False,
                is_active=True,
                language="en",
                notifications_enabled=True,
                created_at=now,
                updated_at=now,
            )
            session.add(entry)
            try:
                session.flush()
            except IntegrityError as exc:
                raise UserError("User with this email already exists") from exc
            LOGGER.info("Registered user id=%s", entry.id)
            return self._to_response(entry)

    def authenticate(self, email: str, password: str) -> Optional[UserResponse]:
        with self._database.session_scope() as session:
            entry = session.execute(
                select(UserEntry).where(UserEntry.email == email)
            ).scalar_one_or_none()
            if entry is None or not verify_password(password, entry.password_hash):
                return None
            if not entry.is_active:
                raise UserError("Account is deactivated. Please contact support.")
            entry.last_login = _utcnow()
            session.flush()
            return self._to_response(entry)

    def get_user(self, user_id: int) -> Optional[UserResponse]:
        with self._database.session_scope() as session:
            entry = session.get(UserEntry, user_id)
            if entry is None:
                return None
            return self._to_response(entry)

    def find_by_email(self, email: str) -> Optional[UserResponse]:
        with self._database.session_scope() as session:
            entry = session.execute(
                select(UserEntry).where(UserEntry.email == email.strip().lower())
            ).scalar_one_or_none()
            if entry is None:
                return None
            return self._to_response(entry)

    def mark_email_verified(self, user_id: int) -> UserResponse:
        with self._database.session_scope() as session:
            entry = self._require(session, user_id)
            entry.is_email_verified = True
            entry.updated_at = _utcnow()
            session.flush()
            return self._to_response(entry)

    def set_phone_pending(self, user_id: int, phone: str) -> UserResponse:
        with self._database.session_scope() as session:
            entry = self._require(session, user_id)
            entry.phone = phone
            entry.is_phone_verified = False
            entry.updated_at = _utcnow()
            session.flush()
            return self._to_response(entry)

    def mark_phone_verified(self, user_id: int) -> UserResponse:
        with self._database.session_scope() as session:
            entry = self._require(session, user_id)
            if not entry.phone:
                raise UserError("No phone number to verify")
            entry.is_phone_verified = True
            entry.updated_at = _utcnow()
            session.flush()
            return self._to_response(entry)

    def reset_password(self, user_id: int, new_password: str) -> None:
        with self._database.session_scope() as session:
            entry = self._require(session, user_id)
            entry.password_hash = hash_password(new_password)
            entry.updated_at = _utcnow()
        LOGGER.info("Password reset for user id=%s", user_id)

    def _require(self, session, user_id: int) -> UserEntry:
        entry = session.get(UserEntry, user_id)
        if entry is None:
            raise UserNotFound("User not found")
        return entry

    def _to_response(self, entry: UserEntry) -> UserResponse:
        return UserResponse(
            id=entry.id,
            email=entry.email,
            first_name=entry.first_name,
            last_name=entry.last_name,
            full_name=f"{entry.first_name} {entry.last_name}",
            phone=entry.phone,
            date_of_birth=entry.date_of_birth,
            gender=entry.gender,
            is_email_verified=bool(entry.is_email_verified),
            is_phone_verified=bool(entry.is_phone_verified),
            is_active=bool(entry.is_active),
            language=entry.language or "en",
            notifications_enabled=bool(entry.notifications_enabled),
            last_login=entry.last_login,
            created_at=entry.created_at,
        )
