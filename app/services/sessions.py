from datetime import datetime, timedelta
import logging
import secrets
from typing import Callable, Optional

from sqlalchemy import delete, select, update

from app.database import Database
from app.models.session import SessionEntry
from app.services.otp import utcnow

LOGGER = logging.getLogger(__name__)

LOGIN_METHODS = ("password", "otp", "register")


class SessionStore:
    """Server-side record of refresh-token sessions.

    A session stays usable until it expires or is revoked, either by logout
    or by a password reset, which signs the user out everywhere.
    """

    def __init__(
        self,
        database: Database,
        ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._database = database
        self._ttl = ttl
        self._clock = clock

    def create_session(self, user_id: int, login_method: str) -> str:
        if login_method not in LOGIN_METHODS:
            raise ValueError(f"Unsupported login method: {login_method}")
        now = self._clock()
        token = secrets.token_urlsafe(32)
        with self._database.session_scope() as session:
            session.execute(delete(SessionEntry).where(SessionEntry.expires_at <= now))
            session.add(
                SessionEntry(
                    token=token,
                    user_id=user_id,
                    login_method=login_method,
                    created_at=now,
                    expires_at=now + self._ttl,
                )
            )
        LOGGER.info("Started session user=%s method=%s", user_id, login_method)
        return token

    def get_user_id(self, token: str) -> Optional[int]:
        with self._database.session_scope() as session:
            return session.execute(
                select(SessionEntry.user_id).where(*self._live(token))
            ).scalar_one_or_none()

    def mark_refreshed(self, token: str) -> Optional[int]:
        """Stamp a refresh on a live session and return its user id."""
        with self._database.session_scope() as session:
            entry = session.execute(
                select(SessionEntry).where(*self._live(token))
            ).scalar_one_or_none()
            if entry is None:
                return None
            entry.last_refreshed_at = self._clock()
            return entry.user_id

    def revoke_session(self, token: str) -> bool:
        with self._database.session_scope() as session:
            result = session.execute(
                update(SessionEntry)
                .where(SessionEntry.token == token, SessionEntry.revoked_at.is_(None))
                .values(revoked_at=self._clock())
            )
            return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int) -> int:
        with self._database.session_scope() as session:
            result = session.execute(
                update(SessionEntry)
                .where(SessionEntry.user_id == user_id, SessionEntry.revoked_at.is_(None))
                .values(revoked_at=self._clock())
            )
            revoked = result.rowcount
        if revoked:
            LOGGER.info("Revoked %s sessions for user=%s", revoked, user_id)
        return revoked

    def _live(self, token: str):
        return (
            SessionEntry.token == token,
            SessionEntry.revoked_at.is_(None),
            SessionEntry.expires_at > self._clock(),
        )
