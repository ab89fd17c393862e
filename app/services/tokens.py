from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from app.config import Settings


class TokenError(ValueError):
    pass


@dataclass(frozen=True)
class TokenData:
    user_id: int
    session_id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    def __init__(self, settings: Settings) -> None:
        self._secret = settings.jwt_secret
        self._algorithm = settings.jwt_algorithm
        self.access_ttl = timedelta(minutes=settings.access_token_expire_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_expire_days)

    def create_access_token(self, user_id: int, session_id: str) -> str:
        return self._encode(user_id, "sid", session_id, "access", self.access_ttl)

    def create_refresh_token(self, user_id: int, session_id: str) -> str:
        return self._encode(user_id, "jti", session_id, "refresh", self.refresh_ttl)

    def decode_access_token(self, token: str) -> TokenData:
        payload = self._decode(token, expected_type="access")
        session_id = payload.get("sid")
        if not session_id:
            raise TokenError("Access token is missing session id")
        return TokenData(user_id=_parse_subject(payload), session_id=session_id)

    def decode_refresh_token(self, token: str) -> TokenData:
        payload = self._decode(token, expected_type="refresh")
        session_id = payload.get("jti")
        if not session_id:
            raise TokenError("Refresh token is missing session id")
        return TokenData(user_id=_parse_subject(payload), session_id=session_id)

    def _encode(
        self,
        user_id: int,
        session_claim: str,
        session_id: str,
        token_type: str,
        ttl: timedelta,
    ) -> str:
        if not self._secret:
            raise TokenError("JWT secret is not configured")
        now = _utcnow()
        payload = {
            "sub": str(user_id),
            session_claim: session_id,
            "type": token_type,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def _decode(self, token: str, expected_type: str) -> dict:
        if not token:
            raise TokenError("Token is missing")
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise TokenError("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenError("Invalid token") from exc
        if payload.get("type") != expected_type:
            raise TokenError("Invalid token type")
        return payload


def _parse_subject(payload: dict) -> int:
    subject = payload.get("sub")
    if not subject:
        raise TokenError("Token subject is missing")
    try:
        return int(subject)
    except (TypeError, ValueError) as exc:
        raise TokenError("Invalid token subject") from exc
