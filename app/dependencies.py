from fastapi import Depends, Header, HTTPException, Request, status

from app.services.container import Services
from app.services.tokens import TokenError


def get_services(request: Request) -> Services:
    return request.app.state.services


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header",
        )
    return token


def get_current_user_id(
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> int:
    token = _bearer_token(authorization)
    try:
        access_data = services.tokens.decode_access_token(token)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    user_id = services.sessions.get_user_id(access_data.session_id)
    if user_id is None or user_id != access_data.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
        )
    return access_data.user_id


def get_refresh_token(authorization: str | None = Header(default=None)) -> str:
    return _bearer_token(authorization)
