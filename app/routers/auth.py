import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from app.dependencies import get_current_user_id, get_refresh_token, get_services
from app.schemas.otp import (
    EmailOtpRequest,
    EmailOtpVerifyRequest,
    MessageResponse,
    OtpResponse,
    OtpSubmitRequest,
    PhoneOtpRequest,
    ResetPasswordRequest,
)
from app.schemas.tokens import TokenRefreshRequest, TokenRefreshResponse
from app.schemas.users import AuthResponse, LoginRequest, RegisterRequest, UserResponse
from app.services.container import Services
from app.services.notifications import (
    DeliveryError,
    render_otp_message,
    render_welcome_message,
)
from app.services.otp import IssuedOtp, OtpVerificationError
from app.services.otp_store import StoreError
from app.services.tokens import TokenError
from app.services.users import UserError, UserNotFound

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = (
    "If an account with this email exists, you will receive a password reset code."
)
LOGIN_CODE_MESSAGE = (
    "If an account with this email exists, you will receive a login code."
)


def _store_unavailable(exc: StoreError) -> HTTPException:
    LOGGER.error("OTP store failure: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Verification service is temporarily unavailable",
    )


def _issue_and_send(
    services: Services, user_id: int, channel: str, purpose: str, address: str
) -> IssuedOtp:
    issued = services.otp.issue(user_id, channel, purpose, address)
    message = render_otp_message(
        issued.code, purpose, issued.ttl_seconds, channel, services.settings.app_name
    )
    try:
        services.notifier.send(address, channel, message)
    except DeliveryError as exc:
        LOGGER.warning(
            "OTP delivery failed user=%s channel=%s purpose=%s: %s",
            user_id,
            channel,
            purpose,
            exc,
        )
    return issued


def _issue_or_fail(
    services: Services, user_id: int, channel: str, purpose: str, address: str
) -> IssuedOtp:
    try:
        return _issue_and_send(services, user_id, channel, purpose, address)
    except StoreError as exc:
        raise _store_unavailable(exc) from exc


def _verify(
    services: Services, user_id: int, channel: str, purpose: str, code: str
) -> None:
    try:
        services.otp.verify(user_id, channel, purpose, code)
    except OtpVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except StoreError as exc:
        raise _store_unavailable(exc) from exc


def _debug_code(services: Services, issued: Optional[IssuedOtp]) -> Optional[str]:
    if issued is None or not services.settings.otp_debug:
        return None
    return issued.code


def _otp_response(
    services: Services, message: str, issued: Optional[IssuedOtp]
) -> OtpResponse:
    return OtpResponse(
        message=message,
        expires_in_seconds=services.otp.ttl_seconds,
        otp=_debug_code(services, issued),
    )


def _start_session(
    services: Services,
    user: UserResponse,
    login_method: str,
    message: str,
    issued: Optional[IssuedOtp] = None,
) -> AuthResponse:
    session_id = services.sessions.create_session(user.id, login_method)
    try:
        access_token = services.tokens.create_access_token(user.id, session_id)
        refresh_token = services.tokens.create_refresh_token(user.id, session_id)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    return AuthResponse(
        message=message,
        user=user,
        access_token=access_token,
        refresh_token=refresh_token,
        token_type="bearer",
        expires_in_seconds=int(services.tokens.access_ttl.total_seconds()),
        otp=_debug_code(services, issued),
    )


def _require_user(services: Services, user_id: int) -> UserResponse:
    user = services.users.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.post(
    "/register",
    response_model=AuthResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
)
def register(
    payload: RegisterRequest, services: Services = Depends(get_services)
) -> AuthResponse:
    try:
        user = services.users.register(payload)
    except UserError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    issued = None
    try:
        issued = _issue_and_send(services, user.id, "email", "verification", user.email)
    except StoreError as exc:
        LOGGER.error("Could not issue verification code for user=%s: %s", user.id, exc)
    try:
        services.notifier.send(
            user.email,
            "email",
            render_welcome_message(user.first_name, services.settings.app_name),
        )
    except DeliveryError as exc:
        LOGGER.warning("Welcome email failed user=%s: %s", user.id, exc)

    return _start_session(
        services,
        user,
        "register",
        "User registered successfully. Please check your email for verification code.",
        issued,
    )


@router.post("/login", response_model=AuthResponse, response_model_exclude_none=True)
def login(payload: LoginRequest, services: Services = Depends(get_services)) -> AuthResponse:
    try:
        user = services.users.authenticate(payload.email, payload.password)
    except UserError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    return _start_session(services, user, "password", "Login successful")


@router.post("/login/otp/request", response_model=OtpResponse, response_model_exclude_none=True)
def request_login_otp(
    payload: EmailOtpRequest, services: Services = Depends(get_services)
) -> OtpResponse:
    user = services.users.find_by_email(payload.email)
    if user is None or not user.is_active:
        return _otp_response(services, LOGIN_CODE_MESSAGE, None)
    issued = _issue_or_fail(services, user.id, "email", "login", user.email)
    return _otp_response(services, LOGIN_CODE_MESSAGE, issued)


@router.post("/login/otp/verify", response_model=AuthResponse, response_model_exclude_none=True)
def verify_login_otp(
    payload: EmailOtpVerifyRequest, services: Services = Depends(get_services)
) -> AuthResponse:
    user = services.users.find_by_email(payload.email)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired OTP",
        )
    _verify(services, user.id, "email", "login", payload.otp)
    return _start_session(services, user, "otp", "Login successful")


@router.post("/forgot-password", response_model=OtpResponse, response_model_exclude_none=True)
def forgot_password(
    payload: EmailOtpRequest, services: Services = Depends(get_services)
) -> OtpResponse:
    user = services.users.find_by_email(payload.email)
    if user is None:
        return _otp_response(services, FORGOT_PASSWORD_MESSAGE, None)
    issued = _issue_or_fail(services, user.id, "email", "password_reset", user.email)
    return _otp_response(services, FORGOT_PASSWORD_MESSAGE, issued)


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(
    payload: ResetPasswordRequest, services: Services = Depends(get_services)
) -> MessageResponse:
    user = services.users.find_by_email(payload.email)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired OTP",
        )
    _verify(services, user.id, "email", "password_reset", payload.otp)
    services.users.reset_password(user.id, payload.new_password)
    services.sessions.revoke_all_for_user(user.id)
    return MessageResponse(
        message="Password reset successful. You can now login with your new password."
    )


@router.post("/verify-email", response_model=MessageResponse)
def verify_email(
    payload: OtpSubmitRequest,
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> MessageResponse:
    _verify(services, user_id, "email", "verification", payload.otp)
    services.users.mark_email_verified(user_id)
    return MessageResponse(message="Email verified successfully!")


@router.post("/resend-email-otp", response_model=OtpResponse, response_model_exclude_none=True)
def resend_email_otp(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> OtpResponse:
    user = _require_user(services, user_id)
    if user.is_email_verified:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email is already verified",
        )
    issued = _issue_or_fail(services, user.id, "email", "verification", user.email)
    return _otp_response(
        services, "Verification code sent to your email address", issued
    )


@router.post("/send-phone-otp", response_model=OtpResponse, response_model_exclude_none=True)
def send_phone_otp(
    payload: PhoneOtpRequest,
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> OtpResponse:
    issued = _issue_or_fail(services, user_id, "phone", "verification", payload.phone)
    try:
        services.users.set_phone_pending(user_id, payload.phone)
    except UserNotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)
        ) from exc
    return _otp_response(
        services, "Verification code sent to your phone number", issued
    )


@router.post("/verify-phone", response_model=MessageResponse)
def verify_phone(
    payload: OtpSubmitRequest,
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> MessageResponse:
    _verify(services, user_id, "phone", "verification", payload.otp)
    try:
        services.users.mark_phone_verified(user_id)
    except UserError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc
    return MessageResponse(message="Phone number verified successfully!")


@router.get("/me", response_model=UserResponse)
def get_me(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> UserResponse:
    return _require_user(services, user_id)


@router.post("/refresh", response_model=TokenRefreshResponse)
def refresh_tokens(
    payload: TokenRefreshRequest, services: Services = Depends(get_services)
) -> TokenRefreshResponse:
    try:
        refresh_data = services.tokens.decode_refresh_token(payload.refresh_token)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    user_id = services.sessions.mark_refreshed(refresh_data.session_id)
    if user_id is None or user_id != refresh_data.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token",
        )
    try:
        access_token = services.tokens.create_access_token(
            refresh_data.user_id, refresh_data.session_id
        )
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    return TokenRefreshResponse(
        access_token=access_token,
        token_type="bearer",
        expires_in_seconds=int(services.tokens.access_ttl.total_seconds()),
    )


@router.post("/logout", response_model=MessageResponse)
def logout(
    token: str = Depends(get_refresh_token),
    services: Services = Depends(get_services),
) -> MessageResponse:
    try:
        refresh_data = services.tokens.decode_refresh_token(token)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    if not services.sessions.revoke_session(refresh_data.session_id):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
        )
    return MessageResponse(message="Logged out")
