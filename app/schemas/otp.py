from typing import Optional

from pydantic import BaseModel, Field, field_validator

from app.schemas.users import normalize_email, normalize_phone

OTP_LENGTH = 6


def _validate_code(value: str) -> str:
    cleaned = value.strip()
    if len(cleaned) != OTP_LENGTH or not cleaned.isdigit():
        raise ValueError("OTP must be 6 digits")
    return cleaned


class OtpSubmitRequest(BaseModel):
    otp: str = Field(min_length=OTP_LENGTH, max_length=OTP_LENGTH)

    @field_validator("otp")
    @classmethod
    def validate_otp(cls, value: str) -> str:
        return _validate_code(value)


class PhoneOtpRequest(BaseModel):
    phone: str = Field(min_length=7, max_length=20)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        return normalize_phone(value)


class EmailOtpRequest(BaseModel):
    email: str = Field(max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)


class EmailOtpVerifyRequest(EmailOtpRequest):
    otp: str = Field(min_length=OTP_LENGTH, max_length=OTP_LENGTH)

    @field_validator("otp")
    @classmethod
    def validate_otp(cls, value: str) -> str:
        return _validate_code(value)


class ResetPasswordRequest(EmailOtpVerifyRequest):
    new_password: str = Field(min_length=6, max_length=128)


class OtpResponse(BaseModel):
    message: str
    expires_in_seconds: Optional[int] = None
    otp: Optional[str] = None


class MessageResponse(BaseModel):
    message: str
