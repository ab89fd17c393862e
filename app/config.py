import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str = "") -> tuple[str, ...]:
    raw_value = os.getenv(name, default)
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    store_timeout_seconds: float = 5.0
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 30
    otp_ttl_seconds: int = 300
    otp_debug: bool = False
    otp_reaper_interval_seconds: int = 60
    notifier_backend: str = "live"
    app_name: str = "Counselor App"
    otp_email_sender: str = ""
    gmail_token_file: str = ""
    gmail_credentials_file: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    default_country_code: str = "+1"
    cors_origins: tuple[str, ...] = field(default_factory=tuple)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(override=True)
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "5")),
            jwt_secret=os.getenv("JWT_SECRET", ""),
            jwt_algorithm=os.getenv("ALGORITHM", "HS256"),
            access_token_expire_minutes=int(
                os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15")
            ),
            refresh_token_expire_days=int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "30")),
            otp_ttl_seconds=int(os.getenv("OTP_TTL_SECONDS", "300")),
            otp_debug=_env_bool("OTP_DEBUG", False),
            otp_reaper_interval_seconds=int(
                os.getenv("OTP_REAPER_INTERVAL_SECONDS", "60")
            ),
            notifier_backend=os.getenv("NOTIFIER_BACKEND", "live").strip().lower(),
            app_name=os.getenv("APP_NAME", "Counselor App"),
            otp_email_sender=(
                os.getenv("OTP_EMAIL_SENDER")
                or os.getenv("GMAIL_SENDER")
                or os.getenv("EMAIL_USER", "")
            ),
            gmail_token_file=os.getenv("GMAIL_TOKEN_FILE", ""),
            gmail_credentials_file=os.getenv(
                "GMAIL_CREDENTIALS_FILE", os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE", "")
            ),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_phone_number=os.getenv(
                "TWILIO_PHONE_NUMBER", os.getenv("PHONE_NUMBER", "")
            ),
            default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "+1"),
            cors_origins=_env_list(
                "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
