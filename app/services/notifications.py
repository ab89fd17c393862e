from __future__ import annotations

import base64
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from app.config import Settings

LOGGER = logging.getLogger(__name__)

GMAIL_SEND_ENDPOINT = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
TWILIO_MESSAGES_ENDPOINT = (
    "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"
)
TOKEN_REFRESH_MARGIN = timedelta(minutes=1)

_SUBJECTS = {
    "verification": "Email Verification Code",
    "password_reset": "Password Reset Code",
    "login": "Login Verification Code",
}

_LEADS = {
    "verification": "Your verification code is",
    "password_reset": "Your password reset code is",
    "login": "Your login verification code is",
}


class DeliveryError(RuntimeError):
    pass


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str


def render_otp_message(
    code: str, purpose: str, ttl_seconds: int, channel: str, app_name: str
) -> RenderedMessage:
    minutes = max(1, ttl_seconds // 60)
    subject = f"{app_name}: {_SUBJECTS.get(purpose, 'Verification Code')}"
    lead = _LEADS.get(purpose, "Your verification code is")
    if channel == "phone":
        body = (
            f"{app_name}: {lead} {code}."
            f" This code expires in {minutes} minute(s)."
        )
    else:
        body = (
            f"{lead} {code}.\n\n"
            f"This code expires in {minutes} minute(s).\n\n"
            "If you didn't request this code, please ignore this email."
        )
    return RenderedMessage(subject=subject, body=body)


def render_welcome_message(first_name: str, app_name: str) -> RenderedMessage:
    return RenderedMessage(
        subject=f"Welcome to {app_name}!",
        body=(
            f"Hello {first_name}, welcome to {app_name}! "
            "We're excited to have you on board.\n\n"
            "Get started by verifying your email address and exploring "
            "our counselor profiles."
        ),
    )


class Notifier(ABC):
    @abstractmethod
    def send(self, address: str, channel: str, message: RenderedMessage) -> None:
        """Deliver ``message`` to ``address``; raises DeliveryError on failure."""


class LogNotifier(Notifier):
    """Development notifier: logs what would have been sent."""

    def send(self, address: str, channel: str, message: RenderedMessage) -> None:
        LOGGER.warning(
            "Delivery disabled, %s to=%s subject=%s", channel, address, message.subject
        )


class GmailNotifier(Notifier):
    """Sends email through the Gmail REST API with an OAuth refresh token.

    The access token is kept in memory and only refreshed, and written back
    to the token file, once it is within ``TOKEN_REFRESH_MARGIN`` of expiry.
    """

    def __init__(self, settings: Settings) -> None:
        self._sender = settings.otp_email_sender
        self._token_path = _credentials_file(settings.gmail_token_file, "token.json")
        self._credentials_path = _credentials_file(
            settings.gmail_credentials_file, "credentials.json"
        )
        self._access_token: Optional[str] = None
        self._access_expiry: Optional[datetime] = None

    def send(self, address: str, channel: str, message: RenderedMessage) -> None:
        if not self._sender:
            raise DeliveryError("Email sender is not configured")

        raw_message = _build_raw_message(
            self._sender, address, message.subject, message.body
        )
        request = Request(
            GMAIL_SEND_ENDPOINT,
            data=json.dumps({"raw": raw_message}).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._current_token()}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        _post(request, "Gmail send")
        LOGGER.info("Sent email to=%s subject=%s", address, message.subject)

    def _current_token(self) -> str:
        if _still_fresh(self._access_token, self._access_expiry):
            return self._access_token

        token_data = _load_json(self._token_path)
        token = token_data.get("token")
        expiry = _parse_expiry(token_data.get("expiry"))
        if not _still_fresh(token, expiry):
            token, expiry = self._refresh(token_data)
            token_data["token"] = token
            token_data["expiry"] = expiry.isoformat()
            self._token_path.write_text(json.dumps(token_data), encoding="utf-8")
        self._access_token, self._access_expiry = token, expiry
        return token

    def _refresh(self, token_data: dict[str, Any]) -> tuple[str, datetime]:
        refresh_token = token_data.get("refresh_token")
        if not refresh_token:
            raise DeliveryError("Gmail refresh token is missing")

        client_id, client_secret = self._client_details(token_data)
        request = Request(
            token_data.get("token_uri") or GOOGLE_TOKEN_ENDPOINT,
            data=urlencode(
                {
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                }
            ).encode("utf-8"),
            method="POST",
        )
        data = json.loads(_post(request, "Gmail token refresh") or b"{}")
        access_token = data.get("access_token")
        if not access_token:
            raise DeliveryError("Gmail token refresh did not return an access token")
        LOGGER.info("Refreshed Gmail access token")
        expires_in = int(data.get("expires_in", 3600))
        return access_token, datetime.now(timezone.utc) + timedelta(seconds=expires_in)

    def _client_details(self, token_data: dict[str, Any]) -> tuple[str, str]:
        client_id = token_data.get("client_id")
        client_secret = token_data.get("client_secret")
        if client_id and client_secret:
            return client_id, client_secret

        credentials = _load_json(self._credentials_path)
        installed = credentials.get("installed", {})
        client_id = installed.get("client_id") or credentials.get("client_id")
        client_secret = installed.get("client_secret") or credentials.get("client_secret")
        if not client_id or not client_secret:
            raise DeliveryError("Gmail client credentials are missing")
        return client_id, client_secret


class TwilioSmsNotifier(Notifier):
    def __init__(self, settings: Settings) -> None:
        self._account_sid = settings.twilio_account_sid
        self._auth_token = settings.twilio_auth_token
        self._from_phone = settings.twilio_phone_number
        self._default_country_code = settings.default_country_code

    def send(self, address: str, channel: str, message: RenderedMessage) -> None:
        if not self._account_sid or not self._auth_token or not self._from_phone:
            raise DeliveryError("Twilio is not configured")

        to_number = normalize_e164(address, self._default_country_code)
        from_number = normalize_e164(self._from_phone, self._default_country_code)
        LOGGER.info("Sending SMS to=%s from=%s", to_number, from_number)
        payload = urlencode(
            {"To": to_number, "From": from_number, "Body": message.body}
        ).encode("utf-8")
        credentials = base64.b64encode(
            f"{self._account_sid}:{self._auth_token}".encode("utf-8")
        ).decode("ascii")
        request = Request(
            TWILIO_MESSAGES_ENDPOINT.format(account_sid=self._account_sid),
            data=payload,
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        _post(request, "Twilio send")


class ChannelDispatcher(Notifier):
    def __init__(self, email: Notifier, phone: Notifier) -> None:
        self._by_channel = {"email": email, "phone": phone}

    def send(self, address: str, channel: str, message: RenderedMessage) -> None:
        notifier = self._by_channel.get(channel)
        if notifier is None:
            raise DeliveryError(f"No notifier for channel {channel}")
        notifier.send(address, channel, message)


def build_notifier(settings: Settings) -> Notifier:
    if settings.notifier_backend == "log":
        return LogNotifier()
    return ChannelDispatcher(
        email=GmailNotifier(settings), phone=TwilioSmsNotifier(settings)
    )


def normalize_e164(phone_number: str, default_country_code: str) -> str:
    digits = re.sub(r"\D", "", phone_number.strip())
    if not digits:
        raise DeliveryError("Phone number is missing")
    if len(digits) == 10:
        default_code = re.sub(r"\D", "", default_country_code)
        if not default_code:
            raise DeliveryError("Default country code is not configured")
        digits = f"{default_code}{digits}"
    if len(digits) < 10 or len(digits) > 15:
        raise DeliveryError("Phone number must include a valid country code")
    return f"+{digits}"


def _build_raw_message(sender: str, recipient: str, subject: str, body: str) -> str:
    lines = [
        f"From: {sender}",
        f"To: {recipient}",
        f"Subject: {subject}",
        "MIME-Version: 1.0",
        "Content-Type: text/plain; charset=utf-8",
        "",
        body,
    ]
    message = "\r\n".join(lines)
    # Gmail API expects base64url-encoded RFC 2822 content.
    return base64.urlsafe_b64encode(message.encode("utf-8")).decode("ascii")


def _parse_expiry(raw_value: Optional[str]) -> Optional[datetime]:
    if not raw_value:
        return None
    try:
        parsed = datetime.fromisoformat(raw_value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise DeliveryError(f"Missing Gmail file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _credentials_file(configured: str, default_name: str) -> Path:
    if configured:
        return Path(configured)
    return Path(__file__).resolve().parents[2] / "credentials" / default_name


def _still_fresh(token: Optional[str], expiry: Optional[datetime]) -> bool:
    if not token or expiry is None:
        return False
    return expiry > datetime.now(timezone.utc) + TOKEN_REFRESH_MARGIN


def _post(request: Request, action: str) -> bytes:
    try:
        with urlopen(request, timeout=10) as response:
            return response.read()
    except HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        LOGGER.error("%s failed status=%s response=%s", action, exc.code, error_body)
        raise DeliveryError(f"{action} failed") from exc
    except URLError as exc:
        raise DeliveryError(f"{action} could not reach the server") from exc
