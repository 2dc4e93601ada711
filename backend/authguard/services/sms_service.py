# backend/authguard/services/sms_service.py
"""
SMS delivery for verification codes.
Supports the Twilio Messages REST API.
"""

import logging
import re
from functools import lru_cache
from typing import NamedTuple, Protocol

import httpx

from authguard.core.config import settings
from authguard.db.models.verification_code import CodePurpose

logger = logging.getLogger(__name__)

# Twilio error codes worth translating for the end user
TWILIO_ERROR_MESSAGES = {
    21211: "Invalid phone number format",
    21614: "Phone number is not verified. In trial mode, only verified numbers can receive SMS.",
    21408: "Permission denied. Cannot send SMS to this number.",
}

_NON_DIGITS = re.compile(r"\D")


class DeliveryResult(NamedTuple):
    success: bool
    error: str | None = None
    message_id: str | None = None


class SmsGateway(Protocol):
    async def send(self, destination: str, body: str) -> DeliveryResult: ...


def normalize_phone_number(phone_number: str, default_country_code: str | None = None) -> str:
    """
    Normalize a phone number to E.164.

    Ten-digit national numbers get the default country code; anything else
    is taken as already carrying its country code.
    """
    country_code = default_country_code or settings.SMS_DEFAULT_COUNTRY_CODE
    raw = (phone_number or "").strip()
    digits = _NON_DIGITS.sub("", raw)

    if raw.startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+{country_code}{digits}"
    return f"+{digits}"


def is_valid_phone_number(phone_number: str) -> bool:
    """Between 10 and 15 digits (E.164 allows at most 15)."""
    digits = _NON_DIGITS.sub("", phone_number or "")
    return 10 <= len(digits) <= 15


def format_phone_number(phone_number: str) -> str:
    """Format a North American number for display, e.g. +1 (954) 234-8040."""
    digits = _NON_DIGITS.sub("", phone_number or "")
    if len(digits) == 11 and digits.startswith("1"):
        return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
    if len(digits) == 10:
        return f"+1 ({digits[0:3]}) {digits[3:6]}-{digits[6:]}"
    return phone_number


def mask_phone_number(phone_number: str | None) -> str:
    """Keep only the last four digits, for logs."""
    digits = _NON_DIGITS.sub("", phone_number or "")
    if len(digits) <= 4:
        return "*" * len(digits)
    return "+" + "*" * (len(digits) - 4) + digits[-4:]


def build_code_message(purpose: CodePurpose, code: str) -> str:
    """Text of the SMS carrying a verification code."""
    app = settings.APP_NAME
    ttl = settings.VERIFICATION_CODE_TTL_MINUTES
    if purpose == CodePurpose.PASSWORD_RESET:
        return (
            f"Your {app} password reset code is: {code}. This code expires in {ttl} minutes. "
            "If you didn't request this, please ignore this message."
        )
    if purpose == CodePurpose.TWO_FACTOR_AUTH:
        return (
            f"Your {app} 2FA code is: {code}. This code expires in {ttl} minutes. "
            "Never share this code with anyone."
        )
    return (
        f"Welcome to {app}! Your phone verification code is: {code}. "
        f"This code expires in {ttl} minutes."
    )


class TwilioSmsGateway:
    """
    Sends SMS through the Twilio REST API.

    Never raises for delivery problems: every failure is reported as
    ``DeliveryResult(success=False, error=...)``.
    """

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_FROM_NUMBER
        self.base_url = (base_url or settings.TWILIO_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.SMS_GATEWAY_TIMEOUT_SECONDS
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def _post(self, client: httpx.AsyncClient, url: str, data: dict) -> httpx.Response:
        return await client.post(
            url, data=data, auth=(self.account_sid, self.auth_token), timeout=self.timeout
        )

    async def send(self, destination: str, body: str) -> DeliveryResult:
        masked = mask_phone_number(destination)
        if not self.configured:
            logger.warning(f"Twilio not configured. Would have sent SMS to {masked}.")
            return DeliveryResult(success=False, error="SMS gateway not configured")

        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        data = {"From": self.from_number, "To": destination, "Body": body}

        try:
            if self._client is not None:
                response = await self._post(self._client, url, data)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, url, data)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send SMS to {masked}: {e}", exc_info=True)
            return DeliveryResult(success=False, error="SMS gateway unavailable")

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code in (200, 201):
            message_id = payload.get("sid")
            logger.info(f"SMS sent successfully to {masked}: {message_id}")
            return DeliveryResult(success=True, message_id=message_id)

        error_code = payload.get("code")
        error = TWILIO_ERROR_MESSAGES.get(error_code) or payload.get("message") or "Failed to send SMS"
        logger.error(f"Twilio API error: {response.status_code} code={error_code} to {masked}")
        return DeliveryResult(success=False, error=error)


@lru_cache(maxsize=1)
def get_sms_gateway() -> TwilioSmsGateway:
    """The process-wide gateway built from settings."""
    return TwilioSmsGateway()
