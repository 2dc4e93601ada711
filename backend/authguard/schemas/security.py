# backend/authguard/schemas/security.py
"""Validated inputs of the login and code-based flows."""

from pydantic import BaseModel, Field, field_validator

from authguard.core.config import settings
from authguard.services.sms_service import is_valid_phone_number, normalize_phone_number


def _phone(v: str) -> str:
    if not is_valid_phone_number(v):
        raise ValueError("Invalid phone number format.")
    return normalize_phone_number(v)


def _numeric_code(v: str) -> str:
    v = v.strip()
    if not v.isdigit() or len(v) != settings.VERIFICATION_CODE_LENGTH:
        raise ValueError(f"Code must be {settings.VERIFICATION_CODE_LENGTH} digits.")
    return v


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=320)
    secret: str = Field(..., min_length=1, max_length=1024)
    source_address: str = Field(..., min_length=1, max_length=64)
    user_agent: str | None = Field(default=None, max_length=1024)

    @field_validator("identifier")
    @classmethod
    def normalize_identifier(cls, v: str) -> str:
        return v.strip().lower()


class PhoneNumberInput(BaseModel):
    phone_number: str = Field(..., min_length=1, max_length=32)

    @field_validator("phone_number")
    @classmethod
    def phone_number_e164(cls, v: str) -> str:
        return _phone(v)


class VerificationCodeInput(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)

    @field_validator("code")
    @classmethod
    def code_is_numeric(cls, v: str) -> str:
        return _numeric_code(v)


class TwoFactorCodeInput(BaseModel):
    """A numeric 2FA code or a backup code."""

    code: str = Field(..., min_length=1, max_length=64)

    @field_validator("code")
    @classmethod
    def strip_code(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Code is required.")
        return v


class PasswordResetCompletion(BaseModel):
    phone_number: str = Field(..., min_length=1, max_length=32)
    code: str = Field(..., min_length=1, max_length=12)
    new_password: str = Field(..., max_length=1024)

    @field_validator("phone_number")
    @classmethod
    def phone_number_e164(cls, v: str) -> str:
        return _phone(v)

    @field_validator("code")
    @classmethod
    def code_is_numeric(cls, v: str) -> str:
        return _numeric_code(v)

    @field_validator("new_password")
    @classmethod
    def password_long_enough(cls, v: str) -> str:
        if len(v) < settings.PASSWORD_MIN_LENGTH:
            raise ValueError(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters.")
        return v
