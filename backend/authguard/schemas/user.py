# backend/authguard/schemas/user.py
import uuid
from datetime import datetime

from fastapi_users import schemas
from pydantic import field_validator

from authguard.core.config import settings
from authguard.services.sms_service import is_valid_phone_number, normalize_phone_number


class UserRead(schemas.BaseUser[uuid.UUID]):
    # Inherits id, email, is_active, is_superuser, is_verified
    phone_number: str | None = None
    phone_number_verified: bool = False
    two_factor_enabled: bool = False
    account_locked: bool = False
    account_locked_until: datetime | None = None
    login_count: int = 0
    last_login_at: datetime | None = None


class UserCreate(schemas.BaseUserCreate):
    # Inherits email, password, is_active, is_superuser, is_verified
    phone_number: str | None = None

    @field_validator("password")
    @classmethod
    def password_long_enough(cls, v: str) -> str:
        if len(v) < settings.PASSWORD_MIN_LENGTH:
            raise ValueError(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters.")
        return v

    @field_validator("phone_number")
    @classmethod
    def phone_number_e164(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not is_valid_phone_number(v):
            raise ValueError("Invalid phone number format.")
        return normalize_phone_number(v)
