# /backend/authguard/core/config.py

import logging
from typing import Literal

from pydantic import (
    AliasChoices,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", case_sensitive=False
    )

    # --- Environment & Debug ---
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = Field(
        default="development", validation_alias="APP_ENV"
    )
    DEBUG: bool = Field(default=False, validation_alias=AliasChoices("DEBUG_MODE", "DEBUG"))
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
    )
    APP_NAME: str = Field(default="AuthGuard", validation_alias="APP_NAME")

    # --- Database Settings ---
    DATABASE_URL: str | None = Field(
        default=None,
        description="Full database URL. sqlite:// and postgresql:// are normalised to async drivers.",
        validation_alias="DATABASE_URL",
    )
    POSTGRES_SERVER: str = Field(default="db", validation_alias="POSTGRES_SERVER")
    POSTGRES_USER: str = Field(default="authguard", validation_alias="POSTGRES_USER")
    POSTGRES_PASSWORD: str = Field(default="authguard", validation_alias="POSTGRES_PASSWORD")
    POSTGRES_DB: str = Field(default="authguard", validation_alias="POSTGRES_DB")
    POSTGRES_PORT: int = Field(default=5432, validation_alias="POSTGRES_PORT")
    DB_ECHO: bool = Field(default=False, validation_alias="DB_ECHO")

    # --- Account Lockout Settings ---
    LOGIN_MAX_ATTEMPTS: int = Field(
        default=5,
        description="Max failed login attempts before lockout",
        validation_alias="LOGIN_MAX_ATTEMPTS",
    )
    LOGIN_LOCKOUT_MINUTES: int = Field(
        default=30,
        description="Lockout duration in minutes after max failed attempts",
        validation_alias="LOGIN_LOCKOUT_MINUTES",
    )
    LOGIN_ATTEMPT_WINDOW_MINUTES: int = Field(
        default=30,
        description="Time window (minutes) used to count failures for unknown identifiers",
        validation_alias="LOGIN_ATTEMPT_WINDOW_MINUTES",
    )

    # --- IP Reputation Settings ---
    IP_BLOCK_THRESHOLD: int = Field(
        default=10,
        description="Failed logins from one address inside the window before it is blocked",
        validation_alias="IP_BLOCK_THRESHOLD",
    )
    IP_FAILURE_WINDOW_MINUTES: int = Field(
        default=30,
        description="Trailing window (minutes) for counting failures per address",
        validation_alias="IP_FAILURE_WINDOW_MINUTES",
    )

    # --- Verification Code Settings ---
    VERIFICATION_CODE_LENGTH: int = Field(default=6, validation_alias="VERIFICATION_CODE_LENGTH")
    VERIFICATION_CODE_TTL_MINUTES: int = Field(
        default=10, validation_alias="VERIFICATION_CODE_TTL_MINUTES"
    )
    PASSWORD_RESET_MAX_ATTEMPTS: int = Field(
        default=5, validation_alias="PASSWORD_RESET_MAX_ATTEMPTS"
    )
    TWO_FACTOR_MAX_ATTEMPTS: int = Field(default=5, validation_alias="TWO_FACTOR_MAX_ATTEMPTS")
    PHONE_VERIFICATION_MAX_ATTEMPTS: int = Field(
        default=3, validation_alias="PHONE_VERIFICATION_MAX_ATTEMPTS"
    )
    SMS_MAX_PER_HOUR: int = Field(
        default=5,
        description="Codes that may be sent to one phone number per hour",
        validation_alias="SMS_MAX_PER_HOUR",
    )

    # --- Backup Code Settings ---
    BACKUP_CODE_COUNT: int = Field(default=10, validation_alias="BACKUP_CODE_COUNT")
    BACKUP_CODE_BYTES: int = Field(default=8, validation_alias="BACKUP_CODE_BYTES")

    # --- Twilio SMS Settings ---
    TWILIO_ACCOUNT_SID: str | None = Field(default=None, validation_alias="TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN: str | None = Field(default=None, validation_alias="TWILIO_AUTH_TOKEN")
    TWILIO_FROM_NUMBER: str | None = Field(
        default=None, validation_alias=AliasChoices("TWILIO_FROM_NUMBER", "TWILIO_PHONE_NUMBER")
    )
    TWILIO_API_BASE_URL: str = Field(
        default="https://api.twilio.com/2010-04-01", validation_alias="TWILIO_API_BASE_URL"
    )
    SMS_GATEWAY_TIMEOUT_SECONDS: float = Field(
        default=5.0, validation_alias="SMS_GATEWAY_TIMEOUT_SECONDS"
    )
    SMS_DEFAULT_COUNTRY_CODE: str = Field(default="1", validation_alias="SMS_DEFAULT_COUNTRY_CODE")

    # --- Security Log (fail2ban) ---
    SECURITY_LOG_PATH: str = Field(default="logs/security.log", validation_alias="SECURITY_LOG_PATH")
    SECURITY_LOG_ENABLED: bool = Field(default=True, validation_alias="SECURITY_LOG_ENABLED")

    # --- Audit Queries & Password Policy ---
    SECURITY_EVENT_QUERY_LIMIT_MAX: int = Field(
        default=500, validation_alias="SECURITY_EVENT_QUERY_LIMIT_MAX"
    )
    PASSWORD_MIN_LENGTH: int = Field(default=8, validation_alias="PASSWORD_MIN_LENGTH")

    @field_validator(
        "LOGIN_MAX_ATTEMPTS",
        "LOGIN_LOCKOUT_MINUTES",
        "LOGIN_ATTEMPT_WINDOW_MINUTES",
        "IP_BLOCK_THRESHOLD",
        "IP_FAILURE_WINDOW_MINUTES",
        "VERIFICATION_CODE_LENGTH",
        "VERIFICATION_CODE_TTL_MINUTES",
        "PASSWORD_RESET_MAX_ATTEMPTS",
        "TWO_FACTOR_MAX_ATTEMPTS",
        "PHONE_VERIFICATION_MAX_ATTEMPTS",
        "SMS_MAX_PER_HOUR",
        "BACKUP_CODE_COUNT",
        "BACKUP_CODE_BYTES",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("SMS_DEFAULT_COUNTRY_CODE", mode="before")
    @classmethod
    def strip_country_code(cls, v: str | int) -> str:
        return str(v).lstrip("+").strip()

    @model_validator(mode="after")
    def _apply_debug_overrides(self) -> "Settings":
        if self.DEBUG and self.LOG_LEVEL != "DEBUG":
            logger.info("DEBUG mode is ON. Overriding LOG_LEVEL to DEBUG.")
            self.LOG_LEVEL = "DEBUG"
        return self

    def _build_async_dsn(self) -> str:
        if self.DATABASE_URL:
            url = self.DATABASE_URL
            if url.startswith("sqlite+aiosqlite://") or url.startswith("postgresql+asyncpg://"):
                return url
            if url.startswith("sqlite://"):
                return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
            if url.startswith(("postgres://", "postgresql://")):
                return "postgresql+asyncpg://" + url.split("://", 1)[1]
            raise ValueError(f"Unsupported DATABASE_URL scheme: {url.split('://', 1)[0]}")
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @computed_field(repr=False)
    @property
    def ASYNC_SQLALCHEMY_DATABASE_URL(self) -> str:
        return self._build_async_dsn()

    @property
    def is_sqlite(self) -> bool:
        return self.ASYNC_SQLALCHEMY_DATABASE_URL.startswith("sqlite")

    @property
    def twilio_configured(self) -> bool:
        return bool(self.TWILIO_ACCOUNT_SID and self.TWILIO_AUTH_TOKEN and self.TWILIO_FROM_NUMBER)

    def max_attempts_for(self, purpose: str) -> int:
        """Attempt budget of a verification code, by purpose value."""
        budgets = {
            "PASSWORD_RESET": self.PASSWORD_RESET_MAX_ATTEMPTS,
            "TWO_FACTOR_AUTH": self.TWO_FACTOR_MAX_ATTEMPTS,
            "PHONE_VERIFICATION": self.PHONE_VERIFICATION_MAX_ATTEMPTS,
        }
        key = getattr(purpose, "value", purpose)
        if key not in budgets:
            raise ValueError(f"Unknown verification code purpose: {purpose!r}")
        return budgets[key]


settings = Settings()
