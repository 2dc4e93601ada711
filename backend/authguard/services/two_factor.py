# backend/authguard/services/two_factor.py
"""
SMS two-factor authentication.

Provides functions for:
- Sending a 2FA code to the verified phone number
- Enabling 2FA (confirm a code, create the secret and backup codes)
- Disabling 2FA (password confirmation)
- Verifying the second factor at login, with a code or a backup code
"""

import logging
import uuid
from typing import Literal

import pyotp
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.config import settings
from authguard.core.security import CredentialComparator, verify_password
from authguard.core.timeutils import minutes_until
from authguard.crud.crud_user import user as crud_user
from authguard.db.models.security_event import SecurityEventType, SecuritySeverity
from authguard.db.models.user import User
from authguard.db.models.verification_code import CodePurpose
from authguard.db.session import fail_closed
from authguard.db.types import as_uuid
from authguard.exceptions import (
    AccountLockedError,
    AddressBlockedError,
    CodeExpiredOrInvalidError,
    InvalidCredentialsError,
    TwoFactorStateError,
)
from authguard.services import account_lockout, backup_codes, ip_guard, verification_codes
from authguard.services.security_events import log_security_event
from authguard.services.sms_service import SmsGateway, mask_phone_number

logger = logging.getLogger(__name__)

TwoFactorMethod = Literal["code", "backup_code"]


async def _load_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    async with fail_closed(db, "user lookup"):
        user = await crud_user.get(db, user_id)
    if user is None or not user.is_active:
        raise TwoFactorStateError("Account is not available.")
    return user


async def send_two_factor_code(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    gateway: SmsGateway,
    *,
    source_address: str | None = None,
) -> str:
    """
    Send a TWO_FACTOR_AUTH code to the user's verified phone.

    Returns the masked destination for display.
    """
    user = await _load_user(db, as_uuid(user_id))
    if not user.phone_number or not user.phone_number_verified:
        raise TwoFactorStateError("A verified phone number is required for two-factor authentication.")

    await verification_codes.deliver_code(
        db,
        user.id,
        user.phone_number,
        CodePurpose.TWO_FACTOR_AUTH,
        gateway,
        source_address=source_address,
    )
    return mask_phone_number(user.phone_number)


async def enable_two_factor(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    code: str,
    *,
    source_address: str | None = None,
) -> list[str]:
    """
    Enable 2FA after the user proves the phone with a TWO_FACTOR_AUTH code.

    Returns the plaintext backup codes. They are not retrievable later.
    """
    user = await _load_user(db, as_uuid(user_id))
    if user.two_factor_enabled:
        raise TwoFactorStateError("Two-factor authentication is already enabled.")
    if not user.phone_number or not user.phone_number_verified:
        raise TwoFactorStateError("A verified phone number is required for two-factor authentication.")

    validation = await verification_codes.validate_code(
        db, user.id, CodePurpose.TWO_FACTOR_AUTH, code, source_address=source_address
    )
    if not validation.ok:
        raise CodeExpiredOrInvalidError(attempts_remaining=validation.attempts_remaining)

    codes = backup_codes.generate_backup_codes()

    async with fail_closed(db, "two-factor enable"):
        enabled = await db.execute(
            update(User)
            .where(User.id == user.id, User.two_factor_enabled.is_(False))
            .values(two_factor_enabled=True, two_factor_secret=pyotp.random_base32())
            .execution_options(synchronize_session=False)
        )
        if enabled.rowcount != 1:
            await db.rollback()
            raise TwoFactorStateError("Two-factor authentication is already enabled.")

        await backup_codes.store_backup_codes(db, user.id, codes)
        log_security_event(
            db,
            SecurityEventType.TWO_FACTOR_ENABLED,
            SecuritySeverity.MEDIUM,
            "Two-factor authentication enabled",
            user_id=user.id,
            source_address=source_address,
            metadata={"backup_codes_issued": len(codes)},
        )
        await db.commit()

    logger.info(f"2FA enabled for user {user.id}")
    return codes


async def disable_two_factor(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    password: str,
    comparator: CredentialComparator = verify_password,
    *,
    source_address: str | None = None,
) -> None:
    """Disable 2FA. Requires the current password, which counts as a login attempt."""
    user = await _load_user(db, as_uuid(user_id))
    if not user.two_factor_enabled:
        raise TwoFactorStateError("Two-factor authentication is not enabled.")

    if not comparator(password, user.hashed_password):
        await account_lockout.record_failed_attempt(
            db,
            user.email,
            source_address or "unknown",
            user_id=user.id,
            reason="BAD_PASSWORD_2FA_DISABLE",
        )
        raise InvalidCredentialsError()

    async with fail_closed(db, "two-factor disable"):
        await db.execute(
            update(User)
            .where(User.id == user.id)
            .values(
                two_factor_enabled=False,
                two_factor_secret=None,
                two_factor_backup_codes=None,
                backup_codes_version=User.backup_codes_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        log_security_event(
            db,
            SecurityEventType.TWO_FACTOR_DISABLED,
            SecuritySeverity.HIGH,
            "Two-factor authentication disabled",
            user_id=user.id,
            source_address=source_address,
        )
        await db.commit()

    logger.info(f"2FA disabled for user {user.id}")


def _looks_like_numeric_code(code: str) -> bool:
    return code.isdigit() and len(code) == settings.VERIFICATION_CODE_LENGTH


async def verify_two_factor(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    code: str,
    *,
    source_address: str,
    user_agent: str | None = None,
) -> TwoFactorMethod:
    """
    Complete a login's second factor with an SMS code or a backup code.

    A locked account is refused before the code is looked at. Each failure
    is recorded against the account like a failed password.
    """
    user_id = as_uuid(user_id)
    if await ip_guard.is_blocked(db, source_address):
        raise AddressBlockedError()

    status = await account_lockout.get_lock_status(db, user_id)
    if status.is_locked:
        raise AccountLockedError(status.locked_until, status.remaining_minutes)

    user = await _load_user(db, user_id)
    if not user.two_factor_enabled:
        raise TwoFactorStateError("Two-factor authentication is not enabled.")
    email = user.email

    submitted = (code or "").strip()
    attempts_remaining: int | None = None

    if _looks_like_numeric_code(submitted):
        validation = await verification_codes.validate_code(
            db, user_id, CodePurpose.TWO_FACTOR_AUTH, submitted, source_address=source_address
        )
        if validation.ok:
            await account_lockout.reset_attempts(db, user_id)
            return "code"
        attempts_remaining = validation.attempts_remaining
    elif await backup_codes.consume_backup_code(
        db, user_id, submitted, source_address=source_address
    ):
        await account_lockout.reset_attempts(db, user_id)
        return "backup_code"

    result = await account_lockout.record_failed_attempt(
        db,
        email,
        source_address,
        user_agent,
        user_id=user_id,
        reason="TWO_FACTOR_FAILED",
    )
    await ip_guard.evaluate_address(db, source_address, account_locked=result.should_block_ip)
    if result.locked:
        raise AccountLockedError(
            result.locked_until,
            minutes_until(result.locked_until) if result.locked_until else None,
        )
    raise CodeExpiredOrInvalidError(attempts_remaining=attempts_remaining)
