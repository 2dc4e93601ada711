# backend/authguard/services/password_reset.py
"""
Password reset by SMS code.

The request step answers the same way whether or not an account owns the
number; a code is only issued when an active account has it verified.
"""

import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.config import settings
from authguard.core.security import get_password_hash
from authguard.core.security_logger import security_log
from authguard.core.timeutils import utc_now
from authguard.crud.crud_user import user as crud_user
from authguard.db.models.security_event import SecurityEventType, SecuritySeverity
from authguard.db.models.user import User
from authguard.db.models.verification_code import CodePurpose
from authguard.db.session import fail_closed
from authguard.exceptions import CodeExpiredOrInvalidError, DeliveryRateLimitedError
from authguard.services import verification_codes
from authguard.services.security_events import log_security_event
from authguard.services.sms_service import SmsGateway, mask_phone_number, normalize_phone_number

logger = logging.getLogger(__name__)

RESET_REQUESTED_MESSAGE = (
    "If an account with this verified phone number exists, a reset code has been sent."
)


async def request_password_reset(
    db: AsyncSession,
    phone_number: str,
    gateway: SmsGateway,
    *,
    source_address: str | None = None,
) -> str:
    """
    Send a PASSWORD_RESET code if an account has this verified number.

    Always returns RESET_REQUESTED_MESSAGE. Hitting the per-number send
    limit is logged, not reported, because only real accounts can hit it.
    A gateway failure still raises DeliveryFailedError.
    """
    phone_number = normalize_phone_number(phone_number)

    async with fail_closed(db, "password reset request"):
        account = await crud_user.get_by_verified_phone(db, phone_number=phone_number)
        log_security_event(
            db,
            SecurityEventType.PASSWORD_RESET_REQUEST,
            SecuritySeverity.LOW,
            "Password reset requested",
            user_id=account.id if account else None,
            source_address=source_address,
            metadata={"channel": mask_phone_number(phone_number), "matched": account is not None},
        )
        await db.commit()

    if account is None:
        logger.info(f"Password reset requested for unknown number {mask_phone_number(phone_number)}.")
        return RESET_REQUESTED_MESSAGE

    try:
        await verification_codes.deliver_code(
            db,
            account.id,
            phone_number,
            CodePurpose.PASSWORD_RESET,
            gateway,
            source_address=source_address,
        )
    except DeliveryRateLimitedError:
        logger.warning(f"Password reset for user {account.id} suppressed by the SMS limit.")
    return RESET_REQUESTED_MESSAGE


async def complete_password_reset(
    db: AsyncSession,
    phone_number: str,
    code: str,
    new_password: str,
    *,
    source_address: str | None = None,
) -> None:
    """
    Set a new password after a valid PASSWORD_RESET code.

    Clears the failure counter and any timed lock. An indefinite
    (administrative) lock stays in place.
    """
    if len(new_password) < settings.PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters.")

    phone_number = normalize_phone_number(phone_number)

    async with fail_closed(db, "password reset lookup"):
        account = await crud_user.get_by_verified_phone(db, phone_number=phone_number)
        if account is None:
            log_security_event(
                db,
                SecurityEventType.VERIFICATION_CODE_FAILED,
                SecuritySeverity.MEDIUM,
                "Password reset code submitted for unknown number",
                source_address=source_address,
                metadata={
                    "purpose": CodePurpose.PASSWORD_RESET.value,
                    "channel": mask_phone_number(phone_number),
                    "reason": "UNKNOWN_NUMBER",
                },
            )
            await db.commit()
    if account is None:
        security_log.code_failed(source_address, "unknown", CodePurpose.PASSWORD_RESET.value)
        raise CodeExpiredOrInvalidError()

    validation = await verification_codes.validate_code(
        db, account.id, CodePurpose.PASSWORD_RESET, code, source_address=source_address
    )
    if not validation.ok:
        # No attempt count: it would tell a registered number from an unknown one
        raise CodeExpiredOrInvalidError()

    hashed_password = get_password_hash(new_password)
    now = utc_now()

    async with fail_closed(db, "password reset"):
        await db.execute(
            update(User)
            .where(User.id == account.id)
            .values(
                hashed_password=hashed_password,
                password_changed_at=now,
                failed_login_attempts=0,
            )
            .execution_options(synchronize_session=False)
        )
        lifted = await db.execute(
            update(User)
            .where(
                User.id == account.id,
                User.account_locked.is_(True),
                User.account_locked_until.is_not(None),
            )
            .values(account_locked=False, account_locked_until=None, account_locked_reason=None)
            .execution_options(synchronize_session=False)
        )
        log_security_event(
            db,
            SecurityEventType.PASSWORD_RESET_COMPLETE,
            SecuritySeverity.MEDIUM,
            "Password reset completed",
            user_id=account.id,
            source_address=source_address,
            metadata={"code_id": validation.code_id},
        )
        if lifted.rowcount == 1:
            log_security_event(
                db,
                SecurityEventType.ACCOUNT_UNLOCKED,
                SecuritySeverity.MEDIUM,
                "Timed lock lifted by password reset",
                user_id=account.id,
                source_address=source_address,
            )
        await db.commit()

    if lifted.rowcount == 1:
        security_log.account_unlocked(str(account.id), "password_reset")
    logger.info(f"Password reset completed for user {account.id}.")
