# backend/authguard/services/phone_verification.py
"""
Phone number ownership proof.

The number being verified travels with the PHONE_VERIFICATION code record
(its channel address) and is only written to the account once the code is
confirmed. A number can be verified on at most one account; the partial
unique index on users.phone_number backs this up under concurrency.
"""

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.security_logger import security_log
from authguard.db.models.security_event import SecurityEventType, SecuritySeverity
from authguard.db.models.user import User
from authguard.db.models.verification_code import CodePurpose, VerificationCode
from authguard.db.session import fail_closed
from authguard.db.types import as_uuid
from authguard.exceptions import CodeExpiredOrInvalidError, PhoneNumberInUseError
from authguard.services import verification_codes
from authguard.services.security_events import log_security_event
from authguard.services.sms_service import (
    SmsGateway,
    is_valid_phone_number,
    mask_phone_number,
    normalize_phone_number,
)

logger = logging.getLogger(__name__)


async def _verified_elsewhere(db: AsyncSession, user_id: uuid.UUID, phone_number: str) -> bool:
    stmt = select(User.id).where(
        User.phone_number == phone_number,
        User.phone_number_verified.is_(True),
        User.id != user_id,
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def start_phone_verification(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    phone_number: str,
    gateway: SmsGateway,
    *,
    source_address: str | None = None,
) -> str:
    """Send a PHONE_VERIFICATION code to ``phone_number``. Returns the E.164 form."""
    if not is_valid_phone_number(phone_number):
        raise ValueError("Invalid phone number format.")
    user_id = as_uuid(user_id)
    phone_number = normalize_phone_number(phone_number)

    async with fail_closed(db, "phone uniqueness check"):
        taken = await _verified_elsewhere(db, user_id, phone_number)
    if taken:
        raise PhoneNumberInUseError()

    await verification_codes.deliver_code(
        db,
        user_id,
        phone_number,
        CodePurpose.PHONE_VERIFICATION,
        gateway,
        source_address=source_address,
    )
    return phone_number


async def mark_phone_verified(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    phone_number: str,
    *,
    actor_id: str | None = None,
    source_address: str | None = None,
) -> bool:
    """
    Store ``phone_number`` as the account's verified number.

    Raises PhoneNumberInUseError when another account has it verified.
    Returns False when the account does not exist.
    """
    user_id = as_uuid(user_id)

    async with fail_closed(db, "phone verification"):
        if await _verified_elsewhere(db, user_id, phone_number):
            raise PhoneNumberInUseError()
        try:
            result = await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(phone_number=phone_number, phone_number_verified=True)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError:
            await db.rollback()
            raise PhoneNumberInUseError() from None
        if result.rowcount != 1:
            # No row matched; a rollback here would expire the caller's loaded objects
            await db.commit()
            return False

        description = (
            f"Phone number marked verified by administrator {actor_id}"
            if actor_id
            else "Phone number verified"
        )
        log_security_event(
            db,
            SecurityEventType.PHONE_VERIFIED,
            SecuritySeverity.LOW if actor_id is None else SecuritySeverity.MEDIUM,
            description,
            user_id=user_id,
            source_address=source_address,
            metadata={"channel": mask_phone_number(phone_number), "manual": actor_id is not None},
            resolved_by=actor_id,
        )
        await db.commit()

    logger.info(f"Phone {mask_phone_number(phone_number)} verified for user {user_id}.")
    return True


async def confirm_phone_verification(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    code: str,
    *,
    source_address: str | None = None,
) -> str:
    """Confirm the PHONE_VERIFICATION code and store the number. Returns it."""
    user_id = as_uuid(user_id)

    validation = await verification_codes.validate_code(
        db, user_id, CodePurpose.PHONE_VERIFICATION, code, source_address=source_address
    )
    if not validation.ok:
        raise CodeExpiredOrInvalidError(attempts_remaining=validation.attempts_remaining)

    async with fail_closed(db, "verification code lookup"):
        result = await db.execute(
            select(VerificationCode.channel_address).where(
                VerificationCode.id == validation.code_id
            )
        )
        phone_number = result.scalar_one()

    if not await mark_phone_verified(db, user_id, phone_number, source_address=source_address):
        security_log.code_failed(source_address, str(user_id), CodePurpose.PHONE_VERIFICATION.value)
        raise CodeExpiredOrInvalidError()
    return phone_number
