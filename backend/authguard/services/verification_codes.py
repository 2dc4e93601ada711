# backend/authguard/services/verification_codes.py
"""
Short-lived numeric verification codes.

Provides:
- issue_code(): persist a new code for (user, purpose), retiring older unused ones
- deliver_code(): issue_code() plus the per-number send limit and SMS delivery
- validate_code(): attempt-bounded, single-use validation

Every transition of a code record (attempt increment, poisoning, consumption)
is one conditional UPDATE guarded on ``used = false`` and the attempt count,
so concurrent guesses cannot exceed the attempt budget and a correct code
succeeds exactly once.
"""

import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import NamedTuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.config import settings
from authguard.core.locks import KeyedLock
from authguard.core.security_logger import security_log
from authguard.core.timeutils import utc_now
from authguard.db.models.security_event import SecurityEventType, SecuritySeverity
from authguard.db.models.verification_code import CodePurpose, VerificationCode
from authguard.db.session import fail_closed
from authguard.db.types import as_uuid
from authguard.exceptions import DeliveryFailedError, DeliveryRateLimitedError
from authguard.services.security_events import log_security_event
from authguard.services.sms_service import SmsGateway, build_code_message, mask_phone_number

logger = logging.getLogger(__name__)

# Serialises the per-number send limit within this process
_channel_locks = KeyedLock()


class CodeValidation(NamedTuple):
    """Outcome of validate_code()."""

    ok: bool
    attempts_remaining: int = 0
    code_id: int | None = None


def generate_numeric_code(length: int | None = None) -> str:
    """Uniformly random, zero-padded numeric code from the OS CSPRNG."""
    length = length or settings.VERIFICATION_CODE_LENGTH
    return f"{secrets.randbelow(10**length):0{length}d}"


async def get_active_code(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    purpose: CodePurpose,
    now: datetime | None = None,
) -> VerificationCode | None:
    """Most recently issued unused, unexpired code for (user, purpose)."""
    now = now or utc_now()
    stmt = (
        select(VerificationCode)
        .where(
            VerificationCode.user_id == as_uuid(user_id),
            VerificationCode.purpose == purpose,
            VerificationCode.used.is_(False),
            VerificationCode.expires_at > now,
        )
        .order_by(VerificationCode.created_at.desc(), VerificationCode.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def count_recent_codes_for_channel(
    db: AsyncSession, channel_address: str, since: datetime | None = None
) -> int:
    """Codes issued to a number since ``since`` (default: the last hour)."""
    since = since or utc_now() - timedelta(hours=1)
    stmt = (
        select(func.count())
        .select_from(VerificationCode)
        .where(
            VerificationCode.channel_address == channel_address,
            VerificationCode.created_at >= since,
        )
    )
    result = await db.execute(stmt)
    return int(result.scalar_one())


async def issue_code(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    channel_address: str,
    purpose: CodePurpose,
    *,
    source_address: str | None = None,
) -> VerificationCode:
    """
    Persist a fresh code with ``expires_at = now + TTL``.

    Older unused codes for the same (user, purpose) are retired (``used``
    set, ``used_at`` left empty) so a superseded code can never regain
    validity. The returned record carries the plaintext code for delivery.
    """
    user_id = as_uuid(user_id)
    now = utc_now()

    async with fail_closed(db, "verification code issuance"):
        await db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose,
                VerificationCode.used.is_(False),
            )
            .values(used=True)
            .execution_options(synchronize_session=False)
        )

        record = VerificationCode(
            user_id=user_id,
            channel_address=channel_address,
            code=generate_numeric_code(),
            purpose=purpose,
            expires_at=now + timedelta(minutes=settings.VERIFICATION_CODE_TTL_MINUTES),
            used=False,
            attempts_count=0,
            created_at=now,
        )
        db.add(record)
        await db.flush()

        log_security_event(
            db,
            SecurityEventType.VERIFICATION_CODE_ISSUED,
            SecuritySeverity.LOW,
            f"Verification code issued ({purpose.value})",
            user_id=user_id,
            source_address=source_address,
            metadata={
                "purpose": purpose.value,
                "code_id": record.id,
                "channel": mask_phone_number(channel_address),
                "expires_at": record.expires_at,
            },
        )
        await db.commit()

    logger.info(f"Issued {purpose.value} code {record.id} for user {user_id}.")
    return record


async def deliver_code(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    channel_address: str,
    purpose: CodePurpose,
    gateway: SmsGateway,
    *,
    source_address: str | None = None,
) -> VerificationCode:
    """
    Issue a code and send it by SMS.

    Raises DeliveryRateLimitedError when SMS_MAX_PER_HOUR codes already went
    to the number in the last hour, and DeliveryFailedError when the gateway
    reports a failure. In the latter case the code stays stored.
    """
    async with _channel_locks.acquire(channel_address):
        async with fail_closed(db, "sms rate limit check"):
            sent = await count_recent_codes_for_channel(db, channel_address)
        if sent >= settings.SMS_MAX_PER_HOUR:
            logger.warning(
                f"SMS limit reached for {mask_phone_number(channel_address)} ({sent} in the last hour)."
            )
            raise DeliveryRateLimitedError()

        record = await issue_code(
            db, user_id, channel_address, purpose, source_address=source_address
        )

    result = await gateway.send(channel_address, build_code_message(purpose, record.code))
    if result.success:
        return record

    async with fail_closed(db, "delivery failure audit"):
        log_security_event(
            db,
            SecurityEventType.VERIFICATION_CODE_DELIVERY_FAILED,
            SecuritySeverity.MEDIUM,
            f"Verification code could not be delivered ({purpose.value})",
            user_id=record.user_id,
            source_address=source_address,
            metadata={
                "purpose": purpose.value,
                "code_id": record.id,
                "error": result.error,
            },
        )
        await db.commit()

    security_log.delivery_failed(mask_phone_number(channel_address), result.error or "unknown")
    raise DeliveryFailedError(reason=result.error, code_id=record.id)


async def validate_code(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    purpose: CodePurpose,
    submitted_code: str,
    *,
    source_address: str | None = None,
) -> CodeValidation:
    """
    Validate a submitted code against the authoritative record.

    - no unused, unexpired record: fail
    - attempt budget already spent: poison the record, fail
    - mismatch: count the attempt, fail with the attempts left
    - match: consume the record, succeed

    All failures look the same to the end user.
    """
    user_id = as_uuid(user_id)
    now = utc_now()
    max_attempts = settings.max_attempts_for(purpose)
    submitted = (submitted_code or "").strip()

    async with fail_closed(db, "verification code validation"):
        record = await get_active_code(db, user_id, purpose, now)

        if record is None:
            _log_failure(db, user_id, purpose, None, "NOT_FOUND_OR_EXPIRED", source_address)
            await db.commit()
            security_log.code_failed(source_address, str(user_id), purpose.value)
            return CodeValidation(ok=False)

        if record.attempts_count >= max_attempts:
            poisoned = await db.execute(
                update(VerificationCode)
                .where(VerificationCode.id == record.id, VerificationCode.used.is_(False))
                .values(used=True)
                .execution_options(synchronize_session=False)
            )
            _log_failure(db, user_id, purpose, record.id, "ATTEMPTS_EXHAUSTED", source_address)
            await db.commit()
            if poisoned.rowcount == 1:
                logger.warning(f"Code {record.id} ({purpose.value}) poisoned for user {user_id}.")
                security_log.code_poisoned(str(user_id), purpose.value)
            return CodeValidation(ok=False, code_id=record.id)

        if not hmac.compare_digest(record.code.encode(), submitted.encode()):
            counted = await db.execute(
                update(VerificationCode)
                .where(
                    VerificationCode.id == record.id,
                    VerificationCode.used.is_(False),
                    VerificationCode.attempts_count < max_attempts,
                )
                .values(attempts_count=VerificationCode.attempts_count + 1)
                .returning(VerificationCode.attempts_count)
                .execution_options(synchronize_session=False)
            )
            attempts = counted.scalar_one_or_none()
            remaining = max_attempts - attempts if attempts is not None else 0
            _log_failure(
                db, user_id, purpose, record.id, "MISMATCH", source_address, remaining=remaining
            )
            await db.commit()
            security_log.code_failed(source_address, str(user_id), purpose.value)
            return CodeValidation(ok=False, attempts_remaining=remaining, code_id=record.id)

        consumed = await db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.id == record.id,
                VerificationCode.used.is_(False),
                VerificationCode.attempts_count < max_attempts,
                VerificationCode.expires_at > now,
            )
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            # Consumed, poisoned or superseded by a concurrent request
            _log_failure(db, user_id, purpose, record.id, "ALREADY_USED", source_address)
            await db.commit()
            security_log.code_failed(source_address, str(user_id), purpose.value)
            return CodeValidation(ok=False, code_id=record.id)

        log_security_event(
            db,
            SecurityEventType.VERIFICATION_CODE_VERIFIED,
            SecuritySeverity.LOW,
            f"Verification code accepted ({purpose.value})",
            user_id=user_id,
            source_address=source_address,
            metadata={"purpose": purpose.value, "code_id": record.id},
        )
        await db.commit()

    logger.info(f"Code {record.id} ({purpose.value}) verified for user {user_id}.")
    return CodeValidation(
        ok=True, attempts_remaining=max_attempts - record.attempts_count, code_id=record.id
    )


def _log_failure(
    db: AsyncSession,
    user_id: uuid.UUID,
    purpose: CodePurpose,
    code_id: int | None,
    reason: str,
    source_address: str | None,
    remaining: int | None = None,
) -> None:
    metadata: dict = {"purpose": purpose.value, "code_id": code_id, "reason": reason}
    if remaining is not None:
        metadata["attempts_remaining"] = remaining
    log_security_event(
        db,
        SecurityEventType.VERIFICATION_CODE_FAILED,
        SecuritySeverity.MEDIUM,
        f"Verification code rejected ({purpose.value})",
        user_id=user_id,
        source_address=source_address,
        metadata=metadata,
    )
