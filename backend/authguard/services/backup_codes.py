# backend/authguard/services/backup_codes.py
"""
Two-factor backup codes.

Codes are generated once at 2FA enrollment, shown to the user once, and
stored only as SHA-256 digests. Each code works once: consumption removes
its digest with a compare-and-swap on ``users.backup_codes_version``.
"""

import hashlib
import logging
import secrets
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.config import settings
from authguard.core.security_logger import security_log
from authguard.db.models.security_event import SecurityEventType, SecuritySeverity
from authguard.db.models.user import User
from authguard.db.session import fail_closed
from authguard.db.types import as_uuid
from authguard.exceptions import StorageUnavailableError
from authguard.services.security_events import log_security_event

logger = logging.getLogger(__name__)

# Compare-and-swap attempts before giving up on a contended code set
MAX_CONSUME_RETRIES = 5


def normalize_backup_code(code: str) -> str:
    """Codes are shown upper-case; accept any case, spaces and dashes."""
    return (code or "").strip().upper().replace(" ", "").replace("-", "")


def hash_backup_code(code: str) -> str:
    """Hash a backup code for storage."""
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


def generate_backup_codes(count: int | None = None) -> list[str]:
    """Generate distinct high-entropy recovery codes (hex, upper-case)."""
    if count is None:
        count = settings.BACKUP_CODE_COUNT
    codes: list[str] = []
    while len(codes) < count:
        code = secrets.token_hex(settings.BACKUP_CODE_BYTES).upper()
        if code not in codes:
            codes.append(code)
    return codes


async def store_backup_codes(db: AsyncSession, user_id: str | uuid.UUID, codes: list[str]) -> None:
    """
    Replace the user's backup code set with the digests of ``codes``.

    The caller commits.
    """
    await db.execute(
        update(User)
        .where(User.id == as_uuid(user_id))
        .values(
            two_factor_backup_codes=[hash_backup_code(c) for c in codes],
            backup_codes_version=User.backup_codes_version + 1,
        )
        .execution_options(synchronize_session=False)
    )


async def remaining_backup_codes(db: AsyncSession, user_id: str | uuid.UUID) -> int:
    stmt = select(User.two_factor_backup_codes).where(User.id == as_uuid(user_id))
    async with fail_closed(db, "backup code count"):
        result = await db.execute(stmt)
    return len(result.scalar_one_or_none() or [])


async def consume_backup_code(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    submitted_code: str,
    *,
    source_address: str | None = None,
) -> bool:
    """
    Use up a backup code.

    Returns True and removes the code on a match. Returns False without any
    change for unknown or already used codes.
    """
    user_id = as_uuid(user_id)
    digest = hash_backup_code(submitted_code)

    for attempt in range(1, MAX_CONSUME_RETRIES + 1):
        async with fail_closed(db, "backup code consumption"):
            stmt = select(User.two_factor_backup_codes, User.backup_codes_version).where(
                User.id == user_id
            )
            row = (await db.execute(stmt)).one_or_none()
            if row is None:
                return False

            codes, version = list(row[0] or []), row[1]
            if digest not in codes:
                log_security_event(
                    db,
                    SecurityEventType.BACKUP_CODE_REJECTED,
                    SecuritySeverity.MEDIUM,
                    "Backup code rejected",
                    user_id=user_id,
                    source_address=source_address,
                    metadata={"codes_remaining": len(codes)},
                )
                await db.commit()
                return False

            remaining = [c for c in codes if c != digest]
            swapped = await db.execute(
                update(User)
                .where(User.id == user_id, User.backup_codes_version == version)
                .values(two_factor_backup_codes=remaining, backup_codes_version=version + 1)
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount == 1:
                log_security_event(
                    db,
                    SecurityEventType.BACKUP_CODE_USED,
                    SecuritySeverity.MEDIUM,
                    "Backup code used",
                    user_id=user_id,
                    source_address=source_address,
                    metadata={"codes_remaining": len(remaining)},
                )
                await db.commit()
                break

            # Lost the swap; nothing was written
            await db.commit()
        logger.info(f"Backup code set of user {user_id} changed concurrently, retry {attempt}.")
    else:
        logger.error(f"Backup code consumption for user {user_id} kept conflicting; denying.")
        raise StorageUnavailableError()

    if len(remaining) <= 2:
        logger.warning(f"User {user_id} has {len(remaining)} backup code(s) left.")
    security_log.backup_code_used(source_address, str(user_id), len(remaining))
    return True
