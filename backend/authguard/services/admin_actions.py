# backend/authguard/services/admin_actions.py
"""
Administrative actions.

Callers are trusted administrators, so a missing target account is
reported (UserNotFoundError); the public flows never do this. Every action
writes a security event with ``resolved_by`` set to the acting
administrator.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from authguard.crud.crud_user import user as crud_user
from authguard.db.models.blocked_address import BlockedAddress
from authguard.db.models.security_event import SecurityEventType, SecuritySeverity
from authguard.db.models.user import User
from authguard.db.session import fail_closed
from authguard.db.types import as_uuid
from authguard.exceptions import UserNotFoundError
from authguard.services import account_lockout, ip_guard, phone_verification
from authguard.services.security_events import log_security_event
from authguard.services.sms_service import is_valid_phone_number, normalize_phone_number

logger = logging.getLogger(__name__)


async def _require_user(db: AsyncSession, user_id: str | uuid.UUID) -> User:
    async with fail_closed(db, "admin user lookup"):
        target = await crud_user.get(db, as_uuid(user_id))
    if target is None:
        raise UserNotFoundError()
    return target


async def _record_no_effect(
    db: AsyncSession,
    action: str,
    description: str,
    actor_id: str,
    *,
    user_id: uuid.UUID | None = None,
    address: str | None = None,
) -> None:
    async with fail_closed(db, "admin action audit"):
        log_security_event(
            db,
            SecurityEventType.ADMIN_ACTION_NO_EFFECT,
            SecuritySeverity.LOW,
            description,
            user_id=user_id,
            source_address=address,
            metadata={"action": action},
            resolved_by=actor_id,
        )
        await db.commit()


async def admin_unlock_account(db: AsyncSession, user_id: str | uuid.UUID, actor_id: str) -> bool:
    """Unlock an account. Returns False if it was not locked."""
    target_id = (await _require_user(db, user_id)).id
    unlocked = await account_lockout.unlock_account(db, target_id, actor_id)
    if not unlocked:
        logger.info(f"Admin {actor_id} unlock of {target_id}: account was not locked.")
        await _record_no_effect(
            db,
            "unlock_account",
            "Unlock requested for an account that was not locked",
            actor_id,
            user_id=target_id,
        )
    return unlocked


async def admin_lock_account(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    actor_id: str,
    reason: str,
    until: datetime | None = None,
) -> None:
    """Lock an account, indefinitely unless ``until`` is given."""
    target_id = (await _require_user(db, user_id)).id
    if not await account_lockout.lock_account(db, target_id, reason, actor_id, until=until):
        raise UserNotFoundError()


async def admin_block_address(
    db: AsyncSession, address: str, actor_id: str, reason: str
) -> BlockedAddress:
    return await ip_guard.block_address(
        db, address, f"Blocked by administrator {actor_id}: {reason}", actor_id=actor_id
    )


async def admin_unblock_address(db: AsyncSession, address: str, actor_id: str) -> bool:
    """Unblock an address. Returns False if it was not blocked."""
    if await ip_guard.unblock_address(db, address, actor_id):
        return True
    await _record_no_effect(
        db,
        "unblock_address",
        "Unblock requested for an address that was not blocked",
        actor_id,
        address=ip_guard.normalize_address(address),
    )
    return False


async def admin_mark_phone_verified(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    actor_id: str,
    phone_number: str | None = None,
) -> str:
    """
    Mark a phone number verified without a code.

    Uses the number already on the account unless ``phone_number`` is
    given. Returns the stored E.164 number.
    """
    target = await _require_user(db, user_id)
    target_id = target.id
    raw = phone_number or target.phone_number
    if not raw or not is_valid_phone_number(raw):
        raise ValueError("A valid phone number is required.")
    normalized = normalize_phone_number(raw)

    if not await phone_verification.mark_phone_verified(db, target_id, normalized, actor_id=actor_id):
        raise UserNotFoundError()
    logger.info(f"Admin {actor_id} marked phone verified for user {target_id}.")
    return normalized
