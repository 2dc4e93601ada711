# backend/authguard/services/ip_guard.py
"""
IP reputation guard.

Counts failed logins per source address over a trailing window and blocks
the address once the count reaches IP_BLOCK_THRESHOLD. Blocks never expire
on their own: only unblock_address() (an administrative action) re-admits an
address, by appending an ``unblocked=True`` record.
"""

import ipaddress
import logging
from datetime import datetime, timedelta
from typing import NamedTuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.config import settings
from authguard.core.locks import KeyedLock
from authguard.core.security_logger import security_log
from authguard.core.timeutils import utc_now
from authguard.db.models.blocked_address import BlockedAddress
from authguard.db.models.login_attempt import LoginAttempt
from authguard.db.models.security_event import SecurityEventType, SecuritySeverity
from authguard.db.session import fail_closed
from authguard.services.security_events import log_security_event

logger = logging.getLogger(__name__)

# Serialises the threshold decision per address within this process
_address_locks = KeyedLock()


class IpFailureResult(NamedTuple):
    """Outcome of recording a failure for an address."""

    blocked: bool
    reason: str | None = None
    failures: int = 0


def normalize_address(address: str | None) -> str:
    """
    Canonical form of a source address.

    IPv6 spellings collapse to one form and IPv4-mapped IPv6 addresses map to
    their IPv4 address. Non-IP values (e.g. "testclient") are kept as given.
    """
    candidate = (address or "").strip()
    if not candidate:
        return "unknown"
    try:
        parsed = ipaddress.ip_address(candidate)
    except ValueError:
        return candidate[:45]
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        parsed = parsed.ipv4_mapped
    return str(parsed)


async def _latest_record(db: AsyncSession, address: str) -> BlockedAddress | None:
    stmt = (
        select(BlockedAddress)
        .where(BlockedAddress.address == address)
        .order_by(BlockedAddress.id.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def is_blocked(db: AsyncSession, address: str) -> bool:
    """True iff the most recent record for the address is a block."""
    address = normalize_address(address)
    async with fail_closed(db, "ip block check"):
        latest = await _latest_record(db, address)
    return latest is not None and not latest.unblocked


async def count_recent_failures(
    db: AsyncSession,
    address: str,
    *,
    since: datetime | None = None,
    now: datetime | None = None,
) -> int:
    """
    Failed logins from the address inside the trailing window.

    ``since`` narrows the window further (failures before the last unblock
    are not held against the address again).
    """
    now = now or utc_now()
    window_start = now - timedelta(minutes=settings.IP_FAILURE_WINDOW_MINUTES)
    if since is not None and since > window_start:
        window_start = since

    stmt = (
        select(func.count())
        .select_from(LoginAttempt)
        .where(
            LoginAttempt.ip_address == address,
            LoginAttempt.success.is_(False),
            LoginAttempt.attempted_at >= window_start,
        )
    )
    result = await db.execute(stmt)
    return int(result.scalar_one())


async def record_failure(
    db: AsyncSession,
    address: str,
    *,
    identifier: str = "",
    user_agent: str | None = None,
    account_locked: bool = False,
) -> IpFailureResult:
    """
    Count one failed login against the address and block it at the threshold.

    Appends the failed ``LoginAttempt`` row, then evaluates the address.
    Callers that have already written the row (record_failed_attempt does)
    use evaluate_address() instead, so no failure is counted twice.
    """
    address = normalize_address(address)

    async with fail_closed(db, "ip failure recording"):
        db.add(
            LoginAttempt(
                identifier=(identifier or "").strip().lower()[:320],
                ip_address=address,
                success=False,
                user_agent=user_agent[:512] if user_agent else None,
            )
        )
        await db.commit()

    return await evaluate_address(db, address, account_locked=account_locked)


async def evaluate_address(
    db: AsyncSession,
    address: str,
    *,
    account_locked: bool = False,
) -> IpFailureResult:
    """
    Block the address if its recorded failures reached the threshold.

    When the trailing-window count reaches IP_BLOCK_THRESHOLD a block record
    is appended. ``account_locked`` marks that the latest failure locked an
    account and is noted in the block reason.
    """
    address = normalize_address(address)

    async with _address_locks.acquire(address):
        async with fail_closed(db, "ip failure evaluation"):
            latest = await _latest_record(db, address)
            if latest is not None and not latest.unblocked:
                return IpFailureResult(
                    blocked=True, reason=latest.reason, failures=latest.failed_attempts
                )

            failures = await count_recent_failures(
                db, address, since=latest.blocked_at if latest is not None else None
            )
            if failures < settings.IP_BLOCK_THRESHOLD:
                logger.debug(
                    f"Address {address} has {failures}/{settings.IP_BLOCK_THRESHOLD} failures."
                )
                return IpFailureResult(blocked=False, failures=failures)

            reason = (
                f"{failures} failed login attempts within "
                f"{settings.IP_FAILURE_WINDOW_MINUTES} minutes"
            )
            if account_locked:
                reason += " (account lockout triggered)"

            await block_address(db, address, reason, failed_attempts=failures)
            return IpFailureResult(blocked=True, reason=reason, failures=failures)


async def block_address(
    db: AsyncSession,
    address: str,
    reason: str,
    *,
    actor_id: str | None = None,
    failed_attempts: int = 0,
) -> BlockedAddress:
    """Append a blocking record and its IP_BLOCKED event."""
    address = normalize_address(address)

    async with fail_closed(db, "ip block"):
        record = BlockedAddress(
            address=address,
            unblocked=False,
            reason=reason[:255],
            failed_attempts=failed_attempts,
            actor_id=actor_id,
        )
        db.add(record)
        log_security_event(
            db,
            SecurityEventType.IP_BLOCKED,
            SecuritySeverity.HIGH,
            f"Address blocked: {reason}",
            source_address=address,
            metadata={"failed_attempts": failed_attempts, "manual": actor_id is not None},
            resolved_by=actor_id,
        )
        await db.commit()

    logger.warning(f"ADDRESS BLOCKED: {address} ({reason})")
    security_log.ip_blocked(address, failed_attempts)
    return record


async def unblock_address(db: AsyncSession, address: str, actor_id: str) -> bool:
    """
    Re-admit a blocked address.

    Returns False (and writes nothing) when the address is not currently
    blocked.
    """
    address = normalize_address(address)

    async with _address_locks.acquire(address):
        async with fail_closed(db, "ip unblock"):
            latest = await _latest_record(db, address)
            if latest is None or latest.unblocked:
                logger.info(f"Unblock requested for {address}, which is not blocked.")
                return False

            db.add(
                BlockedAddress(
                    address=address,
                    unblocked=True,
                    reason=f"Unblocked by administrator {actor_id}"[:255],
                    failed_attempts=0,
                    actor_id=actor_id,
                )
            )
            log_security_event(
                db,
                SecurityEventType.IP_UNBLOCKED,
                SecuritySeverity.MEDIUM,
                "Address unblocked by administrator",
                source_address=address,
                metadata={"previous_reason": latest.reason},
                resolved_by=actor_id,
            )
            await db.commit()

    logger.info(f"Address {address} unblocked by {actor_id}.")
    security_log.ip_unblocked(address, actor_id)
    return True


async def get_block_history(
    db: AsyncSession, address: str, limit: int = 50
) -> list[BlockedAddress]:
    """Block and unblock records for the address, newest first."""
    address = normalize_address(address)
    stmt = (
        select(BlockedAddress)
        .where(BlockedAddress.address == address)
        .order_by(BlockedAddress.id.desc())
        .limit(limit)
    )
    async with fail_closed(db, "ip block history"):
        result = await db.execute(stmt)
    return list(result.scalars().all())
