# backend/authguard/services/account_lockout.py
"""
Account lockout service for brute force protection.

Implements the per-account state machine

    ACTIVE(n) --failure--> ACTIVE(n+1)
    ACTIVE(n) --failure, n+1 >= LOGIN_MAX_ATTEMPTS--> LOCKED(now + lockout)
    LOCKED(until) --until elapsed (lazy, on read)--> ACTIVE(0)
    LOCKED(None) --administrator--> ACTIVE(0)

on the flat security columns of the User model. Counter increments and the
lock transition are single conditional UPDATE statements, so concurrent
failures are never lost and exactly one of them performs the lock.

Identifiers that match no account are counted in the login_attempts table
under the submitted identifier, so callers see the same attempts-remaining
and lock behaviour for them.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import NamedTuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.config import settings
from authguard.core.security_logger import security_log
from authguard.core.timeutils import ensure_utc, minutes_until, utc_now
from authguard.db.models.login_attempt import LoginAttempt
from authguard.db.models.security_event import SecurityEventType, SecuritySeverity
from authguard.db.models.user import User
from authguard.db.session import fail_closed
from authguard.db.types import as_uuid
from authguard.services.ip_guard import normalize_address
from authguard.services.security_events import log_security_event

logger = logging.getLogger(__name__)

AUTO_LOCK_REASON = "Too many failed login attempts"


class Active(NamedTuple):
    failed_attempts: int


class Locked(NamedTuple):
    # None means indefinite (manual unlock only)
    until: datetime | None
    reason: str | None = None


AccountState = Active | Locked


class FailedAttemptResult(NamedTuple):
    """Result of recording a failed attempt."""

    should_block_ip: bool
    attempts_remaining: int
    locked: bool = False
    locked_until: datetime | None = None
    user_id: uuid.UUID | None = None


class LockStatus(NamedTuple):
    """Lock state for user-facing messages."""

    is_locked: bool
    locked_until: datetime | None = None
    remaining_minutes: int | None = None
    reason: str | None = None
    failed_attempts: int = 0


def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()[:320]


def evaluate_state(user: User, now: datetime | None = None) -> AccountState:
    """
    Map the persisted columns onto the state machine.

    An expired timed lock already reads as ACTIVE(0); is_locked() makes the
    stored row agree.
    """
    now = now or utc_now()
    if user.account_locked:
        until = ensure_utc(user.account_locked_until)
        if until is None or until > now:
            return Locked(until=until, reason=user.account_locked_reason)
        return Active(failed_attempts=0)
    return Active(failed_attempts=user.failed_login_attempts)


def _remaining(failed_attempts: int) -> int:
    return max(0, settings.LOGIN_MAX_ATTEMPTS - failed_attempts)


def record_login_attempt(
    db: AsyncSession,
    identifier: str,
    ip_address: str,
    success: bool,
    user_agent: str | None = None,
) -> LoginAttempt:
    """
    Append a login attempt to the current transaction.

    These rows feed the IP guard's trailing-window count and the
    unknown-identifier bucket. The caller commits.
    """
    attempt = LoginAttempt(
        identifier=normalize_identifier(identifier),
        ip_address=normalize_address(ip_address),
        success=success,
        user_agent=user_agent[:512] if user_agent else None,
    )
    db.add(attempt)
    return attempt


async def _clear_expired_lock(db: AsyncSession, where_clause, now: datetime) -> list[uuid.UUID]:
    """Clear timed locks that have elapsed. Indefinite locks are left alone."""
    stmt = (
        update(User)
        .where(
            where_clause,
            User.account_locked.is_(True),
            User.account_locked_until.is_not(None),
            User.account_locked_until <= now,
        )
        .values(
            account_locked=False,
            account_locked_until=None,
            account_locked_reason=None,
            failed_login_attempts=0,
        )
        .returning(User.id)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    cleared = list(result.scalars().all())
    for user_id in cleared:
        log_security_event(
            db,
            SecurityEventType.ACCOUNT_UNLOCKED,
            SecuritySeverity.MEDIUM,
            "Account lock expired",
            user_id=user_id,
            metadata={"expired": True},
        )
        security_log.account_unlocked(str(user_id), "expiry")
    return cleared


async def _unknown_bucket(
    db: AsyncSession, identifier: str, now: datetime
) -> tuple[int, datetime | None]:
    """
    Failures and lock expiry for an identifier that matches no account.

    The bucket reads as locked for LOGIN_LOCKOUT_MINUTES after the failure
    that reached LOGIN_MAX_ATTEMPTS inside the window.
    """
    window_start = now - timedelta(minutes=settings.LOGIN_ATTEMPT_WINDOW_MINUTES)
    stmt = (
        select(LoginAttempt.attempted_at)
        .where(
            LoginAttempt.identifier == identifier,
            LoginAttempt.success.is_(False),
            LoginAttempt.attempted_at >= window_start,
        )
        .order_by(LoginAttempt.attempted_at.asc(), LoginAttempt.id.asc())
    )
    result = await db.execute(stmt)
    times = [ensure_utc(t) for t in result.scalars().all()]
    if len(times) < settings.LOGIN_MAX_ATTEMPTS:
        return len(times), None
    locked_until = times[settings.LOGIN_MAX_ATTEMPTS - 1] + timedelta(
        minutes=settings.LOGIN_LOCKOUT_MINUTES
    )
    return len(times), locked_until if locked_until > now else None


async def record_failed_attempt(
    db: AsyncSession,
    identifier: str,
    ip_address: str,
    user_agent: str | None = None,
    *,
    user_id: str | uuid.UUID | None = None,
    reason: str = "BAD_CREDENTIALS",
) -> FailedAttemptResult:
    """
    Count a failed attempt against an account (or unknown identifier).

    The account is resolved by ``user_id`` when given, otherwise by the
    identifier (e-mail). ``should_block_ip`` is True only for the attempt
    that locked the account, so the source address is evaluated together
    with the account it attacked.
    """
    identifier = normalize_identifier(identifier)
    now = utc_now()
    target = User.id == as_uuid(user_id) if user_id is not None else User.email == identifier

    async with fail_closed(db, "failed attempt recording"):
        await _clear_expired_lock(db, target, now)

        stmt = (
            update(User)
            .where(target)
            .values(failed_login_attempts=User.failed_login_attempts + 1)
            .returning(
                User.id,
                User.failed_login_attempts,
                User.account_locked,
                User.account_locked_until,
            )
            .execution_options(synchronize_session=False)
        )
        row = (await db.execute(stmt)).one_or_none()

        record_login_attempt(db, identifier, ip_address, success=False, user_agent=user_agent)

        if row is None:
            await db.flush()
            failures, locked_until = await _unknown_bucket(db, identifier, now)
            log_security_event(
                db,
                SecurityEventType.FAILED_LOGIN,
                SecuritySeverity.LOW,
                "Failed login for unknown identifier",
                source_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": "UNKNOWN_IDENTIFIER", "failed_attempts": failures},
            )
            await db.commit()
            security_log.failed_login(ip_address, identifier, "UNKNOWN_IDENTIFIER")
            return FailedAttemptResult(
                should_block_ip=failures == settings.LOGIN_MAX_ATTEMPTS,
                attempts_remaining=_remaining(failures),
                locked=locked_until is not None,
                locked_until=locked_until,
            )

        account_id, failures, already_locked, current_until = row
        locked_now = False
        locked_until = ensure_utc(current_until) if already_locked else None

        if not already_locked and failures >= settings.LOGIN_MAX_ATTEMPTS:
            locked_until = now + timedelta(minutes=settings.LOGIN_LOCKOUT_MINUTES)
            lock_stmt = (
                update(User)
                .where(User.id == account_id, User.account_locked.is_(False))
                .values(
                    account_locked=True,
                    account_locked_until=locked_until,
                    account_locked_reason=AUTO_LOCK_REASON,
                )
                .execution_options(synchronize_session=False)
            )
            locked_now = (await db.execute(lock_stmt)).rowcount == 1

        log_security_event(
            db,
            SecurityEventType.FAILED_LOGIN,
            SecuritySeverity.MEDIUM,
            f"Failed login ({reason.lower()})",
            user_id=account_id,
            source_address=ip_address,
            user_agent=user_agent,
            metadata={"reason": reason, "failed_attempts": failures},
        )
        if locked_now:
            log_security_event(
                db,
                SecurityEventType.ACCOUNT_LOCKED,
                SecuritySeverity.HIGH,
                f"Account locked after {failures} failed attempts",
                user_id=account_id,
                source_address=ip_address,
                user_agent=user_agent,
                metadata={
                    "failed_attempts": failures,
                    "locked_until": locked_until,
                    "lockout_minutes": settings.LOGIN_LOCKOUT_MINUTES,
                },
            )
        await db.commit()

    if locked_now:
        logger.warning(
            f"ACCOUNT LOCKED: {account_id} for {settings.LOGIN_LOCKOUT_MINUTES}m "
            f"after {failures} failures."
        )
        security_log.account_locked(ip_address, str(account_id), locked_until.isoformat())
    security_log.failed_login(ip_address, identifier, reason)

    return FailedAttemptResult(
        should_block_ip=locked_now,
        attempts_remaining=_remaining(failures),
        locked=locked_now or already_locked,
        locked_until=locked_until,
        user_id=account_id,
    )


async def is_locked(db: AsyncSession, user_id: str | uuid.UUID) -> bool:
    """
    Check the lock against the current time on every call.

    An elapsed timed lock is cleared here (with its counter) before
    answering. Indefinite locks stay until unlock_account().
    """
    return (await get_lock_status(db, user_id)).is_locked


async def get_lock_status(db: AsyncSession, user_id: str | uuid.UUID) -> LockStatus:
    user_id = as_uuid(user_id)
    now = utc_now()

    async with fail_closed(db, "account lock check"):
        stmt = select(
            User.account_locked,
            User.account_locked_until,
            User.account_locked_reason,
            User.failed_login_attempts,
        ).where(User.id == user_id)
        row = (await db.execute(stmt)).one_or_none()
        if row is None:
            return LockStatus(is_locked=False)

        locked, until, reason, failures = row
        until = ensure_utc(until)
        if locked and until is not None and until <= now:
            cleared = await _clear_expired_lock(db, User.id == user_id, now)
            await db.commit()
            if cleared:
                logger.info(f"Expired lock cleared for user {user_id}.")
            return LockStatus(is_locked=False)

    if not locked:
        return LockStatus(is_locked=False, failed_attempts=failures)
    return LockStatus(
        is_locked=True,
        locked_until=until,
        remaining_minutes=minutes_until(until, now) if until is not None else None,
        reason=reason,
        failed_attempts=failures,
    )


async def get_identifier_lock_status(db: AsyncSession, identifier: str) -> LockStatus:
    """Lock status of the failure bucket of an identifier with no account."""
    now = utc_now()
    async with fail_closed(db, "identifier lock check"):
        failures, locked_until = await _unknown_bucket(db, normalize_identifier(identifier), now)
    if locked_until is None:
        return LockStatus(is_locked=False, failed_attempts=failures)
    return LockStatus(
        is_locked=True,
        locked_until=locked_until,
        remaining_minutes=minutes_until(locked_until, now),
        reason=AUTO_LOCK_REASON,
        failed_attempts=failures,
    )


async def reset_attempts(db: AsyncSession, user_id: str | uuid.UUID) -> None:
    """
    Reset the failure counter to 0 after a successful credential match.

    A timed lock is lifted as well. An indefinite (administrative) lock is
    kept.
    """
    user_id = as_uuid(user_id)

    async with fail_closed(db, "attempt reset"):
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(failed_login_attempts=0)
            .execution_options(synchronize_session=False)
        )
        lifted = await db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.account_locked.is_(True),
                User.account_locked_until.is_not(None),
            )
            .values(account_locked=False, account_locked_until=None, account_locked_reason=None)
            .execution_options(synchronize_session=False)
        )
        if lifted.rowcount == 1:
            log_security_event(
                db,
                SecurityEventType.ACCOUNT_UNLOCKED,
                SecuritySeverity.MEDIUM,
                "Timed lock lifted after successful authentication",
                user_id=user_id,
            )
        await db.commit()

    if lifted.rowcount == 1:
        security_log.account_unlocked(str(user_id), "reset")
    logger.debug(f"Failed login counter reset for user {user_id}.")


async def lock_account(
    db: AsyncSession,
    user_id: str | uuid.UUID,
    reason: str,
    actor_id: str,
    until: datetime | None = None,
) -> bool:
    """
    Lock an account on behalf of an administrator.

    ``until=None`` locks indefinitely. Returns False when no such account
    exists.
    """
    user_id = as_uuid(user_id)
    now = utc_now()
    until = ensure_utc(until)
    if until is not None and until <= now:
        raise ValueError("Lock expiry must be in the future.")

    async with fail_closed(db, "account lock"):
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                account_locked=True,
                account_locked_until=until,
                account_locked_reason=reason[:255],
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # No row matched; a rollback here would expire the caller's loaded objects
            await db.commit()
            return False

        log_security_event(
            db,
            SecurityEventType.ACCOUNT_LOCKED,
            SecuritySeverity.HIGH,
            f"Account locked by administrator: {reason}",
            user_id=user_id,
            metadata={"locked_until": until, "indefinite": until is None},
            resolved_by=actor_id,
        )
        await db.commit()

    logger.warning(f"ACCOUNT LOCKED by {actor_id}: {user_id} until {until or 'unlocked manually'}.")
    security_log.account_locked(None, str(user_id), until.isoformat() if until else None)
    return True


async def unlock_account(db: AsyncSession, user_id: str | uuid.UUID, actor_id: str) -> bool:
    """
    Clear any lock (timed or indefinite) and the failure counter.

    Returns False when the account is not locked or does not exist.
    """
    user_id = as_uuid(user_id)

    async with fail_closed(db, "account unlock"):
        result = await db.execute(
            update(User)
            .where(User.id == user_id, User.account_locked.is_(True))
            .values(
                account_locked=False,
                account_locked_until=None,
                account_locked_reason=None,
                failed_login_attempts=0,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # No row matched; a rollback here would expire the caller's loaded objects
            await db.commit()
            return False

        log_security_event(
            db,
            SecurityEventType.ACCOUNT_UNLOCKED,
            SecuritySeverity.MEDIUM,
            "Account unlocked by administrator",
            user_id=user_id,
            resolved_by=actor_id,
        )
        await db.commit()

    logger.info(f"Account {user_id} unlocked by {actor_id}.")
    security_log.account_unlocked(str(user_id), actor_id)
    return True

