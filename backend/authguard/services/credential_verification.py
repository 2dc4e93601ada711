# backend/authguard/services/credential_verification.py
"""
Login decision.

attempt_login() runs the checks in a fixed order and stops at the first
denial:

1. source address blocked          -> DENY_IP_BLOCKED (no account lookup)
2. identifier matches no account   -> DENY_INVALID (counted in its own bucket)
3. account locked                  -> DENY_LOCKED (no credential comparison)
4. credential mismatch             -> DENY_INVALID
5. credential match                -> ALLOW

Unknown identifiers and wrong secrets produce the same result shape and run
a password hash of comparable cost. Storage failures raise
StorageUnavailableError and are never turned into ALLOW.
"""

import enum
import logging
import uuid
from datetime import datetime
from typing import NamedTuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.security import CredentialComparator, burn_password_hash, verify_password
from authguard.core.security_logger import security_log
from authguard.core.timeutils import utc_now
from authguard.crud.crud_user import user as crud_user
from authguard.db.models.security_event import SecurityEventType, SecuritySeverity
from authguard.db.models.user import User
from authguard.db.session import fail_closed
from authguard.exceptions import AccountLockedError, AddressBlockedError, InvalidCredentialsError
from authguard.services import account_lockout, ip_guard
from authguard.services.account_lockout import FailedAttemptResult, LockStatus
from authguard.services.security_events import log_security_event

logger = logging.getLogger(__name__)


class LoginOutcome(str, enum.Enum):
    ALLOW = "ALLOW"
    DENY_INVALID = "DENY_INVALID"
    DENY_LOCKED = "DENY_LOCKED"
    DENY_IP_BLOCKED = "DENY_IP_BLOCKED"


class LoginResult(NamedTuple):
    """
    Outcome of attempt_login().

    ``user_id`` is only set for ALLOW, so denials never reveal which
    identifiers belong to accounts.
    """

    outcome: LoginOutcome
    user_id: uuid.UUID | None = None
    attempts_remaining: int | None = None
    locked_until: datetime | None = None
    message: str | None = None
    two_factor_required: bool = False

    @property
    def allowed(self) -> bool:
        return self.outcome == LoginOutcome.ALLOW


def _invalid(result: FailedAttemptResult) -> LoginResult:
    return LoginResult(
        outcome=LoginOutcome.DENY_INVALID,
        attempts_remaining=result.attempts_remaining,
        locked_until=result.locked_until,
        message=InvalidCredentialsError.default_message,
    )


def _locked(status: LockStatus) -> LoginResult:
    return LoginResult(
        outcome=LoginOutcome.DENY_LOCKED,
        attempts_remaining=0,
        locked_until=status.locked_until,
        message=AccountLockedError(status.locked_until, status.remaining_minutes).message,
    )


async def _deny_blocked(
    db: AsyncSession, identifier: str, address: str, user_agent: str | None
) -> LoginResult:
    async with fail_closed(db, "blocked address audit"):
        log_security_event(
            db,
            SecurityEventType.LOGIN_DENIED_IP_BLOCKED,
            SecuritySeverity.MEDIUM,
            "Login attempt from blocked address",
            source_address=address,
            user_agent=user_agent,
            metadata={"identifier": identifier},
        )
        await db.commit()
    security_log.blocked_address_attempt(address)
    return LoginResult(
        outcome=LoginOutcome.DENY_IP_BLOCKED, message=AddressBlockedError.default_message
    )


async def _deny_locked(
    db: AsyncSession,
    identifier: str,
    address: str,
    user_agent: str | None,
    status: LockStatus,
    user_id: uuid.UUID | None,
) -> LoginResult:
    """
    Deny a locked account without comparing credentials.

    The attempt still counts against the source address, so one address
    cannot hammer locked accounts indefinitely.
    """
    async with fail_closed(db, "locked account audit"):
        log_security_event(
            db,
            SecurityEventType.LOGIN_DENIED_LOCKED,
            SecuritySeverity.MEDIUM,
            "Login attempt on locked account",
            user_id=user_id,
            source_address=address,
            user_agent=user_agent,
            metadata={"locked_until": status.locked_until, "indefinite": status.locked_until is None},
        )
        await db.commit()
    security_log.failed_login(address, identifier, "ACCOUNT_LOCKED")
    await ip_guard.record_failure(db, address, identifier=identifier, user_agent=user_agent)
    return _locked(status)


async def _allow(
    db: AsyncSession, account: User, identifier: str, address: str, user_agent: str | None
) -> LoginResult:
    await account_lockout.reset_attempts(db, account.id)

    async with fail_closed(db, "successful login bookkeeping"):
        await db.execute(
            update(User)
            .where(User.id == account.id)
            .values(login_count=User.login_count + 1, last_login_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        account_lockout.record_login_attempt(db, identifier, address, True, user_agent)
        log_security_event(
            db,
            SecurityEventType.SUCCESSFUL_LOGIN,
            SecuritySeverity.LOW,
            "Successful login",
            user_id=account.id,
            source_address=address,
            user_agent=user_agent,
            metadata={"two_factor_required": account.two_factor_enabled},
        )
        await db.commit()

    security_log.successful_login(address, str(account.id))
    logger.info(f"User {account.id} authenticated successfully.")
    return LoginResult(
        outcome=LoginOutcome.ALLOW,
        user_id=account.id,
        attempts_remaining=None,
        message="Login successful.",
        two_factor_required=account.two_factor_enabled,
    )


async def attempt_login(
    db: AsyncSession,
    identifier: str,
    secret: str,
    source_address: str,
    user_agent: str | None = None,
    *,
    comparator: CredentialComparator = verify_password,
) -> LoginResult:
    """Decide a login attempt and apply all of its side effects."""
    identifier = account_lockout.normalize_identifier(identifier)
    address = ip_guard.normalize_address(source_address)

    if await ip_guard.is_blocked(db, address):
        logger.info(f"Login from blocked address {address} refused.")
        return await _deny_blocked(db, identifier, address, user_agent)

    async with fail_closed(db, "account lookup"):
        account = await crud_user.get_by_email(db, email=identifier)

    if account is None:
        bucket = await account_lockout.get_identifier_lock_status(db, identifier)
        if bucket.is_locked:
            return await _deny_locked(db, identifier, address, user_agent, bucket, None)

        burn_password_hash(secret)
        result = await account_lockout.record_failed_attempt(
            db, identifier, address, user_agent, reason="UNKNOWN_IDENTIFIER"
        )
        await ip_guard.evaluate_address(db, address, account_locked=result.should_block_ip)
        return _invalid(result)

    status = await account_lockout.get_lock_status(db, account.id)
    if status.is_locked:
        return await _deny_locked(db, identifier, address, user_agent, status, account.id)

    matched = comparator(secret, account.hashed_password)
    if not matched or not account.is_active:
        result = await account_lockout.record_failed_attempt(
            db,
            identifier,
            address,
            user_agent,
            user_id=account.id,
            reason="BAD_CREDENTIALS" if not matched else "INACTIVE_ACCOUNT",
        )
        await ip_guard.evaluate_address(db, address, account_locked=result.should_block_ip)
        return _invalid(result)

    return await _allow(db, account, identifier, address, user_agent)
