# backend/tests/integration/test_abuse_scenarios.py
"""
End-to-end abuse scenarios across the lockout manager, the IP guard, the
code manager and backup codes.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.config import settings
from authguard.db.models.security_event import SecurityEvent, SecurityEventType
from authguard.db.models.user import User
from authguard.db.models.verification_code import CodePurpose
from authguard.exceptions import AccountLockedError, CodeExpiredOrInvalidError
from authguard.services import (
    account_lockout,
    backup_codes,
    ip_guard,
    two_factor,
    verification_codes,
)
from authguard.services.credential_verification import LoginOutcome, attempt_login
from authguard.services.security_events import count_security_events

from ..factories import UserFactory


@pytest.mark.asyncio
async def test_lockout_beats_a_correct_password(db_session: AsyncSession):
    """Five failures lock the account; the correct secret is then refused."""
    u1 = UserFactory.create_user(db_session)
    await db_session.commit()

    for _ in range(5):
        result = await attempt_login(db_session, u1.email, "guess", "1.2.3.4")
        assert result.outcome == LoginOutcome.DENY_INVALID

    assert await account_lockout.is_locked(db_session, u1.id)

    result = await attempt_login(db_session, u1.email, "password123", "1.2.3.4")

    assert result.outcome == LoginOutcome.DENY_LOCKED
    assert result.user_id is None
    assert result.locked_until is not None


@pytest.mark.asyncio
async def test_exhausted_code_fails_even_when_correct(db_session: AsyncSession, sms_gateway, monkeypatch):
    """Three wrong guesses spend the budget; the correct code must be re-issued."""
    monkeypatch.setattr(settings, "TWO_FACTOR_MAX_ATTEMPTS", 3)
    u1 = UserFactory.create_with_phone(db_session, "+19542348040", two_factor_enabled=True)
    await db_session.commit()

    await two_factor.send_two_factor_code(db_session, u1.id, sms_gateway)
    code = (await verification_codes.get_active_code(db_session, u1.id, CodePurpose.TWO_FACTOR_AUTH)).code
    wrong = f"{(int(code) + 1) % 1_000_000:06d}"

    for expected in (2, 1, 0):
        result = await verification_codes.validate_code(
            db_session, u1.id, CodePurpose.TWO_FACTOR_AUTH, wrong
        )
        assert result.attempts_remaining == expected

    result = await verification_codes.validate_code(db_session, u1.id, CodePurpose.TWO_FACTOR_AUTH, code)
    assert not result.ok
    assert await verification_codes.get_active_code(db_session, u1.id, CodePurpose.TWO_FACTOR_AUTH) is None

    # A fresh code works
    await two_factor.send_two_factor_code(db_session, u1.id, sms_gateway)
    fresh = (await verification_codes.get_active_code(db_session, u1.id, CodePurpose.TWO_FACTOR_AUTH)).code
    assert await two_factor.verify_two_factor(db_session, u1.id, fresh, source_address="1.2.3.4") == "code"


@pytest.mark.asyncio
async def test_backup_code_set_shrinks_once(db_session: AsyncSession):
    u1 = UserFactory.create_user(db_session, two_factor_enabled=True)
    await db_session.commit()
    codes = backup_codes.generate_backup_codes(10)
    await backup_codes.store_backup_codes(db_session, u1.id, codes)
    await db_session.commit()

    assert await backup_codes.consume_backup_code(db_session, u1.id, codes[4])
    assert await backup_codes.remaining_backup_codes(db_session, u1.id) == 9
    assert not await backup_codes.consume_backup_code(db_session, u1.id, codes[4])
    assert not await backup_codes.consume_backup_code(db_session, u1.id, "FFFFFFFFFFFFFFFF")
    assert await backup_codes.remaining_backup_codes(db_session, u1.id) == 9


@pytest.mark.asyncio
async def test_address_blocked_after_ten_failures(db_session: AsyncSession):
    """Ten failures from one address block it, even for unrelated accounts."""
    u2 = UserFactory.create_user(db_session)
    u3 = UserFactory.create_user(db_session)
    await db_session.commit()

    for _ in range(10):
        await attempt_login(db_session, u2.email, "guess", "5.6.7.8")

    assert await ip_guard.is_blocked(db_session, "5.6.7.8")

    comparator = MagicMock(return_value=True)
    result = await attempt_login(db_session, u3.email, "password123", "5.6.7.8", comparator=comparator)

    assert result.outcome == LoginOutcome.DENY_IP_BLOCKED
    comparator.assert_not_called()
    assert await count_security_events(db_session, event_type=SecurityEventType.IP_BLOCKED) == 1

    # Other addresses are unaffected
    ok = await attempt_login(db_session, u3.email, "password123", "5.6.7.9")
    assert ok.allowed


@pytest.mark.asyncio
async def test_unblock_readmits_address(db_session: AsyncSession):
    user = UserFactory.create_user(db_session)
    await db_session.commit()
    for _ in range(settings.IP_BLOCK_THRESHOLD):
        await attempt_login(db_session, "nobody@example.com", "guess", "5.6.7.8")
    assert await ip_guard.is_blocked(db_session, "5.6.7.8")

    assert await ip_guard.unblock_address(db_session, "5.6.7.8", "admin-1")

    result = await attempt_login(db_session, user.email, "password123", "5.6.7.8")
    assert result.allowed


@pytest.mark.asyncio
async def test_concurrent_failures_lock_once(session_factory):
    async with session_factory() as db:
        user = UserFactory.create_user(db)
        await db.commit()
    n = 8

    async def fail():
        async with session_factory() as db:
            return await account_lockout.record_failed_attempt(db, user.email, "192.0.2.77")

    results = await asyncio.gather(*(fail() for _ in range(n)))

    assert sum(r.should_block_ip for r in results) == 1
    async with session_factory() as db:
        stored = await db.scalar(select(User).where(User.id == user.id))
        locks = await db.scalar(
            select(func.count())
            .select_from(SecurityEvent)
            .where(SecurityEvent.event_type == SecurityEventType.ACCOUNT_LOCKED)
        )
    assert stored.failed_login_attempts == n
    assert stored.account_locked
    assert locks == 1


@pytest.mark.asyncio
async def test_two_factor_failures_lock_the_account(db_session: AsyncSession, sms_gateway):
    user = UserFactory.create_with_phone(db_session, "+19542348040")
    await db_session.commit()
    await two_factor.send_two_factor_code(db_session, user.id, sms_gateway)
    code = (await verification_codes.get_active_code(db_session, user.id, CodePurpose.TWO_FACTOR_AUTH)).code
    await two_factor.enable_two_factor(db_session, user.id, code)

    for _ in range(settings.LOGIN_MAX_ATTEMPTS - 1):
        with pytest.raises(CodeExpiredOrInvalidError):
            await two_factor.verify_two_factor(db_session, user.id, "WRONG", source_address="1.2.3.4")

    with pytest.raises(AccountLockedError):
        await two_factor.verify_two_factor(db_session, user.id, "WRONG", source_address="1.2.3.4")
    assert await account_lockout.is_locked(db_session, user.id)
