# backend/tests/unit/services/test_two_factor.py
"""Tests for SMS two-factor authentication."""

from datetime import timedelta

import pytest
from sqlalchemy import Update, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authguard.core.timeutils import utc_now
from authguard.db.models.security_event import SecurityEventType
from authguard.db.models.user import User
from authguard.db.models.verification_code import CodePurpose
from authguard.exceptions import (
    AccountLockedError,
    AddressBlockedError,
    CodeExpiredOrInvalidError,
    InvalidCredentialsError,
    TwoFactorStateError,
)
from authguard.services import backup_codes, ip_guard, two_factor, verification_codes
from authguard.services.security_events import count_security_events

from ...factories import UserFactory

PHONE = "+19542348040"
IP = "192.0.2.50"


async def _issued_code(db: AsyncSession, user_id) -> str:
    record = await verification_codes.get_active_code(db, user_id, CodePurpose.TWO_FACTOR_AUTH)
    return record.code


async def _enrolled(db: AsyncSession, gateway):
    user = UserFactory.create_with_phone(db, PHONE)
    await db.commit()
    await two_factor.send_two_factor_code(db, user.id, gateway)
    codes = await two_factor.enable_two_factor(db, user.id, await _issued_code(db, user.id))
    return user, codes


# ==================== Enrollment ====================


@pytest.mark.asyncio
async def test_send_code_requires_verified_phone(db_session: AsyncSession, sms_gateway):
    user = UserFactory.create_user(db_session, phone_number=PHONE, phone_number_verified=False)
    await db_session.commit()

    with pytest.raises(TwoFactorStateError):
        await two_factor.send_two_factor_code(db_session, user.id, sms_gateway)
    assert sms_gateway.sent == []


@pytest.mark.asyncio
async def test_send_code_returns_masked_number(db_session: AsyncSession, sms_gateway):
    user = UserFactory.create_with_phone(db_session, PHONE)
    await db_session.commit()

    masked = await two_factor.send_two_factor_code(db_session, user.id, sms_gateway)

    assert masked == "+*******8040"
    assert sms_gateway.sent[0][0] == PHONE


@pytest.mark.asyncio
async def test_enable_two_factor(db_session: AsyncSession, sms_gateway):
    user, codes = await _enrolled(db_session, sms_gateway)

    await db_session.refresh(user)
    assert user.two_factor_enabled
    assert user.two_factor_secret
    assert len(codes) == len(user.two_factor_backup_codes)
    assert await count_security_events(
        db_session, user_id=user.id, event_type=SecurityEventType.TWO_FACTOR_ENABLED
    ) == 1


@pytest.mark.asyncio
async def test_enable_with_wrong_code(db_session: AsyncSession, sms_gateway):
    user = UserFactory.create_with_phone(db_session, PHONE)
    await db_session.commit()
    await two_factor.send_two_factor_code(db_session, user.id, sms_gateway)
    code = await _issued_code(db_session, user.id)

    with pytest.raises(CodeExpiredOrInvalidError) as exc_info:
        await two_factor.enable_two_factor(db_session, user.id, "x" + code[1:])

    assert exc_info.value.attempts_remaining is not None
    await db_session.refresh(user)
    assert not user.two_factor_enabled


@pytest.mark.asyncio
async def test_enable_twice_is_rejected(db_session: AsyncSession, sms_gateway):
    user, _ = await _enrolled(db_session, sms_gateway)

    with pytest.raises(TwoFactorStateError):
        await two_factor.enable_two_factor(db_session, user.id, "123456")


@pytest.mark.asyncio
async def test_disable_requires_password(db_session: AsyncSession, sms_gateway):
    user, _ = await _enrolled(db_session, sms_gateway)

    with pytest.raises(InvalidCredentialsError):
        await two_factor.disable_two_factor(db_session, user.id, "wrong-password")

    await db_session.refresh(user)
    assert user.two_factor_enabled
    assert user.failed_login_attempts == 1

    await two_factor.disable_two_factor(db_session, user.id, "password123")

    await db_session.refresh(user)
    assert not user.two_factor_enabled
    assert user.two_factor_secret is None
    assert user.two_factor_backup_codes is None


# ==================== Login Verification ====================


@pytest.mark.asyncio
async def test_verify_with_sms_code(db_session: AsyncSession, sms_gateway):
    user, _ = await _enrolled(db_session, sms_gateway)
    await two_factor.send_two_factor_code(db_session, user.id, sms_gateway)

    method = await two_factor.verify_two_factor(
        db_session, user.id, await _issued_code(db_session, user.id), source_address=IP
    )

    assert method == "code"


@pytest.mark.asyncio
async def test_verify_with_backup_code(db_session: AsyncSession, sms_gateway):
    user, codes = await _enrolled(db_session, sms_gateway)

    method = await two_factor.verify_two_factor(db_session, user.id, codes[0], source_address=IP)

    assert method == "backup_code"
    with pytest.raises(CodeExpiredOrInvalidError):
        await two_factor.verify_two_factor(db_session, user.id, codes[0], source_address=IP)


@pytest.mark.asyncio
async def test_backup_code_survives_a_concurrent_set_change(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    sms_gateway,
    monkeypatch,
):
    user, codes = await _enrolled(db_session, sms_gateway)
    user_id = user.id
    original_execute = db_session.execute
    interfered = []

    async def execute_after_concurrent_change(statement, *args, **kwargs):
        # Another request changes the code set just before the first swap
        if isinstance(statement, Update) and statement.table.name == "users" and not interfered:
            interfered.append(True)
            async with session_factory() as other:
                await other.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(backup_codes_version=User.backup_codes_version + 1)
                )
                await other.commit()
        return await original_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db_session, "execute", execute_after_concurrent_change)

    method = await two_factor.verify_two_factor(db_session, user_id, codes[0], source_address=IP)

    assert method == "backup_code"
    assert interfered == [True]
    assert await backup_codes.remaining_backup_codes(db_session, user_id) == len(codes) - 1
    assert await count_security_events(
        db_session, user_id=user_id, event_type=SecurityEventType.BACKUP_CODE_USED
    ) == 1


@pytest.mark.asyncio
async def test_failed_verification_counts_against_account(db_session: AsyncSession, sms_gateway):
    user, _ = await _enrolled(db_session, sms_gateway)

    with pytest.raises(CodeExpiredOrInvalidError):
        await two_factor.verify_two_factor(db_session, user.id, "NOT-A-CODE", source_address=IP)

    await db_session.refresh(user)
    assert user.failed_login_attempts == 1
    assert await ip_guard.count_recent_failures(db_session, IP) == 1


@pytest.mark.asyncio
async def test_locked_account_is_refused_before_code_check(db_session: AsyncSession, sms_gateway):
    user, codes = await _enrolled(db_session, sms_gateway)
    user.account_locked = True
    user.account_locked_until = utc_now() + timedelta(minutes=5)
    await db_session.commit()

    with pytest.raises(AccountLockedError) as exc_info:
        await two_factor.verify_two_factor(db_session, user.id, codes[0], source_address=IP)

    assert exc_info.value.remaining_minutes == 5
    await db_session.refresh(user)
    assert len(user.two_factor_backup_codes) == len(codes)


@pytest.mark.asyncio
async def test_blocked_address_is_refused(db_session: AsyncSession, sms_gateway):
    user, codes = await _enrolled(db_session, sms_gateway)
    await ip_guard.block_address(db_session, IP, "test", actor_id="admin-1")

    with pytest.raises(AddressBlockedError):
        await two_factor.verify_two_factor(db_session, user.id, codes[0], source_address=IP)
