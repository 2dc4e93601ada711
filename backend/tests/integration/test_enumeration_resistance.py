# backend/tests/integration/test_enumeration_resistance.py
"""Unknown identifiers must be indistinguishable from wrong passwords."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.config import settings
from authguard.services import password_reset
from authguard.services.credential_verification import LoginOutcome, attempt_login

from ..factories import UserFactory


@pytest.mark.asyncio
async def test_result_sequences_match(db_session: AsyncSession):
    user = UserFactory.create_user(db_session)
    await db_session.commit()

    known = [
        await attempt_login(db_session, user.email, "wrong", "192.0.2.1")
        for _ in range(settings.LOGIN_MAX_ATTEMPTS + 1)
    ]
    unknown = [
        await attempt_login(db_session, "ghost@example.com", "wrong", "192.0.2.2")
        for _ in range(settings.LOGIN_MAX_ATTEMPTS + 1)
    ]

    assert [r.outcome for r in known] == [r.outcome for r in unknown]
    assert [r.attempts_remaining for r in known] == [r.attempts_remaining for r in unknown]
    assert [r.message for r in known[:-1]] == [r.message for r in unknown[:-1]]
    assert known[-1].outcome == LoginOutcome.DENY_LOCKED
    assert all(r.user_id is None for r in known + unknown)


@pytest.mark.asyncio
async def test_reset_request_answers_identically(db_session: AsyncSession, sms_gateway):
    UserFactory.create_with_phone(db_session, "+19542348040")
    await db_session.commit()

    known = await password_reset.request_password_reset(db_session, "+19542348040", sms_gateway)
    unknown = await password_reset.request_password_reset(db_session, "+19542348041", sms_gateway)

    assert known == unknown
    assert len(sms_gateway.sent) == 1
