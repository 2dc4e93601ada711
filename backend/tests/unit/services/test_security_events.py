# backend/tests/unit/services/test_security_events.py
import logging
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.log_utils import REDACTED
from authguard.core.timeutils import utc_now
from authguard.db.models.security_event import SecurityEvent, SecurityEventType, SecuritySeverity
from authguard.services.security_events import (
    count_security_events,
    log_security_event,
    query_security_events,
)


def _event(user_id=None, event_type=SecurityEventType.FAILED_LOGIN, timestamp=None) -> SecurityEvent:
    return SecurityEvent(
        user_id=user_id,
        event_type=event_type,
        severity=SecuritySeverity.LOW,
        description="seeded",
        event_metadata={},
        timestamp=timestamp or utc_now(),
    )


@pytest.mark.asyncio
async def test_log_security_event_does_not_commit(db_session: AsyncSession):
    event = log_security_event(
        db_session,
        SecurityEventType.SUSPICIOUS_ACTIVITY,
        SecuritySeverity.MEDIUM,
        "Something odd",
    )
    assert event in db_session.new
    await db_session.rollback()
    assert await count_security_events(db_session) == 0


@pytest.mark.asyncio
async def test_metadata_is_sanitised(db_session: AsyncSession):
    user_id = uuid.uuid4()
    log_security_event(
        db_session,
        SecurityEventType.VERIFICATION_CODE_FAILED,
        SecuritySeverity.MEDIUM,
        "line one\nline two",
        user_id=str(user_id),
        source_address="10.0.0.1",
        metadata={"code": "123456", "code_id": 7, "purpose": "TWO_FACTOR_AUTH"},
    )
    await db_session.commit()

    (event,) = await query_security_events(db_session, user_id=user_id)
    assert event.event_metadata == {"code": REDACTED, "code_id": 7, "purpose": "TWO_FACTOR_AUTH"}
    assert event.description == "line one\\nline two"
    assert event.user_id == user_id


@pytest.mark.asyncio
async def test_severity_maps_to_log_level(db_session: AsyncSession, caplog):
    with caplog.at_level(logging.INFO, logger="authguard.services.security_events"):
        log_security_event(db_session, SecurityEventType.SUCCESSFUL_LOGIN, SecuritySeverity.LOW, "ok")
        log_security_event(db_session, SecurityEventType.IP_BLOCKED, SecuritySeverity.HIGH, "bad")

    levels = [r.levelno for r in caplog.records]
    assert levels == [logging.INFO, logging.WARNING]


@pytest.mark.asyncio
async def test_query_filters_and_ordering(db_session: AsyncSession):
    alice = uuid.uuid4()
    bob = uuid.uuid4()
    now = utc_now()
    db_session.add_all(
        [
            _event(alice, SecurityEventType.FAILED_LOGIN, now - timedelta(hours=3)),
            _event(alice, SecurityEventType.ACCOUNT_LOCKED, now - timedelta(hours=2)),
            _event(alice, SecurityEventType.FAILED_LOGIN, now - timedelta(hours=1)),
            _event(bob, SecurityEventType.FAILED_LOGIN, now - timedelta(minutes=30)),
        ]
    )
    await db_session.commit()

    alice_events = await query_security_events(db_session, user_id=alice)
    assert [e.timestamp for e in alice_events] == sorted(
        (e.timestamp for e in alice_events), reverse=True
    )
    assert len(alice_events) == 3

    failed = await query_security_events(db_session, event_type=SecurityEventType.FAILED_LOGIN)
    assert len(failed) == 3

    recent = await query_security_events(
        db_session, user_id=alice, since=now - timedelta(minutes=150)
    )
    assert [e.event_type for e in recent] == [
        SecurityEventType.FAILED_LOGIN,
        SecurityEventType.ACCOUNT_LOCKED,
    ]

    older = await query_security_events(db_session, until=now - timedelta(minutes=90))
    assert len(older) == 2

    assert await count_security_events(db_session, user_id=bob) == 1


@pytest.mark.asyncio
async def test_query_limit_is_clamped(db_session: AsyncSession):
    db_session.add_all([_event() for _ in range(3)])
    await db_session.commit()

    assert len(await query_security_events(db_session, limit=0)) == 1
    assert len(await query_security_events(db_session, limit=2)) == 2
    assert len(await query_security_events(db_session, limit=10_000)) == 3
