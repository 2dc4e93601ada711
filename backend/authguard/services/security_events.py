# backend/authguard/services/security_events.py
"""
Security event log.

Provides:
- log_security_event(): append an event to the caller's transaction
- query_security_events() / count_security_events(): audit queries by user,
  event type and time range

Events are written in the same transaction as the state change they
describe, so a committed change always has its audit row. Nothing here
commits.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.config import settings
from authguard.core.log_utils import sanitize_for_log, sanitize_metadata
from authguard.db.models.security_event import (
    SecurityEvent,
    SecurityEventType,
    SecuritySeverity,
)
from authguard.db.types import as_uuid

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    SecuritySeverity.LOW: logging.INFO,
    SecuritySeverity.MEDIUM: logging.WARNING,
    SecuritySeverity.HIGH: logging.WARNING,
}


def log_security_event(
    db: AsyncSession,
    event_type: SecurityEventType,
    severity: SecuritySeverity,
    description: str,
    *,
    user_id: str | uuid.UUID | None = None,
    source_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    resolved_by: str | None = None,
) -> SecurityEvent:
    """
    Add a security event to the current transaction.

    The caller commits. Metadata is sanitised and secret-looking keys are
    redacted before it is stored.
    """
    event = SecurityEvent(
        user_id=as_uuid(user_id),
        event_type=event_type,
        severity=severity,
        description=sanitize_for_log(description, max_length=1000),
        source_address=source_address[:45] if source_address else None,
        user_agent=user_agent[:512] if user_agent else None,
        event_metadata=sanitize_metadata(metadata or {}),
        resolved_by=resolved_by,
    )
    db.add(event)

    logger.log(
        _LOG_LEVELS[severity],
        "Security event %s [%s] user=%s ip=%s: %s",
        event_type.value,
        severity.value,
        user_id,
        sanitize_for_log(source_address, max_length=45),
        event.description,
    )
    return event


def _apply_filters(
    stmt: Select,
    user_id: str | uuid.UUID | None,
    event_type: SecurityEventType | None,
    since: datetime | None,
    until: datetime | None,
) -> Select:
    if user_id is not None:
        stmt = stmt.where(SecurityEvent.user_id == as_uuid(user_id))
    if event_type is not None:
        stmt = stmt.where(SecurityEvent.event_type == event_type)
    if since is not None:
        stmt = stmt.where(SecurityEvent.timestamp >= since)
    if until is not None:
        stmt = stmt.where(SecurityEvent.timestamp < until)
    return stmt


async def query_security_events(
    db: AsyncSession,
    *,
    user_id: str | uuid.UUID | None = None,
    event_type: SecurityEventType | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 100,
) -> list[SecurityEvent]:
    """Return events matching the filters, newest first."""
    limit = max(1, min(limit, settings.SECURITY_EVENT_QUERY_LIMIT_MAX))
    stmt = _apply_filters(select(SecurityEvent), user_id, event_type, since, until)
    stmt = stmt.order_by(SecurityEvent.timestamp.desc(), SecurityEvent.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_security_events(
    db: AsyncSession,
    *,
    user_id: str | uuid.UUID | None = None,
    event_type: SecurityEventType | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> int:
    stmt = _apply_filters(
        select(func.count()).select_from(SecurityEvent), user_id, event_type, since, until
    )
    result = await db.execute(stmt)
    return int(result.scalar_one())
