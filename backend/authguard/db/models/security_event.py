# backend/authguard/db/models/security_event.py
"""
Append-only security event log.
"""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index, Integer, String, Text, Uuid
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from authguard.core.timeutils import utc_now
from authguard.db.base_class import Base
from authguard.db.types import UTCDateTime


class SecurityEventType(str, enum.Enum):
    FAILED_LOGIN = "FAILED_LOGIN"
    SUCCESSFUL_LOGIN = "SUCCESSFUL_LOGIN"
    LOGIN_DENIED_LOCKED = "LOGIN_DENIED_LOCKED"
    LOGIN_DENIED_IP_BLOCKED = "LOGIN_DENIED_IP_BLOCKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    IP_BLOCKED = "IP_BLOCKED"
    IP_UNBLOCKED = "IP_UNBLOCKED"
    VERIFICATION_CODE_ISSUED = "VERIFICATION_CODE_ISSUED"
    VERIFICATION_CODE_VERIFIED = "VERIFICATION_CODE_VERIFIED"
    VERIFICATION_CODE_FAILED = "VERIFICATION_CODE_FAILED"
    VERIFICATION_CODE_DELIVERY_FAILED = "VERIFICATION_CODE_DELIVERY_FAILED"
    BACKUP_CODE_USED = "BACKUP_CODE_USED"
    BACKUP_CODE_REJECTED = "BACKUP_CODE_REJECTED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_COMPLETE = "PASSWORD_RESET_COMPLETE"
    PHONE_VERIFIED = "PHONE_VERIFIED"
    ADMIN_ACTION_NO_EFFECT = "ADMIN_ACTION_NO_EFFECT"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


class SecuritySeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class SecurityEvent(Base):
    """
    Immutable record of a security-relevant occurrence.

    No update or delete path exists in the application.
    """

    __tablename__ = "security_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    event_type: Mapped[SecurityEventType] = mapped_column(
        SQLAlchemyEnum(
            SecurityEventType,
            name="security_event_type_enum",
            native_enum=False,
            length=48,
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        index=True,
    )
    severity: Mapped[SecuritySeverity] = mapped_column(
        SQLAlchemyEnum(
            SecuritySeverity,
            name="security_severity_enum",
            native_enum=False,
            length=16,
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    source_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, index=True
    )
    # Administrator an action is attributed to
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_security_events_user_timestamp", "user_id", "timestamp"),
        Index("ix_security_events_type_timestamp", "event_type", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<SecurityEvent(id={self.id}, type={self.event_type}, severity={self.severity}, "
            f"user_id={self.user_id})>"
        )
