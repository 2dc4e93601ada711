# backend/authguard/db/models/login_attempt.py
"""
Model for tracking login attempts.
"""

from datetime import datetime

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from authguard.core.timeutils import utc_now
from authguard.db.base_class import Base
from authguard.db.types import UTCDateTime


class LoginAttempt(Base):
    """
    One row per login attempt.

    Records are used for:
    - The IP guard's trailing-window failure count per address
    - The failure bucket of identifiers that match no account
    - Security auditing
    """

    __tablename__ = "login_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identifier submitted by the client (normalised, may match no account)
    identifier: Mapped[str] = mapped_column(String(320), nullable=False, index=True)

    # Source IP address
    ip_address: Mapped[str] = mapped_column(
        String(45), nullable=False, index=True
    )  # IPv6 max length

    attempted_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
        index=True,
    )

    success: Mapped[bool] = mapped_column(default=False)

    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Composite indexes for the trailing-window queries
    __table_args__ = (
        Index("ix_login_attempts_identifier_attempted", "identifier", "attempted_at"),
        Index("ix_login_attempts_ip_attempted", "ip_address", "attempted_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LoginAttempt(identifier={self.identifier}, ip={self.ip_address}, "
            f"success={self.success})>"
        )
