# backend/authguard/db/models/blocked_address.py
"""
Append-only history of address blocks and unblocks.
"""

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from authguard.core.timeutils import utc_now
from authguard.db.base_class import Base
from authguard.db.types import UTCDateTime


class BlockedAddress(Base):
    """
    A block (``unblocked=False``) or unblock (``unblocked=True``) record.

    An address is currently blocked iff its most recent record has
    ``unblocked == False``. Rows are never updated in place.
    """

    __tablename__ = "blocked_addresses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(45), nullable=False, index=True)
    blocked_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    unblocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)

    # Failures inside the window when the record was written
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Administrator responsible for a manual block/unblock, NULL for automatic blocks
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (Index("ix_blocked_addresses_address_blocked_at", "address", "blocked_at"),)

    def __repr__(self) -> str:
        return (
            f"<BlockedAddress(address={self.address}, unblocked={self.unblocked}, "
            f"blocked_at={self.blocked_at})>"
        )
