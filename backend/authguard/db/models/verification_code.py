# backend/authguard/db/models/verification_code.py
import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from authguard.core.timeutils import utc_now
from authguard.db.base_class import Base
from authguard.db.types import UTCDateTime


class CodePurpose(str, enum.Enum):
    PASSWORD_RESET = "PASSWORD_RESET"
    TWO_FACTOR_AUTH = "TWO_FACTOR_AUTH"
    PHONE_VERIFICATION = "PHONE_VERIFICATION"


class VerificationCode(Base):
    """
    One issued numeric code.

    ``used`` only ever goes from False to True (consumed or poisoned). Older
    unused codes for the same (user, purpose) are superseded by newer ones
    but kept for audit.
    """

    __tablename__ = "verification_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Normalized phone number the code was sent to
    channel_address: Mapped[str] = mapped_column(String(20), nullable=False)
    code: Mapped[str] = mapped_column(String(12), nullable=False)
    purpose: Mapped[CodePurpose] = mapped_column(
        SQLAlchemyEnum(
            CodePurpose,
            name="verification_code_purpose_enum",
            native_enum=False,
            length=32,
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    attempts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_verification_codes_user_purpose_created", "user_id", "purpose", "created_at"),
        Index("ix_verification_codes_channel_created", "channel_address", "created_at"),
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def __repr__(self) -> str:
        # Never include the code value
        return (
            f"<VerificationCode(id={self.id}, user_id={self.user_id}, purpose={self.purpose}, "
            f"used={self.used}, attempts={self.attempts_count})>"
        )
