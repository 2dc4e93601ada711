# /backend/authguard/db/models/user.py

from datetime import datetime

from fastapi_users_db_sqlalchemy import SQLAlchemyBaseUserTableUUID
from sqlalchemy import JSON, Boolean, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from authguard.db.base_class import Base
from authguard.db.types import UTCDateTime


class User(SQLAlchemyBaseUserTableUUID, Base):
    """
    User account carrying the account security record.

    failed_login_attempts / account_locked / account_locked_until together
    encode the ACTIVE(n) | LOCKED(until | indefinite) state machine, see
    authguard.services.account_lockout.evaluate_state.
    """

    __tablename__ = "users"

    # --- Lockout state ---
    failed_login_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    account_locked: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    # NULL while locked means indefinite (manual unlock only)
    account_locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    account_locked_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # --- Two-factor authentication ---
    two_factor_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    two_factor_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # SHA-256 digests of the remaining backup codes
    two_factor_backup_codes: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    # Bumped on every change of the backup code set (compare-and-swap guard)
    backup_codes_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )

    # --- Phone ---
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    phone_number_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )

    # --- Bookkeeping ---
    login_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    password_changed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        # A phone number may be verified on at most one account
        Index(
            "uq_users_verified_phone_number",
            "phone_number",
            unique=True,
            postgresql_where=text("phone_number_verified"),
            sqlite_where=text("phone_number_verified = 1"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<User(id={self.id!r}, email={self.email!r}, "
            f"locked={self.account_locked!r}, failed={self.failed_login_attempts!r})>"
        )
