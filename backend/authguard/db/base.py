# backend/authguard/db/base.py

# Import all SQLAlchemy models so that Base.metadata knows every table.
# Alembic's env.py and the test fixtures import Base from here.
from authguard.db.base_class import Base  # noqa: F401
from authguard.db.models.blocked_address import BlockedAddress  # noqa: F401
from authguard.db.models.login_attempt import LoginAttempt  # noqa: F401
from authguard.db.models.security_event import SecurityEvent  # noqa: F401
from authguard.db.models.user import User  # noqa: F401
from authguard.db.models.verification_code import VerificationCode  # noqa: F401
