# backend/tests/conftest.py
import os

# Must be set before authguard.core.config is imported
os.environ.setdefault("APP_ENV", "test")
os.environ["SECURITY_LOG_ENABLED"] = "false"

from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from authguard.db.base import Base  # noqa: E402
from authguard.db.session import build_engine, build_session_factory  # noqa: E402
from authguard.services.sms_service import DeliveryResult  # noqa: E402


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Creates/Disposes a file-backed SQLite engine FOR EACH TEST FUNCTION.

    A file (not :memory:) so that concurrent sessions share one database.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'authguard_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Factory for tests that need several independent sessions."""
    return build_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Yields a database session per function, using the function-scoped engine."""
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


class FakeSmsGateway:
    """Records outgoing messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.error: str | None = None

    async def send(self, destination: str, body: str) -> DeliveryResult:
        self.sent.append((destination, body))
        if self.error:
            return DeliveryResult(success=False, error=self.error)
        return DeliveryResult(success=True, message_id=f"SM{len(self.sent):032d}")

    @property
    def last_body(self) -> str:
        return self.sent[-1][1]


@pytest.fixture
def sms_gateway() -> FakeSmsGateway:
    return FakeSmsGateway()
