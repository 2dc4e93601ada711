# backend/authguard/crud/crud_user.py
import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from authguard.core.security import get_password_hash
from authguard.core.timeutils import utc_now
from authguard.db.models.user import User
from authguard.schemas.user import UserCreate

logger = logging.getLogger(__name__)


class CRUDUser:
    """
    Read helpers used by the security services.

    Lookups use populate_existing so an instance already in the session is
    refreshed with the row's current state (the services change security
    columns with UPDATE statements that bypass the identity map).
    """

    def __init__(self, model: type[User]):
        self.model = model

    async def get(self, db: AsyncSession, id: UUID) -> User | None:
        stmt = select(self.model).where(self.model.id == id).execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalars().first()

    async def get_by_email(self, db: AsyncSession, *, email: str) -> User | None:
        """
        Get a user by email.
        """
        email = email.strip().lower()
        logger.debug(f"Attempting to retrieve user by email: {email}")
        stmt = (
            select(self.model)
            .where(self.model.email == email)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    async def get_by_verified_phone(self, db: AsyncSession, *, phone_number: str) -> User | None:
        """Active account whose verified phone number is ``phone_number`` (E.164)."""
        stmt = (
            select(self.model)
            .where(
                self.model.phone_number == phone_number,
                self.model.phone_number_verified.is_(True),
                self.model.is_active.is_(True),
            )
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    async def create(self, db: AsyncSession, *, obj_in: UserCreate) -> User:
        """
        Create a new user.
        - Hashes the password before storing.
        - The phone number starts unverified.
        """
        logger.info(f"Creating new user with email: {obj_in.email}")

        user_data = obj_in.model_dump(exclude={"password"})
        user_data["email"] = user_data["email"].lower()
        user_data["hashed_password"] = get_password_hash(obj_in.password)
        user_data["phone_number_verified"] = False
        user_data["password_changed_at"] = utc_now()

        db_obj = self.model(**user_data)
        db.add(db_obj)
        await db.commit()
        await db.refresh(db_obj)
        logger.info(f"User {db_obj.email} (ID: {db_obj.id}) created successfully.")
        return db_obj


user = CRUDUser(User)
