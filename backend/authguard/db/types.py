# backend/authguard/db/types.py
import uuid
from datetime import datetime

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

from authguard.core.timeutils import ensure_utc


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware DateTime that always hands back UTC datetimes.

    PostgreSQL keeps the offset; SQLite stores naive strings, so values are
    normalised on the way in and re-attached to UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        value = ensure_utc(value)
        if value is not None and dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        return ensure_utc(value)


def as_uuid(value: str | uuid.UUID | None) -> uuid.UUID | None:
    """Coerce a user id given as a string into a UUID."""
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))
