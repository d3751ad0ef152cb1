"""
Declarative base, column types and mixins shared by the engine's models.

Every timestamp is stored and returned in UTC. Ordering of credential rows
("which one is current") rests on ``created_at`` comparisons, so a value
bound in another offset or read back without tzinfo would silently reorder
them. The same models run on SQLite in tests and PostgreSQL in production.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic_core import to_jsonable_python
from sqlalchemy import JSON, Column, DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

# Base class for all SQLAlchemy models
Base: Any = declarative_base()


def utc_now():
    """Return current UTC time with timezone info attached."""
    return datetime.now(UTC)


def as_utc(value):
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp normalised to UTC on the way in and out.

    Naive values are taken to be UTC already. SQLite stores the wall-clock
    text only, which is why the bound value must be converted first.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).astimezone(UTC)

    def process_result_value(self, value, dialect):
        return as_utc(value)


class JSONDocument(TypeDecorator):
    """JSONB on PostgreSQL, JSON text elsewhere; values pass through pydantic's encoder."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB(none_as_null=True))
        return dialect.type_descriptor(JSON(none_as_null=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return to_jsonable_python(value)


class TimestampMixin:
    """created_at/updated_at in UTC; created_at is indexed for current-row lookups."""

    created_at = Column(UTCDateTime, default=utc_now, nullable=False, index=True)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False)


class UUIDMixin:
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
