"""
Module: pos_kernel.db.base
Responsibility: Declarative base and portable column types for the three
    POS tables (audit log, counters, transactions).
Architecture position: Kernel > DB.  Lowest-level import target of the
    kernel; MUST NOT import from models/, services/, selectors/ or domain/.

Invariants enforced:
    - Every row has a uuid4 primary key stored as String(36), so ids are
      identical on PostgreSQL and SQLite.
    - Money is integer cents: ``int`` maps to BigInteger, never Float.
    - Timestamps read back are timezone-aware UTC on every dialect.  SQLite
      stores no offset; UTCDateTime re-attaches it so that a ``created_at``
      loaded from disk compares and hashes like the one that was written.
"""

from datetime import datetime, timezone
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID <-> String(36)."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime, normalized to UTC on write and on read."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for the POS models."""

    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        UUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)
