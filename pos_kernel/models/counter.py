"""
Module: pos_kernel.models.counter
Responsibility: Scoped, monotonically increasing counters keyed by
    (scope, period): receipt numbers, invoice numbers, and the audit chain
    head.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (scope, period) is UNIQUE.
    - value never decreases and rows are never deleted (ORM listener + DB
      trigger).
    - For scope ``audit_hash`` the row also carries ``last_hash``, the chain
      tail, which is only ever advanced by compare-and-swap.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, CheckConstraint, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pos_kernel.db.base import Base, UTCDateTime


class CounterScope(str, Enum):
    """Known counter scopes."""

    RECEIPT = "receipt"
    INVOICE = "invoice"
    AUDIT_HASH = "audit_hash"


# The audit chain is global; its head lives under a fixed period
AUDIT_CHAIN_PERIOD = 0


class Counter(Base):
    """
    Counter row.

    Row-level atomic increments (``UPDATE ... SET value = value + 1``)
    guarantee that two concurrent callers never observe the same value.
    """

    __tablename__ = "counters"

    __table_args__ = (
        UniqueConstraint("scope", "period", name="uq_counters_scope_period"),
        CheckConstraint("value >= 0", name="ck_counters_value_non_negative"),
    )

    scope: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
    )

    # Calendar year for document numbers; AUDIT_CHAIN_PERIOD for the chain
    period: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    last_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Counter {self.scope}/{self.period}={self.value}>"
