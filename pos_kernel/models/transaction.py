"""
Module: pos_kernel.models.transaction
Responsibility: ORM persistence for POS sale transactions -- current status,
    price, payment sub-record, issued document numbers, contract and TSE
    fiscalization data.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Rows are never deleted; cancelled/refunded/storno are terminal
      statuses (ORM listener + DB trigger).
    - ``version`` is the SQLAlchemy version_id_col: every UPDATE carries
      ``WHERE version = :expected`` and a concurrent writer loses with
      StaleDataError.
    - status is only mutated by TransactionLedger through the lifecycle
      table in domain/lifecycle.py.

Audit relevance:
    The row holds current state only.  Its history is the chain of
    AuditEntry rows referencing it by transaction_id; the transaction never
    lists its entries.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pos_kernel.db.base import Base, UTCDateTime, UUIDString


class PosTransaction(Base):
    """A single POS sale."""

    __tablename__ = "pos_transactions"

    __table_args__ = (
        Index("idx_pos_tx_created", "created_at"),
        Index("idx_pos_tx_status_created", "status", "created_at"),
    )

    status: Mapped[str] = mapped_column(String(32), nullable=False)

    price_cents: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Payment sub-record
    payment_provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_provider_tx_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Issued documents: raw sequence value plus formatted number
    receipt_number: Mapped[int | None] = mapped_column(nullable=True)
    receipt_no: Mapped[str | None] = mapped_column(String(32), nullable=True)
    invoice_number: Mapped[int | None] = mapped_column(nullable=True)
    invoice_no: Mapped[str | None] = mapped_column(String(32), nullable=True)

    contract_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    contract_signed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    refunded_cents: Mapped[int | None] = mapped_column(nullable=True)

    # TSE fiscalization
    tse_provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tse_tx_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tse_serial: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tse_signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    tse_signature_counter: Mapped[int | None] = mapped_column(nullable=True)
    tse_log_time: Mapped[datetime | None] = mapped_column(nullable=True)
    tse_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    tse_finished_at: Mapped[datetime | None] = mapped_column(nullable=True)
    fiscal_retry_pending: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    fiscal_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<PosTransaction {self.id} {self.status} v{self.version}>"

    @property
    def fiscalization_started(self) -> bool:
        return self.tse_started_at is not None

    @property
    def fiscalization_finished(self) -> bool:
        return self.tse_finished_at is not None
