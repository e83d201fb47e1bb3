"""
Module: pos_kernel.models.audit_entry
Responsibility: ORM persistence for the tamper-evident POS audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit entries are append-only; no UPDATE or DELETE (ORM listener +
      session statement guard + DB trigger).
    - Chain linkage: previous_hash is UNIQUE, so no two entries can claim the
      same predecessor even if the chain-head compare-and-swap were bypassed.
    - seq is UNIQUE and strictly increasing, allocated by the chain-head CAS.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityError on a duplicate seq or previous_hash.

Audit relevance:
    AuditEntry IS the audit trail.  Every state-changing POS action -- sale
    creation, price change, payment, cancellation, refund, storno, receipt
    and invoice issue, contract signing, TSE start/finish -- produces one row.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from pos_kernel.db.base import Base, UTCDateTime, UUIDString


class AuditAction(str, Enum):
    """Closed set of auditable POS actions.

    Adding a member requires a matching entry in the ledger's operation
    table (domain/lifecycle.py) or an explicit non-ledger producer.
    """

    CREATE_TX = "CREATE_TX"
    PAYMENT_STATUS_UPDATE = "PAYMENT_STATUS_UPDATE"
    PAYMENT_MARK_PAID = "PAYMENT_MARK_PAID"
    UPDATE_PRICE = "UPDATE_PRICE"
    CANCEL = "CANCEL"
    REFUND = "REFUND"
    STORNO = "STORNO"
    ISSUE_RECEIPT = "ISSUE_RECEIPT"
    ISSUE_INVOICE = "ISSUE_INVOICE"
    SIGN_CONTRACT = "SIGN_CONTRACT"
    TSE_START = "TSE_START"
    TSE_FINISH = "TSE_FINISH"


class AuditEntry(Base):
    """
    One link of the global POS audit chain.

    Guarantees:
        - hash = sha256(previous_hash || canonicalize(actor_id, action,
          transaction_id, payload, created_at)).
        - previous_hash is GENESIS_HASH only for seq == 1.

    Non-goals:
        - This model does NOT compute hashes; AuditLog does.
    """

    __tablename__ = "pos_audit_logs"

    __table_args__ = (
        Index("idx_pos_audit_created", "created_at"),
        Index("idx_pos_audit_tx_created", "transaction_id", "created_at"),
        Index("idx_pos_audit_actor_created", "actor_id", "created_at"),
        Index("idx_pos_audit_action_created", "action", "created_at"),
    )

    # Position in the global chain
    seq: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    actor_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    action: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
    )

    # Back-reference; transactions never list their entries
    transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    # Canonical (plain JSON) form of the action's effect
    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    previous_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AuditEntry #{self.seq} {self.action} tx={self.transaction_id}>"

    @property
    def action_enum(self) -> AuditAction:
        return AuditAction(self.action)
