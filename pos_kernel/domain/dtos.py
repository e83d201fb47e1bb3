"""
DTOs -- immutable data handed across the service boundary.

Responsibility:
    Defines the frozen records that services and selectors return instead of
    ORM instances: AuditRecord (one audit chain link), TransactionSnapshot
    (current state of a POS transaction) and IssuedDocument (a receipt or
    invoice number).

Architecture position:
    Kernel > Domain -- pure data, zero I/O.  from_model() class methods are
    boundary converters and are only called from services/ and selectors/.

Invariants enforced:
    - Callers never receive a live ORM object, so nothing outside a ledger
      operation can mutate persisted state by accident.
    - AuditRecord.payload is a private copy; mutating it changes nothing
      stored.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pos_kernel.domain.lifecycle import TransactionStatus
from pos_kernel.models.audit_entry import AuditAction

if TYPE_CHECKING:
    from pos_kernel.models.audit_entry import AuditEntry as AuditEntryModel
    from pos_kernel.models.transaction import PosTransaction as PosTransactionModel


@dataclass(frozen=True)
class AuditRecord:
    """One appended audit entry.  Satisfies the hashing ChainLink protocol."""

    id: UUID
    seq: int
    actor_id: str
    action: AuditAction
    transaction_id: UUID | None
    payload: dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""
    hash: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AuditEntryModel) -> AuditRecord:
        return cls(
            id=model.id,
            seq=model.seq,
            actor_id=model.actor_id,
            action=AuditAction(model.action),
            transaction_id=model.transaction_id,
            payload=copy.deepcopy(model.payload or {}),
            previous_hash=model.previous_hash,
            hash=model.hash,
            created_at=model.created_at,
        )


@dataclass(frozen=True)
class TransactionSnapshot:
    """Committed state of a POS transaction."""

    id: UUID
    status: TransactionStatus
    price_cents: int
    currency: str
    version: int
    created_by_id: str
    created_at: datetime
    updated_at: datetime | None = None
    payment_provider: str | None = None
    payment_provider_tx_id: str | None = None
    payment_approved_at: datetime | None = None
    receipt_number: int | None = None
    receipt_no: str | None = None
    invoice_number: int | None = None
    invoice_no: str | None = None
    contract_id: str | None = None
    contract_signed_at: datetime | None = None
    refunded_cents: int | None = None
    tse_provider: str | None = None
    tse_tx_id: str | None = None
    tse_serial: str | None = None
    tse_signature: str | None = None
    tse_signature_counter: int | None = None
    tse_log_time: datetime | None = None
    tse_started_at: datetime | None = None
    tse_finished_at: datetime | None = None
    fiscal_retry_pending: bool = False
    fiscal_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def fiscalized(self) -> bool:
        return self.tse_finished_at is not None

    @classmethod
    def from_model(cls, model: PosTransactionModel) -> TransactionSnapshot:
        return cls(
            id=model.id,
            status=TransactionStatus(model.status),
            price_cents=model.price_cents,
            currency=model.currency,
            version=model.version,
            created_by_id=model.created_by_id,
            created_at=model.created_at,
            updated_at=model.updated_at,
            payment_provider=model.payment_provider,
            payment_provider_tx_id=model.payment_provider_tx_id,
            payment_approved_at=model.payment_approved_at,
            receipt_number=model.receipt_number,
            receipt_no=model.receipt_no,
            invoice_number=model.invoice_number,
            invoice_no=model.invoice_no,
            contract_id=model.contract_id,
            contract_signed_at=model.contract_signed_at,
            refunded_cents=model.refunded_cents,
            tse_provider=model.tse_provider,
            tse_tx_id=model.tse_tx_id,
            tse_serial=model.tse_serial,
            tse_signature=model.tse_signature,
            tse_signature_counter=model.tse_signature_counter,
            tse_log_time=model.tse_log_time,
            tse_started_at=model.tse_started_at,
            tse_finished_at=model.tse_finished_at,
            fiscal_retry_pending=bool(model.fiscal_retry_pending),
            fiscal_error=model.fiscal_error,
        )


@dataclass(frozen=True)
class IssuedDocument:
    """A receipt or invoice number stamped on a transaction."""

    transaction_id: UUID
    kind: str
    number: int
    document_no: str
    period: int
    newly_issued: bool
