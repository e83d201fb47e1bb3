"""Kernel services - the imperative shell around the domain."""

from pos_kernel.services.audit_log import AuditLog
from pos_kernel.services.sequence_service import SequenceService
from pos_kernel.services.transaction_ledger import (
    LedgerOptions,
    TransactionLedger,
    format_document_number,
)

__all__ = [
    "AuditLog",
    "SequenceService",
    "LedgerOptions",
    "TransactionLedger",
    "format_document_number",
]
