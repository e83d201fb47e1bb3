"""
Pure domain layer.

Statuses, operations and the transition table, collaborator contracts,
the injectable clock and the frozen DTOs returned across the service
boundary.  No database access and no I/O.
"""

from pos_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from pos_kernel.domain.dtos import AuditRecord, IssuedDocument, TransactionSnapshot
from pos_kernel.domain.fiscal import FiscalContext, Fiscalizer, FiscalSignature, FiscalStart
from pos_kernel.domain.lifecycle import (
    OPERATION_ACTIONS,
    TERMINAL_STATUSES,
    TRANSITIONS,
    LedgerOperation,
    TransactionStatus,
    resolve_transition,
)
from pos_kernel.domain.payment import (
    PaymentProvider,
    ProviderStatus,
    RefundingPaymentProvider,
    map_provider_status,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "AuditRecord",
    "IssuedDocument",
    "TransactionSnapshot",
    "FiscalContext",
    "Fiscalizer",
    "FiscalSignature",
    "FiscalStart",
    "OPERATION_ACTIONS",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "LedgerOperation",
    "TransactionStatus",
    "resolve_transition",
    "PaymentProvider",
    "ProviderStatus",
    "RefundingPaymentProvider",
    "map_provider_status",
]
