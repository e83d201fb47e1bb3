"""ORM models for the POS kernel."""

from pos_kernel.models.audit_entry import AuditAction, AuditEntry
from pos_kernel.models.counter import AUDIT_CHAIN_PERIOD, Counter, CounterScope
from pos_kernel.models.transaction import PosTransaction

__all__ = [
    "AuditAction",
    "AuditEntry",
    "AUDIT_CHAIN_PERIOD",
    "Counter",
    "CounterScope",
    "PosTransaction",
]
