"""
POS Kernel

The append-only audit ledger behind point-of-sale transactions:
- Hash-chained, tamper-evident audit log
- Duplicate-free receipt/invoice numbering
- Transaction lifecycle state machine with one audit entry per transition
- Atomic unit of work spanning status, counters and audit append
"""

__version__ = "0.1.0"
