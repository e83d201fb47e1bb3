"""
Config -> Kernel Bridges.

Functions that convert PosSettings into kernel-compatible inputs.  These
live in pos_config (the producer) because the kernel must NEVER import
pos_config.

Usage:
    from pos_config import get_active_settings
    from pos_config.bridges import build_ledger_options, init_engine

    settings = get_active_settings()
    init_engine(settings)
    ledger = TransactionLedger(get_session_factory(), options=build_ledger_options(settings))
"""

from __future__ import annotations

from sqlalchemy.engine import Engine

from pos_config.schema import PosSettings
from pos_kernel.db.engine import init_engine_from_settings
from pos_kernel.services.transaction_ledger import LedgerOptions


def build_ledger_options(settings: PosSettings) -> LedgerOptions:
    ledger = settings.ledger
    return LedgerOptions(
        max_conflict_retries=ledger.max_conflict_retries,
        audit_append_attempts=ledger.audit_append_attempts,
        receipt_prefix=ledger.receipt_prefix,
        invoice_prefix=ledger.invoice_prefix,
        document_number_width=ledger.document_number_width,
        default_currency=ledger.default_currency,
    )


def init_engine(settings: PosSettings) -> Engine:
    """Initialize the kernel engine from the database section."""
    return init_engine_from_settings(settings.database)
