"""
POS settings schema.

Frozen dataclasses that the loader parses YAML into.  Every field has a
default so that a partial YAML file (or none at all) yields a complete,
valid settings object.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings consumed by pos_kernel.db.engine."""

    url: str = "sqlite:///pos_ledger.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30
    statement_timeout_ms: int = 5000  # PostgreSQL statement/lock timeout
    busy_timeout_seconds: float = 30.0  # SQLite writer queue timeout


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerSettings:
    """Tunables for TransactionLedger and AuditLog."""

    max_conflict_retries: int = 3
    audit_append_attempts: int = 8
    receipt_prefix: str = "R"
    invoice_prefix: str = "I"
    document_number_width: int = 6
    default_currency: str = "EUR"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PosSettings:
    """Complete runtime settings.  ``checksum`` identifies the exact values."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    checksum: str = ""
