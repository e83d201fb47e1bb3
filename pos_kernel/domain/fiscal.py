"""
Fiscalization (TSE) contract.

A technical security element signs each sale.  The ledger treats it as an
opaque collaborator: ``start`` opens a TSE transaction, ``finish`` closes it
and returns the signature.  A failure never reverts a completed payment;
the ledger flags the transaction for retry instead.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID


@dataclass(frozen=True)
class FiscalContext:
    """What the TSE needs to know about a sale."""

    transaction_id: UUID
    actor_id: str
    price_cents: int
    currency: str
    status: str
    tse_tx_id: str | None = None


@dataclass(frozen=True)
class FiscalStart:
    provider: str
    tse_tx_id: str
    serial: str
    started_at: datetime


@dataclass(frozen=True)
class FiscalSignature:
    signature: str
    signature_counter: int
    log_time: datetime
    finished_at: datetime


@runtime_checkable
class Fiscalizer(Protocol):
    """Raise any exception to signal a failed call."""

    def start(self, context: FiscalContext) -> FiscalStart: ...

    def finish(self, context: FiscalContext) -> FiscalSignature: ...
