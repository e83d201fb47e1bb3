"""
BaseService -- abstract base for session-bound kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for the
    services that work inside a caller's database transaction (AuditLog,
    SequenceService).  They persist via ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or rollback themselves.  The caller
      (TransactionLedger or a test harness) owns commit/rollback, which is
      what makes "status change + counter + audit entry" a single atomic
      unit.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from pos_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for session-bound services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(self, session: Session):
        self.session = session
