"""
Module: pos_kernel.selectors.base
Responsibility: Base class for read-only query selectors over POS data.
Architecture position: Kernel > Selectors.  May import from db/, models/
    and domain/dtos.py.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: selectors never add, delete, flush or commit.
    - Selectors return frozen DTOs, never ORM instances.
    - The caller owns the session and its transaction scope.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy import Select
from sqlalchemy.orm import Session

from pos_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)

MAX_PAGE_SIZE = 1000


class BaseSelector(ABC, Generic[ModelType]):
    def __init__(self, session: Session):
        self.session = session

    def _page(self, stmt: Select, limit: int) -> list[ModelType]:
        """Run ``stmt`` capped at ``limit`` rows (1..MAX_PAGE_SIZE)."""
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit!r}")
        return list(self.session.execute(stmt.limit(limit)).scalars())
