"""
SequenceService -- gap-free counters per (scope, period).

Responsibility:
    Hands out strictly increasing integers for receipt and invoice numbers.
    Each key (scope, period) -- e.g. ("receipt", 2024) -- has its own
    counter row in ``counters``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by TransactionLedger inside the ledger operation's transaction.

Invariants enforced:
    - Atomic increment-and-fetch: a single
      ``UPDATE counters SET value = value + 1 ... RETURNING value``.  The
      read-then-write pattern is FORBIDDEN; the row lock taken by the
      UPDATE is what serializes concurrent callers.
    - The first value returned for an unseen key is 1 (row created at 0,
      then incremented).
    - Transactional: the increment is only visible after the caller's
      transaction commits.  Rollback returns the number.

Failure modes:
    - IntegrityError: concurrent creation of the same key (handled via
      savepoint rollback and retry of the UPDATE).
    - PersistenceError: any other storage failure.  The caller must not
      treat a number as issued.

Audit relevance:
    Allocation is logged at DEBUG level as ``sequence_allocated`` with
    scope, period and value.
"""

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from pos_kernel.exceptions import PersistenceError
from pos_kernel.logging_config import get_logger
from pos_kernel.models.counter import Counter, CounterScope
from pos_kernel.services.base import BaseService

logger = get_logger("services.sequence")

_counters = Counter.__table__


class SequenceService(BaseService[Counter]):
    """
    Service for allocating document numbers.

    Usage:
        with session.begin():
            number = SequenceService(session).next("receipt", 2024)
            # If the transaction rolls back, the number is not consumed
    """

    def next(self, scope: str | CounterScope, period: int) -> int:
        """
        Allocate the next value for ``(scope, period)``.

        Preconditions:
            - The caller is within an active database transaction.

        Postconditions:
            - Returns an integer >= 1 strictly greater than any value
              previously returned for this key.

        Raises:
            PersistenceError: On storage failure.
        """
        scope = _scope_value(scope)
        try:
            value = self._increment(scope, period)
            if value is None:
                self._create_row(scope, period)
                value = self._increment(scope, period)
        except DBAPIError as exc:
            raise PersistenceError("sequence_next", str(exc)) from exc

        if value is None:
            raise PersistenceError(
                "sequence_next",
                f"counter {scope}/{period} vanished after creation",
            )

        logger.debug(
            "sequence_allocated",
            extra={"scope": scope, "period": period, "value": value},
        )
        return value

    def current(self, scope: str | CounterScope, period: int) -> int:
        """Current value without incrementing; 0 for an unseen key."""
        scope = _scope_value(scope)
        value = self.session.execute(
            select(_counters.c.value).where(
                _counters.c.scope == scope,
                _counters.c.period == period,
            )
        ).scalar_one_or_none()
        return value or 0

    def _increment(self, scope: str, period: int) -> int | None:
        return self.session.execute(
            update(_counters)
            .where(
                _counters.c.scope == scope,
                _counters.c.period == period,
            )
            .values(
                value=_counters.c.value + 1,
                updated_at=func.current_timestamp(),
            )
            .returning(_counters.c.value)
        ).scalar_one_or_none()

    def _create_row(self, scope: str, period: int) -> None:
        # Another caller may create the same key concurrently; a savepoint
        # keeps the rest of the caller's transaction intact if we lose.
        savepoint = self.session.begin_nested()
        try:
            self.session.execute(
                insert(_counters).values(scope=scope, period=period, value=0)
            )
            savepoint.commit()
        except IntegrityError:
            logger.debug(
                "sequence_counter_race_retry",
                extra={"scope": scope, "period": period},
            )
            savepoint.rollback()


def _scope_value(scope: str | CounterScope) -> str:
    return scope.value if isinstance(scope, CounterScope) else str(scope)
