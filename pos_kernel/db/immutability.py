"""
ORM-Level Immutability Enforcement (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

The POS audit log is evidence.  Once an entry is appended it may never change
or disappear, and the counters that hand out receipt numbers and hold the
chain tail may only move forward.

  Layer 1: THIS FILE (ORM event listeners)
    - Catches modifications through Python/SQLAlchemy code
    - Fires BEFORE the SQL is sent to the database

  Layer 2: db/triggers.py (database triggers)
    - Catches raw SQL, bulk statements, direct database access
    - Fires AT the database level, independent of application code

Both layers enforce the SAME rules.

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |                                            ^
         v                                            |
    [before_delete event] --> _check_*_delete() ------+
         |
         v
    SQL sent to database (only if checks pass)

    session.execute(update(AuditEntry)...)
         |
         v
    [do_orm_execute event] --> _reject_bulk_audit_mutation() --> error

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity          | Rule
----------------|------------------------------------------------------------
AuditEntry      | No UPDATE, no DELETE, ever (per-row and bulk)
Counter         | No DELETE; value never decreases; scope/period fixed
PosTransaction  | No DELETE; status never leaves a terminal status

===============================================================================
USAGE
===============================================================================

Registered by init_engine_from_url().  To temporarily disable (TESTS ONLY):

    from pos_kernel.db.immutability import unregister_immutability_listeners
    unregister_immutability_listeners()
    # ... do forbidden operation ...
    register_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

from pos_kernel.exceptions import ImmutabilityViolationError
from pos_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

AUDIT_TABLE = "pos_audit_logs"

# Plain strings: db/ must not import domain/
_TERMINAL_STATUSES = frozenset({"cancelled", "refunded", "storno"})


def _blocked(entity_type: str, entity_id: str, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            "reason": reason,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
    )


# =============================================================================
# AuditEntry: always immutable
# =============================================================================


def _check_audit_entry_immutability(mapper, connection, target):
    """Prevent any updates to AuditEntry records."""
    raise _blocked(
        "AuditEntry",
        str(target.id),
        "UPDATE",
        "Audit entries are append-only and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    """Prevent deletion of AuditEntry records."""
    raise _blocked(
        "AuditEntry",
        str(target.id),
        "DELETE",
        "Audit entries are append-only and cannot be deleted",
    )


def _reject_bulk_audit_mutation(orm_execute_state):
    """
    Reject ``session.execute(update(AuditEntry))`` and friends.

    Mapper events do not fire for bulk statements, so the Session hook is
    the only ORM-level point that sees them.
    """
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return

    table = getattr(orm_execute_state.statement, "table", None)
    if table is None or getattr(table, "name", None) != AUDIT_TABLE:
        return

    operation = "UPDATE" if orm_execute_state.is_update else "DELETE"
    raise _blocked(
        "AuditEntry",
        "*",
        operation,
        f"Bulk {operation} on {AUDIT_TABLE} is forbidden",
    )


# =============================================================================
# Counter: monotonic, never deleted
# =============================================================================


def _check_counter_immutability(mapper, connection, target):
    """
    Allow value increases and last_hash/updated_at changes only.

    Uses attribute history: ``deleted`` holds the loaded (database) value,
    ``added`` the pending one.
    """
    for key_field in ("scope", "period"):
        history = get_history(target, key_field)
        if history.deleted and history.added and history.deleted[0] != history.added[0]:
            raise _blocked(
                "Counter",
                f"{history.deleted[0]}",
                "UPDATE",
                f"Counter {key_field} cannot be changed",
            )

    value_history = get_history(target, "value")
    if value_history.deleted and value_history.added:
        old_value = value_history.deleted[0]
        new_value = value_history.added[0]
        if old_value is not None and new_value is not None and new_value < old_value:
            raise _blocked(
                "Counter",
                f"{target.scope}/{target.period}",
                "UPDATE",
                f"Counter value cannot decrease ({old_value} -> {new_value})",
            )


def _check_counter_delete(mapper, connection, target):
    raise _blocked(
        "Counter",
        f"{target.scope}/{target.period}",
        "DELETE",
        "Counters cannot be deleted",
    )


# =============================================================================
# PosTransaction: terminal statuses are final, rows never deleted
# =============================================================================


def _check_transaction_immutability(mapper, connection, target):
    status_history = get_history(target, "status")
    if status_history.deleted and status_history.added:
        old_status = status_history.deleted[0]
        if old_status in _TERMINAL_STATUSES and status_history.added[0] != old_status:
            raise _blocked(
                "PosTransaction",
                str(target.id),
                "UPDATE",
                f"Transaction in terminal status {old_status!r} cannot change status",
            )


def _check_transaction_delete(mapper, connection, target):
    raise _blocked(
        "PosTransaction",
        str(target.id),
        "DELETE",
        "Transactions are never deleted; use cancel, refund or storno",
    )


# =============================================================================
# Registration
# =============================================================================


def _listeners():
    from pos_kernel.models.audit_entry import AuditEntry
    from pos_kernel.models.counter import Counter
    from pos_kernel.models.transaction import PosTransaction

    return [
        (AuditEntry, "before_update", _check_audit_entry_immutability),
        (AuditEntry, "before_delete", _check_audit_entry_delete),
        (Counter, "before_update", _check_counter_immutability),
        (Counter, "before_delete", _check_counter_delete),
        (PosTransaction, "before_update", _check_transaction_immutability),
        (PosTransaction, "before_delete", _check_transaction_delete),
        (Session, "do_orm_execute", _reject_bulk_audit_mutation),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners already present are not added twice.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)


def immutability_listeners_registered() -> bool:
    return all(
        event.contains(target, event_name, listener_fn)
        for target, event_name, listener_fn in _listeners()
    )
