"""
AuditLog -- append-only, hash-chained POS audit trail.

Responsibility:
    Accepts one audit entry at a time, links it to the chain tail, and
    persists it.  Offers read and verification access to the chain.  It
    offers no update and no delete: the store is append-and-read by
    construction.

Architecture position:
    Kernel > Services -- imperative shell.  Runs inside the caller's
    transaction (flush only, never commit) so that the audit entry commits
    or rolls back together with the ledger change it describes.

Invariants enforced:
    - Global chain: entry N's previous_hash is entry N-1's hash; the first
      entry links to GENESIS_HASH.
    - Serialized tail: the chain head lives in the ``counters`` row
      (scope ``audit_hash``, period 0).  Append advances it by
      compare-and-swap on ``last_hash``; a loser recomputes against the new
      tail and tries again, bounded by ``max_append_attempts``.
    - Actor attribution: every entry names a non-empty actor.

Failure modes:
    - MissingActorError: empty actor_id.
    - EncodingError: payload not canonicalizable.
    - ConcurrencyConflictError: CAS lost ``max_append_attempts`` times.
    - PersistenceError: storage failure.
    - ChainIntegrityError: validate_chain() found a broken link or hash.

Audit relevance:
    Appends log ``audit_entry_appended`` at INFO.  A failed verification
    logs ``audit_chain_broken`` at CRITICAL: it means tampering or a bug and
    is a compliance incident, not something to retry.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from pos_kernel.domain.clock import Clock, SystemClock
from pos_kernel.domain.dtos import AuditRecord
from pos_kernel.exceptions import (
    ChainIntegrityError,
    ConcurrencyConflictError,
    MissingActorError,
    PersistenceError,
)
from pos_kernel.logging_config import get_logger
from pos_kernel.models.audit_entry import AuditAction, AuditEntry
from pos_kernel.models.counter import AUDIT_CHAIN_PERIOD, Counter, CounterScope
from pos_kernel.services.base import BaseService
from pos_kernel.utils.hashing import (
    GENESIS_HASH,
    VerificationResult,
    hash_entry,
    normalize_payload,
    verify_chain,
)

logger = get_logger("services.audit_log")

_counters = Counter.__table__
_HEAD_SCOPE = CounterScope.AUDIT_HASH.value

DEFAULT_APPEND_ATTEMPTS = 8


class AuditLog(BaseService[AuditEntry]):
    """
    The POS audit chain.

    Contract:
        append() adds exactly one entry per call and returns its frozen
        record.  Read methods never mutate.

    Non-goals:
        - No update(), no delete().  Corrections are new entries.
    """

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        max_append_attempts: int = DEFAULT_APPEND_ATTEMPTS,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._max_append_attempts = max_append_attempts

    # =========================================================================
    # Append
    # =========================================================================

    def append(
        self,
        actor_id: str,
        action: AuditAction | str,
        payload: dict[str, Any] | None = None,
        transaction_id: UUID | None = None,
    ) -> AuditRecord:
        """
        Append one entry to the chain.

        Preconditions:
            - The caller is within an active database transaction.

        Postconditions:
            - The entry is flushed; it becomes durable when the caller
              commits.
            - The chain head points at the new entry's hash.

        Raises:
            MissingActorError, EncodingError, ConcurrencyConflictError,
            PersistenceError.
        """
        action = AuditAction(action)
        if actor_id is None or not str(actor_id).strip():
            raise MissingActorError(action.value)
        actor_id = str(actor_id)

        normalized = normalize_payload(payload)

        try:
            self._ensure_head()
            for attempt in range(1, self._max_append_attempts + 1):
                previous_hash = self._read_tail()
                created_at = self._clock.now()
                entry_hash = hash_entry(
                    previous_hash,
                    actor_id,
                    action.value,
                    transaction_id,
                    normalized,
                    created_at,
                )

                seq = self._advance_head(previous_hash, entry_hash)
                if seq is None:
                    logger.debug(
                        "audit_append_conflict",
                        extra={"action": action.value, "attempt": attempt},
                    )
                    continue

                entry = AuditEntry(
                    seq=seq,
                    actor_id=actor_id,
                    action=action.value,
                    transaction_id=transaction_id,
                    payload=normalized,
                    previous_hash=previous_hash,
                    hash=entry_hash,
                    created_at=created_at,
                )
                self.session.add(entry)
                self.session.flush()

                logger.info(
                    "audit_entry_appended",
                    extra={
                        "seq": seq,
                        "action": action.value,
                        "actor_id": actor_id,
                        "transaction_id": str(transaction_id) if transaction_id else None,
                        "hash_prefix": entry_hash[:16],
                    },
                )
                return AuditRecord.from_model(entry)
        except DBAPIError as exc:
            raise PersistenceError("audit_append", str(exc)) from exc

        logger.warning(
            "audit_append_exhausted",
            extra={"action": action.value, "attempts": self._max_append_attempts},
        )
        raise ConcurrencyConflictError("audit_chain", self._max_append_attempts)

    def _ensure_head(self) -> None:
        exists = self.session.execute(
            select(_counters.c.id).where(
                _counters.c.scope == _HEAD_SCOPE,
                _counters.c.period == AUDIT_CHAIN_PERIOD,
            )
        ).first()
        if exists is not None:
            return

        savepoint = self.session.begin_nested()
        try:
            self.session.execute(
                insert(_counters).values(
                    scope=_HEAD_SCOPE,
                    period=AUDIT_CHAIN_PERIOD,
                    value=0,
                    last_hash=GENESIS_HASH,
                )
            )
            savepoint.commit()
            logger.info("audit_chain_head_initialized")
        except IntegrityError:
            savepoint.rollback()

    def _read_tail(self) -> str:
        """Current chain tail hash."""
        return self.session.execute(
            select(_counters.c.last_hash).where(
                _counters.c.scope == _HEAD_SCOPE,
                _counters.c.period == AUDIT_CHAIN_PERIOD,
            )
        ).scalar_one()

    def _advance_head(self, expected_hash: str, new_hash: str) -> int | None:
        """Compare-and-swap the chain head; the new seq, or None if we lost."""
        return self.session.execute(
            update(_counters)
            .where(
                _counters.c.scope == _HEAD_SCOPE,
                _counters.c.period == AUDIT_CHAIN_PERIOD,
                _counters.c.last_hash == expected_hash,
            )
            .values(
                last_hash=new_hash,
                value=_counters.c.value + 1,
                updated_at=func.current_timestamp(),
            )
            .returning(_counters.c.value)
        ).scalar_one_or_none()

    # =========================================================================
    # Verification
    # =========================================================================

    def verify(
        self,
        after_seq: int | None = None,
        anchor_hash: str | None = None,
    ) -> VerificationResult:
        """
        Recompute the chain, failing fast at the first broken entry.

        With ``after_seq`` only entries with a greater seq are walked,
        anchored at ``anchor_hash`` (a previously verified checkpoint) or,
        when omitted, at the stored hash of entry ``after_seq``.
        ``broken_at_index`` is relative to the walked suffix.

        A full walk also checks that the chain head matches the last entry,
        which detects a truncated tail.
        """
        query = select(AuditEntry).order_by(AuditEntry.seq)
        if after_seq is not None:
            query = query.where(AuditEntry.seq > after_seq)
            if anchor_hash is None:
                anchor_hash = self.session.execute(
                    select(AuditEntry.hash).where(AuditEntry.seq == after_seq)
                ).scalar_one_or_none()
                if anchor_hash is None:
                    raise ValueError(f"No audit entry with seq {after_seq}")
        if anchor_hash is None:
            anchor_hash = GENESIS_HASH

        entries = self.session.execute(
            query.execution_options(populate_existing=True)
        ).scalars()
        result = verify_chain(entries, anchor_hash=anchor_hash)

        if result.ok:
            head_hash = self.session.execute(
                select(_counters.c.last_hash).where(
                    _counters.c.scope == _HEAD_SCOPE,
                    _counters.c.period == AUDIT_CHAIN_PERIOD,
                )
            ).scalar_one_or_none()
            if head_hash is not None and head_hash != result.last_hash:
                result = VerificationResult(
                    ok=False,
                    checked=result.checked,
                    broken_at_index=result.checked,
                    reason="chain head does not match last entry",
                    expected_hash=head_hash,
                    actual_hash=result.last_hash,
                )

        if result.ok:
            logger.info(
                "audit_chain_verified",
                extra={"checked": result.checked, "after_seq": after_seq},
            )
        else:
            logger.critical(
                "audit_chain_broken",
                extra={
                    "broken_at_index": result.broken_at_index,
                    "after_seq": after_seq,
                    "reason": result.reason,
                    "expected_hash": result.expected_hash,
                    "actual_hash": result.actual_hash,
                },
            )
        return result

    def validate_chain(self) -> VerificationResult:
        """
        Full verification that raises instead of returning a failure.

        Raises:
            ChainIntegrityError: If the chain is broken.
        """
        result = self.verify()
        if not result.ok:
            entry_id = self.session.execute(
                select(AuditEntry.id)
                .order_by(AuditEntry.seq)
                .offset(result.broken_at_index)
                .limit(1)
            ).scalar_one_or_none()
            raise ChainIntegrityError(
                broken_at_index=result.broken_at_index,
                entry_id=str(entry_id) if entry_id else None,
                expected_hash=result.expected_hash,
                actual_hash=result.actual_hash,
                reason=result.reason,
            )
        return result

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, entry_id: UUID) -> AuditRecord | None:
        entry = self.session.get(AuditEntry, entry_id)
        return AuditRecord.from_model(entry) if entry is not None else None

    def head(self) -> AuditRecord | None:
        """The most recently appended entry."""
        entry = self.session.execute(
            select(AuditEntry).order_by(AuditEntry.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return AuditRecord.from_model(entry) if entry is not None else None

    def trace(self, transaction_id: UUID) -> list[AuditRecord]:
        """All entries for one transaction, in chain order."""
        entries = self.session.execute(
            select(AuditEntry)
            .where(AuditEntry.transaction_id == transaction_id)
            .order_by(AuditEntry.seq)
        ).scalars()
        return [AuditRecord.from_model(e) for e in entries]

    def recent(self, limit: int = 50) -> list[AuditRecord]:
        """Newest entries first."""
        entries = self.session.execute(
            select(AuditEntry).order_by(AuditEntry.seq.desc()).limit(limit)
        ).scalars()
        return [AuditRecord.from_model(e) for e in entries]

    def count(self) -> int:
        return self.session.execute(
            select(func.count()).select_from(AuditEntry)
        ).scalar_one()
