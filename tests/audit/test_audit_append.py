"""
AuditLog.append and read access.

Verifies:
- The first entry links to GENESIS_HASH, each later one to its predecessor
- seq is dense and strictly increasing
- The chain head counter tracks the tail
- Appends roll back together with the surrounding transaction
- Missing actor and unknown action are rejected before anything is written
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from pos_kernel.db.engine import session_scope
from pos_kernel.exceptions import EncodingError, MissingActorError
from pos_kernel.models.audit_entry import AuditAction, AuditEntry
from pos_kernel.models.counter import AUDIT_CHAIN_PERIOD, Counter, CounterScope
from pos_kernel.services.audit_log import AuditLog
from pos_kernel.utils.hashing import GENESIS_HASH, hash_entry


class TestAppend:
    def test_first_entry_links_to_genesis(self, audit_log, test_actor_id):
        record = audit_log.append(test_actor_id, AuditAction.CREATE_TX, {"price_cents": 100})
        assert record.seq == 1
        assert record.previous_hash == GENESIS_HASH
        assert len(record.hash) == 64

    def test_entries_are_linked(self, audit_log, test_actor_id):
        records = [
            audit_log.append(test_actor_id, AuditAction.CREATE_TX, {"n": i})
            for i in range(5)
        ]
        assert [r.seq for r in records] == [1, 2, 3, 4, 5]
        for prev, cur in zip(records, records[1:]):
            assert cur.previous_hash == prev.hash

    def test_hash_is_reproducible(self, audit_log, deterministic_clock, test_actor_id):
        tx_id = uuid4()
        record = audit_log.append(test_actor_id, "REFUND", {"refund_amount_cents": 50}, tx_id)
        expected = hash_entry(
            GENESIS_HASH,
            test_actor_id,
            "REFUND",
            tx_id,
            {"refund_amount_cents": 50},
            deterministic_clock.now(),
        )
        assert record.hash == expected

    def test_head_counter_tracks_tail(self, audit_log, session, test_actor_id):
        audit_log.append(test_actor_id, AuditAction.CREATE_TX)
        last = audit_log.append(test_actor_id, AuditAction.CANCEL)
        head = session.execute(
            select(Counter).where(
                Counter.scope == CounterScope.AUDIT_HASH.value,
                Counter.period == AUDIT_CHAIN_PERIOD,
            )
        ).scalar_one()
        assert head.value == 2
        assert head.last_hash == last.hash

    def test_payload_is_stored_normalized(self, audit_log, test_actor_id):
        tx_id = uuid4()
        record = audit_log.append(test_actor_id, AuditAction.CREATE_TX, {"tx": tx_id})
        assert record.payload == {"tx": str(tx_id)}

    def test_record_payload_is_a_copy(self, audit_log, test_actor_id):
        record = audit_log.append(test_actor_id, AuditAction.CREATE_TX, {"a": {"b": 1}})
        record.payload["a"]["b"] = 2
        assert audit_log.head().payload == {"a": {"b": 1}}


class TestRejection:
    @pytest.mark.parametrize("actor", ["", "   ", None])
    def test_missing_actor(self, audit_log, actor):
        with pytest.raises(MissingActorError):
            audit_log.append(actor, AuditAction.CREATE_TX)
        assert audit_log.count() == 0

    def test_unknown_action(self, audit_log, test_actor_id):
        with pytest.raises(ValueError):
            audit_log.append(test_actor_id, "DELETE_EVERYTHING")
        assert audit_log.count() == 0

    def test_unencodable_payload(self, audit_log, test_actor_id):
        with pytest.raises(EncodingError):
            audit_log.append(test_actor_id, AuditAction.CREATE_TX, {"x": float("nan")})
        assert audit_log.count() == 0


class TestTransactionality:
    def test_rolled_back_append_leaves_no_trace(self, session_factory, deterministic_clock, test_actor_id):
        session = session_factory()
        try:
            session.begin()
            AuditLog(session, deterministic_clock).append(test_actor_id, AuditAction.CREATE_TX)
            session.rollback()
        finally:
            session.close()

        with session_scope() as s:
            audit = AuditLog(s, deterministic_clock)
            assert audit.count() == 0
            record = audit.append(test_actor_id, AuditAction.CREATE_TX)
            assert record.seq == 1
            assert record.previous_hash == GENESIS_HASH

    def test_committed_entries_survive(self, session_factory, deterministic_clock, test_actor_id):
        with session_scope() as s:
            AuditLog(s, deterministic_clock).append(test_actor_id, AuditAction.CREATE_TX)
        with session_scope() as s:
            AuditLog(s, deterministic_clock).append(test_actor_id, AuditAction.CANCEL)
        with session_scope() as s:
            rows = s.execute(select(AuditEntry).order_by(AuditEntry.seq)).scalars().all()
            assert [r.action for r in rows] == ["CREATE_TX", "CANCEL"]
            assert rows[1].previous_hash == rows[0].hash


class TestReads:
    def test_trace_returns_only_one_transaction(self, audit_log, test_actor_id):
        a, b = uuid4(), uuid4()
        audit_log.append(test_actor_id, AuditAction.CREATE_TX, transaction_id=a)
        audit_log.append(test_actor_id, AuditAction.CREATE_TX, transaction_id=b)
        audit_log.append(test_actor_id, AuditAction.CANCEL, transaction_id=a)
        trace = audit_log.trace(a)
        assert [r.action for r in trace] == [AuditAction.CREATE_TX, AuditAction.CANCEL]
        assert all(r.transaction_id == a for r in trace)

    def test_recent_is_newest_first(self, audit_log, test_actor_id):
        for i in range(4):
            audit_log.append(test_actor_id, AuditAction.CREATE_TX, {"n": i})
        assert [r.seq for r in audit_log.recent(limit=2)] == [4, 3]

    def test_head_and_get(self, audit_log, test_actor_id):
        assert audit_log.head() is None
        record = audit_log.append(test_actor_id, AuditAction.CREATE_TX)
        assert audit_log.head() == record
        assert audit_log.get(record.id) == record
        assert audit_log.get(uuid4()) is None
