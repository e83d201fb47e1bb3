"""
Audit chain verification and tamper detection.

Verifies:
- An untouched chain verifies from genesis
- A rewritten payload, actor or hash is reported at the exact index
- A removed middle entry breaks the link of its successor
- A removed tail entry is caught by the chain head check
- Checkpointed verification walks only the suffix
- validate_chain raises ChainIntegrityError naming the entry
"""

import pytest

from pos_kernel.db.engine import get_engine, session_scope
from pos_kernel.exceptions import ChainIntegrityError
from pos_kernel.models.audit_entry import AuditAction
from pos_kernel.services.audit_log import AuditLog
from pos_kernel.utils.hashing import GENESIS_HASH


def seed_chain(clock, actor_id: str, n: int = 5) -> list:
    records = []
    with session_scope() as s:
        audit = AuditLog(s, clock)
        for i in range(n):
            records.append(audit.append(actor_id, AuditAction.CREATE_TX, {"price_cents": 100 + i}))
            clock.tick()
    return records


def run_sql(statement: str) -> None:
    with get_engine().begin() as conn:
        conn.exec_driver_sql(statement)


def verify(clock, **kwargs):
    with session_scope() as s:
        return AuditLog(s, clock).verify(**kwargs)


class TestIntactChain:
    def test_empty_chain_verifies(self, db_engine, deterministic_clock):
        result = verify(deterministic_clock)
        assert result.ok
        assert result.checked == 0

    def test_full_chain_verifies(self, db_engine, deterministic_clock, test_actor_id):
        records = seed_chain(deterministic_clock, test_actor_id)
        result = verify(deterministic_clock)
        assert result.ok
        assert result.checked == 5
        assert result.last_hash == records[-1].hash

    def test_verification_logged(self, db_engine, deterministic_clock, test_actor_id, captured_logs):
        seed_chain(deterministic_clock, test_actor_id, 2)
        verify(deterministic_clock)
        verified = [r for r in captured_logs() if r["message"] == "audit_chain_verified"]
        assert verified and verified[-1]["checked"] == 2


class TestTamperDetection:
    def test_rewritten_payload(self, db_engine, deterministic_clock, test_actor_id, tamper, captured_logs):
        records = seed_chain(deterministic_clock, test_actor_id)
        with tamper():
            run_sql("UPDATE pos_audit_logs SET payload = '{\"price_cents\": 1}' WHERE seq = 3")

        result = verify(deterministic_clock)
        assert not result.ok
        assert result.broken_at_index == 2
        assert result.reason == "stored hash does not match recomputed hash"
        assert result.actual_hash == records[2].hash

        broken = [r for r in captured_logs() if r["message"] == "audit_chain_broken"]
        assert broken and broken[-1]["level"] == "CRITICAL"
        assert broken[-1]["broken_at_index"] == 2

    def test_rewritten_actor(self, db_engine, deterministic_clock, test_actor_id, tamper):
        seed_chain(deterministic_clock, test_actor_id)
        with tamper():
            run_sql("UPDATE pos_audit_logs SET actor_id = 'someone-else' WHERE seq = 1")
        assert verify(deterministic_clock).broken_at_index == 0

    def test_rehashed_entry_breaks_successor(self, db_engine, deterministic_clock, test_actor_id, tamper):
        seed_chain(deterministic_clock, test_actor_id)
        fake = "f" * 64
        with tamper():
            run_sql(f"UPDATE pos_audit_logs SET hash = '{fake}' WHERE seq = 2")
        result = verify(deterministic_clock)
        assert result.broken_at_index == 1
        assert result.actual_hash == fake

    def test_removed_middle_entry(self, db_engine, deterministic_clock, test_actor_id, tamper):
        seed_chain(deterministic_clock, test_actor_id)
        with tamper():
            run_sql("DELETE FROM pos_audit_logs WHERE seq = 2")
        result = verify(deterministic_clock)
        assert result.broken_at_index == 1
        assert result.reason == "previous_hash does not match predecessor"

    def test_removed_tail_entry(self, db_engine, deterministic_clock, test_actor_id, tamper):
        records = seed_chain(deterministic_clock, test_actor_id)
        with tamper():
            run_sql("DELETE FROM pos_audit_logs WHERE seq = 5")
        result = verify(deterministic_clock)
        assert not result.ok
        assert result.broken_at_index == 4
        assert result.expected_hash == records[4].hash
        assert result.actual_hash == records[3].hash

    def test_validate_chain_raises(self, db_engine, deterministic_clock, test_actor_id, tamper):
        records = seed_chain(deterministic_clock, test_actor_id)
        with tamper():
            run_sql("UPDATE pos_audit_logs SET payload = '{}' WHERE seq = 4")
        with session_scope() as s:
            with pytest.raises(ChainIntegrityError) as exc_info:
                AuditLog(s, deterministic_clock).validate_chain()
        assert exc_info.value.broken_at_index == 3
        assert exc_info.value.entry_id == str(records[3].id)
        assert exc_info.value.code == "CHAIN_INTEGRITY"


class TestCheckpointedVerification:
    def test_suffix_after_stored_hash(self, db_engine, deterministic_clock, test_actor_id):
        seed_chain(deterministic_clock, test_actor_id)
        result = verify(deterministic_clock, after_seq=2)
        assert result.ok
        assert result.checked == 3

    def test_suffix_with_trusted_anchor(self, db_engine, deterministic_clock, test_actor_id):
        records = seed_chain(deterministic_clock, test_actor_id)
        assert verify(deterministic_clock, after_seq=2, anchor_hash=records[1].hash).ok

    def test_wrong_anchor_fails_first_entry(self, db_engine, deterministic_clock, test_actor_id):
        seed_chain(deterministic_clock, test_actor_id)
        result = verify(deterministic_clock, after_seq=2, anchor_hash=GENESIS_HASH)
        assert result.broken_at_index == 0

    def test_tamper_before_checkpoint_is_outside_walk(self, db_engine, deterministic_clock, test_actor_id, tamper):
        records = seed_chain(deterministic_clock, test_actor_id)
        with tamper():
            run_sql("UPDATE pos_audit_logs SET actor_id = 'x' WHERE seq = 1")
        assert verify(deterministic_clock, after_seq=2, anchor_hash=records[1].hash).ok
        assert not verify(deterministic_clock).ok

    def test_unknown_checkpoint(self, db_engine, deterministic_clock, test_actor_id):
        seed_chain(deterministic_clock, test_actor_id, 1)
        with pytest.raises(ValueError):
            verify(deterministic_clock, after_seq=42)
