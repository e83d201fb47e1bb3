"""
End-to-end sale scenarios through TransactionLedger.

Verifies:
- Sale -> payment -> paid -> receipt produces the expected chain
- A cancelled sale cannot be refunded
- A refunded sale cannot be storno'd
- Every scenario leaves a verifiable chain
"""

from datetime import datetime, timezone

import pytest

from pos_kernel.db.engine import session_scope
from pos_kernel.domain.lifecycle import TransactionStatus
from pos_kernel.exceptions import InvalidTransitionError
from pos_kernel.models.audit_entry import AuditAction
from pos_kernel.services.audit_log import AuditLog
from pos_kernel.utils.hashing import GENESIS_HASH


def chain():
    with session_scope() as s:
        audit = AuditLog(s)
        return audit.recent(limit=1000)[::-1], audit.verify()


class TestHappyPath:
    def test_sale_to_receipt(self, ledger, test_actor_id):
        tx = ledger.create_transaction(1999, "EUR", actor_id=test_actor_id)
        assert tx.status is TransactionStatus.CREATED
        assert tx.version == 1

        pending = ledger.request_payment(tx.id, "sumup-123", actor_id=test_actor_id, provider="sumup")
        assert pending.status is TransactionStatus.PAYMENT_PENDING
        assert pending.payment_provider_tx_id == "sumup-123"

        paid = ledger.confirm_paid(tx.id, actor_id=test_actor_id)
        assert paid.status is TransactionStatus.PAID
        assert paid.payment_approved_at is not None

        receipt = ledger.issue_receipt(tx.id, actor_id=test_actor_id)
        assert receipt.number == 1
        assert receipt.document_no == "R-2024-000001"
        assert receipt.period == 2024
        assert receipt.newly_issued

        entries, result = chain()
        assert [e.action for e in entries] == [
            AuditAction.CREATE_TX,
            AuditAction.PAYMENT_STATUS_UPDATE,
            AuditAction.PAYMENT_MARK_PAID,
            AuditAction.ISSUE_RECEIPT,
        ]
        assert entries[0].previous_hash == GENESIS_HASH
        assert all(e.transaction_id == tx.id for e in entries)
        assert all(e.actor_id == test_actor_id for e in entries)
        assert entries[0].payload == {"price_cents": 1999, "currency": "EUR", "status": "created"}
        assert entries[3].payload["document_no"] == "R-2024-000001"
        assert result.ok and result.checked == 4

        final = ledger.get_transaction(tx.id)
        assert final.status is TransactionStatus.PAID
        assert final.receipt_number == 1
        assert final.receipt_no == "R-2024-000001"

    def test_receipt_numbers_are_sequential_across_sales(self, ledger, test_actor_id):
        numbers = []
        for price in (100, 200, 300):
            tx = ledger.create_transaction(price, actor_id=test_actor_id)
            ledger.request_payment(tx.id, f"p-{price}", actor_id=test_actor_id)
            ledger.confirm_paid(tx.id, actor_id=test_actor_id)
            numbers.append(ledger.issue_receipt(tx.id, actor_id=test_actor_id).number)
        assert numbers == [1, 2, 3]

    def test_numbering_restarts_each_year(self, ledger, deterministic_clock, test_actor_id):
        def sell():
            tx = ledger.create_transaction(100, actor_id=test_actor_id)
            ledger.request_payment(tx.id, f"p-{tx.id}", actor_id=test_actor_id)
            ledger.confirm_paid(tx.id, actor_id=test_actor_id)
            return ledger.issue_receipt(tx.id, actor_id=test_actor_id)

        assert sell().document_no == "R-2024-000001"
        assert sell().document_no == "R-2024-000002"
        deterministic_clock.set_time(datetime(2025, 1, 1, 0, 0, 1, tzinfo=timezone.utc))
        assert sell().document_no == "R-2025-000001"


class TestRejectedScenarios:
    def test_cancelled_sale_cannot_be_refunded(self, ledger, test_actor_id):
        tx = ledger.create_transaction(500, "EUR", actor_id=test_actor_id)
        ledger.cancel(tx.id, actor_id=test_actor_id, reason="customer left")

        with pytest.raises(InvalidTransitionError) as exc_info:
            ledger.refund(tx.id, actor_id=test_actor_id)
        assert exc_info.value.current_status == "cancelled"
        assert exc_info.value.reason == "terminal status"

        entries, result = chain()
        assert [e.action for e in entries] == [AuditAction.CREATE_TX, AuditAction.CANCEL]
        assert entries[1].payload == {"previous_status": "created", "reason": "customer left"}
        assert result.ok

    def test_refunded_sale_cannot_be_storno(self, ledger, paid_transaction, test_actor_id):
        refunded = ledger.refund(paid_transaction.id, actor_id=test_actor_id, reason="defect")
        assert refunded.status is TransactionStatus.REFUNDED
        assert refunded.refunded_cents == 1000

        with pytest.raises(InvalidTransitionError):
            ledger.storno(paid_transaction.id, actor_id=test_actor_id)

        entries, result = chain()
        assert [e.action for e in entries][-1] == AuditAction.REFUND
        assert entries[-1].payload["refund_amount_cents"] == 1000
        assert entries[-1].payload["previous_status"] == "paid"
        assert result.ok

    def test_paid_sale_cannot_be_cancelled(self, ledger, paid_transaction, test_actor_id):
        with pytest.raises(InvalidTransitionError):
            ledger.cancel(paid_transaction.id, actor_id=test_actor_id)
        assert ledger.get_transaction(paid_transaction.id).status is TransactionStatus.PAID

    def test_rejection_writes_nothing(self, ledger, test_actor_id):
        tx = ledger.create_transaction(500, actor_id=test_actor_id)
        with pytest.raises(InvalidTransitionError):
            ledger.confirm_paid(tx.id, actor_id=test_actor_id)
        entries, _ = chain()
        assert len(entries) == 1
        assert ledger.get_transaction(tx.id).version == 1
