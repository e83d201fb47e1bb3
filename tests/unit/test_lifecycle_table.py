"""
Transaction lifecycle table.

Verifies:
- Exactly the documented transitions are legal
- Terminal statuses accept only fiscalization completion
- A paid transaction cannot be cancelled
- Every operation maps to an audit action
"""

import pytest

from pos_kernel.domain.lifecycle import (
    OPERATION_ACTIONS,
    TERMINAL_STATUSES,
    TRANSITIONS,
    LedgerOperation,
    TransactionStatus,
    allowed_operations,
    audit_action_for,
    is_allowed,
    resolve_transition,
)
from pos_kernel.exceptions import InvalidTransitionError
from pos_kernel.models.audit_entry import AuditAction

S = TransactionStatus
O = LedgerOperation


class TestTransitions:
    @pytest.mark.parametrize(
        "current, operation, target",
        [
            (S.CREATED, O.REQUEST_PAYMENT, S.PAYMENT_PENDING),
            (S.PAYMENT_PENDING, O.RETRY_PAYMENT, S.CREATED),
            (S.PAYMENT_PENDING, O.CONFIRM_PAID, S.PAID),
            (S.CREATED, O.CANCEL, S.CANCELLED),
            (S.PAYMENT_PENDING, O.CANCEL, S.CANCELLED),
            (S.PAID, O.REFUND, S.REFUNDED),
            (S.PAID, O.STORNO, S.STORNO),
            (S.PAID, O.ISSUE_RECEIPT, S.PAID),
            (S.PAID, O.ISSUE_INVOICE, S.PAID),
            (S.PAID, O.SIGN_CONTRACT, S.PAID),
            (S.CREATED, O.UPDATE_PRICE, S.CREATED),
        ],
    )
    def test_legal_transition(self, current, operation, target):
        assert resolve_transition("tx-1", current, operation) is target

    def test_paid_cannot_be_cancelled(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            resolve_transition("tx-1", S.PAID, O.CANCEL)
        assert exc_info.value.current_status == "paid"
        assert exc_info.value.operation == "cancel"
        assert exc_info.value.code == "INVALID_TRANSITION"

    def test_created_cannot_be_paid_directly(self):
        assert not is_allowed(S.CREATED, O.CONFIRM_PAID)

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_status_only_allows_fiscal_completion(self, status):
        allowed = allowed_operations(status)
        if status is S.CANCELLED:
            assert allowed == frozenset()
        else:
            assert allowed == {O.FINISH_FISCALIZATION}

    @pytest.mark.parametrize("status", [S.CANCELLED, S.REFUNDED, S.STORNO])
    def test_terminal_rejection_names_reason(self, status):
        with pytest.raises(InvalidTransitionError) as exc_info:
            resolve_transition("tx-1", status, O.REFUND)
        assert exc_info.value.reason == "terminal status"

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            TRANSITIONS[(S.PAID, O.CANCEL)] = S.CANCELLED

    def test_no_transition_leaves_a_terminal_status(self):
        for (source, _), target in TRANSITIONS.items():
            if source in TERMINAL_STATUSES:
                assert target is source

    def test_status_helpers(self):
        assert S.REFUNDED.is_terminal
        assert not S.PAID.is_terminal
        assert S.CREATED.is_pending and S.PAYMENT_PENDING.is_pending
        assert not S.PAID.is_pending


class TestAuditActions:
    def test_every_operation_is_mapped(self):
        assert set(OPERATION_ACTIONS) == set(LedgerOperation)

    @pytest.mark.parametrize(
        "operation, action",
        [
            (O.CREATE, AuditAction.CREATE_TX),
            (O.REQUEST_PAYMENT, AuditAction.PAYMENT_STATUS_UPDATE),
            (O.RETRY_PAYMENT, AuditAction.PAYMENT_STATUS_UPDATE),
            (O.CONFIRM_PAID, AuditAction.PAYMENT_MARK_PAID),
            (O.REFUND, AuditAction.REFUND),
            (O.STORNO, AuditAction.STORNO),
            (O.START_FISCALIZATION, AuditAction.TSE_START),
            (O.FINISH_FISCALIZATION, AuditAction.TSE_FINISH),
        ],
    )
    def test_action_for_operation(self, operation, action):
        assert audit_action_for(operation) is action
