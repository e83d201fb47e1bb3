"""
Transaction lifecycle -- the POS transaction state machine as data.

Responsibility:
    Declares every transaction status, every ledger operation, which
    (status, operation) pairs are legal, the status each legal pair leads to,
    and the audit action each operation emits.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Consumed by
    TransactionLedger, which performs the side effects.

State machine:

    created --request_payment--> payment_pending --confirm_paid--> paid
       ^                               |
       +--------retry_payment----------+

    created | payment_pending --cancel--> cancelled        (terminal)
    paid --refund--> refunded                               (terminal)
    paid --storno--> storno                                 (terminal)

    Self-loops (status unchanged, still audited):
      update_price             created
      issue_receipt/invoice    paid
      sign_contract            paid
      start_fiscalization      created, payment_pending, paid
      finish_fiscalization     paid, refunded, storno

    A paid transaction is never cancelled; it must be refunded or storno'd.
"""

from enum import Enum
from types import MappingProxyType

from pos_kernel.exceptions import InvalidTransitionError
from pos_kernel.models.audit_entry import AuditAction


class TransactionStatus(str, Enum):
    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    STORNO = "storno"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_pending(self) -> bool:
        return self in (TransactionStatus.CREATED, TransactionStatus.PAYMENT_PENDING)


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.CANCELLED, TransactionStatus.REFUNDED, TransactionStatus.STORNO}
)


class LedgerOperation(str, Enum):
    CREATE = "create"
    UPDATE_PRICE = "update_price"
    REQUEST_PAYMENT = "request_payment"
    RETRY_PAYMENT = "retry_payment"
    CONFIRM_PAID = "confirm_paid"
    CANCEL = "cancel"
    REFUND = "refund"
    STORNO = "storno"
    ISSUE_RECEIPT = "issue_receipt"
    ISSUE_INVOICE = "issue_invoice"
    SIGN_CONTRACT = "sign_contract"
    START_FISCALIZATION = "start_fiscalization"
    FINISH_FISCALIZATION = "finish_fiscalization"


_S = TransactionStatus
_O = LedgerOperation

TRANSITIONS: MappingProxyType = MappingProxyType({
    (_S.CREATED, _O.UPDATE_PRICE): _S.CREATED,
    (_S.CREATED, _O.REQUEST_PAYMENT): _S.PAYMENT_PENDING,
    (_S.PAYMENT_PENDING, _O.RETRY_PAYMENT): _S.CREATED,
    (_S.PAYMENT_PENDING, _O.CONFIRM_PAID): _S.PAID,
    (_S.CREATED, _O.CANCEL): _S.CANCELLED,
    (_S.PAYMENT_PENDING, _O.CANCEL): _S.CANCELLED,
    (_S.PAID, _O.REFUND): _S.REFUNDED,
    (_S.PAID, _O.STORNO): _S.STORNO,
    (_S.PAID, _O.ISSUE_RECEIPT): _S.PAID,
    (_S.PAID, _O.ISSUE_INVOICE): _S.PAID,
    (_S.PAID, _O.SIGN_CONTRACT): _S.PAID,
    (_S.CREATED, _O.START_FISCALIZATION): _S.CREATED,
    (_S.PAYMENT_PENDING, _O.START_FISCALIZATION): _S.PAYMENT_PENDING,
    (_S.PAID, _O.START_FISCALIZATION): _S.PAID,
    (_S.PAID, _O.FINISH_FISCALIZATION): _S.PAID,
    (_S.REFUNDED, _O.FINISH_FISCALIZATION): _S.REFUNDED,
    (_S.STORNO, _O.FINISH_FISCALIZATION): _S.STORNO,
})

OPERATION_ACTIONS: MappingProxyType = MappingProxyType({
    _O.CREATE: AuditAction.CREATE_TX,
    _O.UPDATE_PRICE: AuditAction.UPDATE_PRICE,
    _O.REQUEST_PAYMENT: AuditAction.PAYMENT_STATUS_UPDATE,
    _O.RETRY_PAYMENT: AuditAction.PAYMENT_STATUS_UPDATE,
    _O.CONFIRM_PAID: AuditAction.PAYMENT_MARK_PAID,
    _O.CANCEL: AuditAction.CANCEL,
    _O.REFUND: AuditAction.REFUND,
    _O.STORNO: AuditAction.STORNO,
    _O.ISSUE_RECEIPT: AuditAction.ISSUE_RECEIPT,
    _O.ISSUE_INVOICE: AuditAction.ISSUE_INVOICE,
    _O.SIGN_CONTRACT: AuditAction.SIGN_CONTRACT,
    _O.START_FISCALIZATION: AuditAction.TSE_START,
    _O.FINISH_FISCALIZATION: AuditAction.TSE_FINISH,
})

_unmapped = set(LedgerOperation) - set(OPERATION_ACTIONS)
if _unmapped:
    raise RuntimeError(f"Ledger operations without audit action: {sorted(_unmapped)}")


def allowed_operations(status: TransactionStatus) -> frozenset[LedgerOperation]:
    """Operations that are legal from ``status``."""
    return frozenset(op for (src, op) in TRANSITIONS if src is status)


def is_allowed(status: TransactionStatus, operation: LedgerOperation) -> bool:
    return (status, operation) in TRANSITIONS


def resolve_transition(
    transaction_id: str,
    current: TransactionStatus,
    operation: LedgerOperation,
) -> TransactionStatus:
    """
    Return the status ``operation`` leads to from ``current``.

    Raises:
        InvalidTransitionError: If the pair is not in TRANSITIONS.
    """
    target = TRANSITIONS.get((current, operation))
    if target is None:
        reason = "terminal status" if current.is_terminal else None
        raise InvalidTransitionError(
            transaction_id=str(transaction_id),
            current_status=current.value,
            operation=operation.value,
            reason=reason,
        )
    return target


def audit_action_for(operation: LedgerOperation) -> AuditAction:
    return OPERATION_ACTIONS[operation]
