"""
Payment provider contract.

The provider is an external, untrusted signal source.  Its raw status
strings are validated against ProviderStatus before they are allowed to
drive a ledger transition; anything unknown is rejected.
"""

from enum import Enum
from typing import Protocol, runtime_checkable

from pos_kernel.domain.lifecycle import TransactionStatus


class ProviderStatus(str, Enum):
    """Statuses a payment provider may report."""

    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


@runtime_checkable
class PaymentProvider(Protocol):
    """Polled by TransactionLedger.sync_payment_status()."""

    name: str

    def get_payment_status(self, provider_tx_id: str) -> str: ...


@runtime_checkable
class RefundingPaymentProvider(Protocol):
    """Optional capability: return money through the provider.

    Called by TransactionLedger.refund() before the refund is recorded.
    Should raise on refusal; providers are expected to be idempotent per
    ``provider_tx_id`` since a ledger conflict after a successful provider
    refund is reported to the caller, who may retry.
    """

    def refund_payment(self, provider_tx_id: str, amount_cents: int) -> None: ...


_PROVIDER_TO_TRANSACTION = {
    ProviderStatus.PAYMENT_PENDING: TransactionStatus.PAYMENT_PENDING,
    ProviderStatus.PAID: TransactionStatus.PAID,
    ProviderStatus.FAILED: TransactionStatus.CANCELLED,
    ProviderStatus.CANCELLED: TransactionStatus.CANCELLED,
    ProviderStatus.REFUNDED: TransactionStatus.REFUNDED,
}


def parse_provider_status(raw: str | ProviderStatus) -> ProviderStatus:
    """
    Validate a raw provider status.

    Raises:
        ValueError: If ``raw`` is not a known provider status.
    """
    if isinstance(raw, ProviderStatus):
        return raw
    return ProviderStatus(str(raw).strip().lower())


def map_provider_status(status: ProviderStatus) -> TransactionStatus:
    """Transaction status a provider status points at."""
    return _PROVIDER_TO_TRANSACTION[status]
