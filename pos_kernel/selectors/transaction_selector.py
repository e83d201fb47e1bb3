"""
Module: pos_kernel.selectors.transaction_selector
Responsibility: Read-only queries over POS transactions for back-office
    screens and operator jobs (e.g. the fiscalization retry sweep).
Architecture position: Kernel > Selectors.

Failure modes:
    - Returns None or an empty list when nothing matches (never raises on
      absence of data).
"""

from uuid import UUID

from sqlalchemy import select

from pos_kernel.domain.dtos import TransactionSnapshot
from pos_kernel.domain.lifecycle import TransactionStatus
from pos_kernel.models.transaction import PosTransaction
from pos_kernel.selectors.base import BaseSelector


class TransactionSelector(BaseSelector[PosTransaction]):
    """Selector for POS transactions."""

    def get(self, transaction_id: UUID) -> TransactionSnapshot | None:
        tx = self.session.get(PosTransaction, transaction_id)
        return TransactionSnapshot.from_model(tx) if tx is not None else None

    def list_by_status(
        self,
        status: TransactionStatus | str,
        limit: int = 100,
    ) -> list[TransactionSnapshot]:
        """Transactions in ``status``, newest first."""
        status = TransactionStatus(status)
        rows = self._page(
            select(PosTransaction)
            .where(PosTransaction.status == status.value)
            .order_by(PosTransaction.created_at.desc(), PosTransaction.id),
            limit,
        )
        return [TransactionSnapshot.from_model(tx) for tx in rows]

    def list_pending_fiscalization(self, limit: int = 100) -> list[TransactionSnapshot]:
        """Sales flagged after a failed TSE call, oldest first."""
        rows = self._page(
            select(PosTransaction)
            .where(
                PosTransaction.fiscal_retry_pending.is_(True),
                PosTransaction.tse_finished_at.is_(None),
            )
            .order_by(PosTransaction.created_at, PosTransaction.id),
            limit,
        )
        return [TransactionSnapshot.from_model(tx) for tx in rows]
