"""
TransactionLedger -- the only writer of POS transaction state.

Responsibility:
    Implements every lifecycle operation of a POS sale (create, price
    update, payment request/retry/confirmation, cancel, refund, storno,
    receipt and invoice issue, contract signing, TSE fiscalization, payment
    status sync).  Each operation validates the current status against the
    lifecycle table, applies the mutation and any document-number
    allocation, and appends the matching audit entry.

Architecture position:
    Kernel > Services -- imperative shell.  Owns transaction boundaries:
    it is the one place in the kernel that commits.  Pure decisions live
    in domain/lifecycle.py; persistence of the chain in AuditLog; numbers
    in SequenceService.

Invariants enforced:
    - Atomicity: status change, counter increment and audit entry commit
      in ONE database transaction.  Success is reported only after commit;
      on any failure none of the three is visible.
    - Linearizable per transaction: PosTransaction.version is an
      optimistic lock, so two mutually exclusive operations (e.g. two
      refunds) cannot both succeed.  A conflict retries from a fresh
      session, bounded by ``max_conflict_retries``.
    - Fiscalization failure never reverts a committed payment; the
      transaction stays ``paid`` and is flagged for retry.
    - Callers only ever receive frozen DTOs.

Failure modes:
    - InvalidTransitionError: operation illegal from the current status.
    - TransactionNotFoundError: unknown id.
    - InvalidAmountError: bad price or refund amount.
    - ConcurrencyConflictError: retries exhausted.
    - PersistenceError: storage failure (wrapped DBAPIError).
    - FiscalizationError / PaymentProviderError: collaborator failures.

Audit relevance:
    Every successful state change produces exactly one AuditEntry; each
    operation logs ``ledger_transition`` with before/after status.
"""

from dataclasses import dataclass
from typing import Any, Callable, TypeVar
from uuid import UUID

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from pos_kernel.domain.clock import Clock, SystemClock
from pos_kernel.domain.dtos import IssuedDocument, TransactionSnapshot
from pos_kernel.domain.fiscal import FiscalContext, Fiscalizer, FiscalSignature, FiscalStart
from pos_kernel.domain.lifecycle import (
    LedgerOperation,
    TransactionStatus,
    audit_action_for,
    resolve_transition,
)
from pos_kernel.domain.payment import (
    PaymentProvider,
    RefundingPaymentProvider,
    map_provider_status,
    parse_provider_status,
)
from pos_kernel.exceptions import (
    ConcurrencyConflictError,
    FiscalizationError,
    InvalidAmountError,
    InvalidTransitionError,
    MissingActorError,
    PaymentProviderError,
    PersistenceError,
    PosKernelError,
    TransactionNotFoundError,
)
from pos_kernel.logging_config import LogContext, get_logger
from pos_kernel.models.counter import CounterScope
from pos_kernel.models.transaction import PosTransaction
from pos_kernel.services.audit_log import DEFAULT_APPEND_ATTEMPTS, AuditLog
from pos_kernel.services.sequence_service import SequenceService

logger = get_logger("services.transaction_ledger")

T = TypeVar("T")

_FISCAL_ERROR_MAX_LENGTH = 500


@dataclass(frozen=True)
class LedgerOptions:
    """Tunables for TransactionLedger (see pos_config.bridges)."""

    max_conflict_retries: int = 3
    audit_append_attempts: int = DEFAULT_APPEND_ATTEMPTS
    receipt_prefix: str = "R"
    invoice_prefix: str = "I"
    document_number_width: int = 6
    default_currency: str = "EUR"


@dataclass
class _UnitOfWork:
    session: Session
    audit: AuditLog
    sequences: SequenceService


class TransactionLedger:
    """
    POS transaction lifecycle service.

    Contract:
        Every public mutating method takes ``actor_id`` (keyword-only) and
        returns a frozen DTO built from committed state.

    Non-goals:
        - Does NOT render receipts, talk HTTP or authenticate actors.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        clock: Clock | None = None,
        fiscalizer: Fiscalizer | None = None,
        options: LedgerOptions | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._fiscalizer = fiscalizer
        self._options = options or LedgerOptions()

    @property
    def options(self) -> LedgerOptions:
        return self._options

    # =========================================================================
    # Unit of work
    # =========================================================================

    def _run(
        self,
        operation: str,
        transaction_id: UUID | str | None,
        work: Callable[[_UnitOfWork], T],
    ) -> T:
        """
        Run ``work`` in its own database transaction, retrying conflicts.

        Each attempt gets a fresh session so that the retry re-reads the
        current status from the database.
        """
        attempts = self._options.max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            session = self._session_factory()
            try:
                with session.begin():
                    uow = _UnitOfWork(
                        session=session,
                        audit=AuditLog(
                            session,
                            self._clock,
                            max_append_attempts=self._options.audit_append_attempts,
                        ),
                        sequences=SequenceService(session),
                    )
                    result = work(uow)
                return result
            except (ConcurrencyConflictError, StaleDataError) as exc:
                logger.warning(
                    "ledger_conflict_retry",
                    extra={
                        "operation": operation,
                        "transaction_id": str(transaction_id) if transaction_id else None,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error_type": type(exc).__name__,
                    },
                )
            except DBAPIError as exc:
                logger.error(
                    "ledger_persistence_failed",
                    extra={"operation": operation, "error_type": type(exc).__name__},
                )
                raise PersistenceError(operation, str(exc)) from exc
            finally:
                session.close()

        raise ConcurrencyConflictError(
            resource=f"transaction:{transaction_id}" if transaction_id else operation,
            attempts=attempts,
        )

    def _load(self, session: Session, transaction_id: UUID | str) -> PosTransaction:
        tx_uuid = _as_uuid(transaction_id)
        tx = session.get(PosTransaction, tx_uuid) if tx_uuid is not None else None
        if tx is None:
            raise TransactionNotFoundError(str(transaction_id))
        return tx

    def _apply(
        self,
        uow: _UnitOfWork,
        tx: PosTransaction,
        operation: LedgerOperation,
        actor_id: str,
        payload: dict[str, Any],
        mutate: Callable[[PosTransaction], None] | None = None,
    ) -> None:
        """Validate, mutate, flush (version check), then append the audit entry."""
        current = TransactionStatus(tx.status)
        target = resolve_transition(tx.id, current, operation)

        if mutate is not None:
            mutate(tx)
        tx.status = target.value
        tx.updated_at = self._clock.now()
        uow.session.flush()

        uow.audit.append(
            actor_id,
            audit_action_for(operation),
            payload,
            transaction_id=tx.id,
        )
        logger.info(
            "ledger_transition",
            extra={
                "operation": operation.value,
                "transaction_id": str(tx.id),
                "from_status": current.value,
                "to_status": target.value,
            },
        )

    # =========================================================================
    # Creation and pricing
    # =========================================================================

    def create_transaction(
        self,
        price_cents: int,
        currency: str | None = None,
        *,
        actor_id: str,
    ) -> TransactionSnapshot:
        """Create a sale in status ``created``; emits CREATE_TX."""
        _require_actor(actor_id, LedgerOperation.CREATE)
        _validate_price(None, price_cents)
        currency = _validate_currency(currency or self._options.default_currency)

        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            now = self._clock.now()
            tx = PosTransaction(
                status=TransactionStatus.CREATED.value,
                price_cents=price_cents,
                currency=currency,
                created_by_id=actor_id,
                created_at=now,
                updated_at=now,
                fiscal_retry_pending=False,
            )
            uow.session.add(tx)
            uow.session.flush()
            uow.audit.append(
                actor_id,
                audit_action_for(LedgerOperation.CREATE),
                {
                    "price_cents": price_cents,
                    "currency": currency,
                    "status": TransactionStatus.CREATED.value,
                },
                transaction_id=tx.id,
            )
            logger.info(
                "ledger_transaction_created",
                extra={
                    "transaction_id": str(tx.id),
                    "price_cents": price_cents,
                    "currency": currency,
                },
            )
            return TransactionSnapshot.from_model(tx)

        with LogContext.bind(actor_id=actor_id):
            return self._run(LedgerOperation.CREATE.value, None, work)

    def update_price(
        self,
        transaction_id: UUID | str,
        new_price_cents: int,
        *,
        actor_id: str,
    ) -> TransactionSnapshot:
        """Change the price while the sale is still ``created``."""
        _require_actor(actor_id, LedgerOperation.UPDATE_PRICE)

        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            resolve_transition(tx.id, TransactionStatus(tx.status), LedgerOperation.UPDATE_PRICE)
            _validate_price(str(tx.id), new_price_cents)
            old_price = tx.price_cents

            def mutate(t: PosTransaction) -> None:
                t.price_cents = new_price_cents

            self._apply(
                uow,
                tx,
                LedgerOperation.UPDATE_PRICE,
                actor_id,
                {"old_price_cents": old_price, "new_price_cents": new_price_cents},
                mutate,
            )
            return TransactionSnapshot.from_model(tx)

        return self._bound_run(LedgerOperation.UPDATE_PRICE, transaction_id, actor_id, work)

    # =========================================================================
    # Payment
    # =========================================================================

    def request_payment(
        self,
        transaction_id: UUID | str,
        provider_tx_id: str,
        *,
        actor_id: str,
        provider: str | None = None,
    ) -> TransactionSnapshot:
        """``created -> payment_pending``; emits PAYMENT_STATUS_UPDATE."""
        _require_actor(actor_id, LedgerOperation.REQUEST_PAYMENT)
        if not provider_tx_id or not str(provider_tx_id).strip():
            raise ValueError("provider_tx_id must be a non-empty string")

        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            previous = tx.status

            def mutate(t: PosTransaction) -> None:
                t.payment_provider = provider
                t.payment_provider_tx_id = provider_tx_id

            self._apply(
                uow,
                tx,
                LedgerOperation.REQUEST_PAYMENT,
                actor_id,
                {
                    "previous_status": previous,
                    "status": TransactionStatus.PAYMENT_PENDING.value,
                    "provider": provider,
                    "provider_tx_id": provider_tx_id,
                },
                mutate,
            )
            return TransactionSnapshot.from_model(tx)

        return self._bound_run(LedgerOperation.REQUEST_PAYMENT, transaction_id, actor_id, work)

    def retry_payment(
        self,
        transaction_id: UUID | str,
        *,
        actor_id: str,
    ) -> TransactionSnapshot:
        """``payment_pending -> created``; clears the provider reference."""
        _require_actor(actor_id, LedgerOperation.RETRY_PAYMENT)

        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            previous = tx.status
            previous_provider_tx_id = tx.payment_provider_tx_id

            def mutate(t: PosTransaction) -> None:
                t.payment_provider_tx_id = None

            self._apply(
                uow,
                tx,
                LedgerOperation.RETRY_PAYMENT,
                actor_id,
                {
                    "previous_status": previous,
                    "status": TransactionStatus.CREATED.value,
                    "previous_provider_tx_id": previous_provider_tx_id,
                },
                mutate,
            )
            return TransactionSnapshot.from_model(tx)

        return self._bound_run(LedgerOperation.RETRY_PAYMENT, transaction_id, actor_id, work)

    def confirm_paid(
        self,
        transaction_id: UUID | str,
        *,
        actor_id: str,
    ) -> TransactionSnapshot:
        """
        ``payment_pending -> paid``; emits PAYMENT_MARK_PAID.

        With a fiscalizer configured, fiscalization runs after the payment
        has committed.  Its failure is logged and flagged, never raised.
        """
        _require_actor(actor_id, LedgerOperation.CONFIRM_PAID)

        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            previous = tx.status
            approved_at = self._clock.now()

            def mutate(t: PosTransaction) -> None:
                t.payment_approved_at = approved_at

            self._apply(
                uow,
                tx,
                LedgerOperation.CONFIRM_PAID,
                actor_id,
                {
                    "previous_status": previous,
                    "status": TransactionStatus.PAID.value,
                    "provider": tx.payment_provider,
                    "provider_tx_id": tx.payment_provider_tx_id,
                    "approved_at": approved_at,
                },
                mutate,
            )
            return TransactionSnapshot.from_model(tx)

        snapshot = self._bound_run(LedgerOperation.CONFIRM_PAID, transaction_id, actor_id, work)

        if self._fiscalizer is None:
            return snapshot
        with LogContext.bind(actor_id=actor_id, transaction_id=str(snapshot.id)):
            return self._fiscalize(snapshot.id, actor_id, raise_on_failure=False)

    def sync_payment_status(
        self,
        transaction_id: UUID | str,
        provider: PaymentProvider,
        *,
        actor_id: str,
    ) -> TransactionSnapshot:
        """
        Reconcile with the payment provider.

        The provider's answer is untrusted: it is validated against
        ProviderStatus first.  ``paid`` confirms a pending payment,
        ``failed``/``cancelled`` cancel a pending sale.  Paid or terminal
        transactions are never moved by reconciliation.

        Raises:
            PaymentProviderError: Provider call failed or returned an
                unknown status.
        """
        snapshot = self.get_transaction(transaction_id)
        if snapshot.status is not TransactionStatus.PAYMENT_PENDING or not snapshot.payment_provider_tx_id:
            logger.info(
                "payment_sync_skipped",
                extra={"transaction_id": str(snapshot.id), "status": snapshot.status.value},
            )
            return snapshot

        provider_tx_id = snapshot.payment_provider_tx_id
        try:
            raw_status = provider.get_payment_status(provider_tx_id)
        except Exception as exc:
            raise PaymentProviderError(provider_tx_id, str(exc)) from exc

        try:
            provider_status = parse_provider_status(raw_status)
        except ValueError as exc:
            logger.warning(
                "payment_status_rejected",
                extra={"provider_tx_id": provider_tx_id, "raw_status": str(raw_status)},
            )
            raise PaymentProviderError(
                provider_tx_id, f"unknown provider status {raw_status!r}"
            ) from exc

        target = map_provider_status(provider_status)
        logger.info(
            "payment_status_synced",
            extra={
                "transaction_id": str(snapshot.id),
                "provider_status": provider_status.value,
                "mapped_status": target.value,
            },
        )

        if target is TransactionStatus.PAID:
            return self.confirm_paid(snapshot.id, actor_id=actor_id)
        if target is TransactionStatus.CANCELLED:
            return self.cancel(
                snapshot.id,
                actor_id=actor_id,
                reason=f"provider:{provider_status.value}",
            )
        return snapshot

    # =========================================================================
    # Cancellation, refund, storno
    # =========================================================================

    def cancel(
        self,
        transaction_id: UUID | str,
        *,
        actor_id: str,
        reason: str | None = None,
    ) -> TransactionSnapshot:
        """``created | payment_pending -> cancelled``.  Never from ``paid``."""
        _require_actor(actor_id, LedgerOperation.CANCEL)

        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            self._apply(
                uow,
                tx,
                LedgerOperation.CANCEL,
                actor_id,
                {"previous_status": tx.status, "reason": reason},
            )
            return TransactionSnapshot.from_model(tx)

        return self._bound_run(LedgerOperation.CANCEL, transaction_id, actor_id, work)

    def refund(
        self,
        transaction_id: UUID | str,
        amount_cents: int | None = None,
        *,
        actor_id: str,
        reason: str | None = None,
        provider: RefundingPaymentProvider | None = None,
    ) -> TransactionSnapshot:
        """
        ``paid -> refunded``; emits REFUND.

        ``amount_cents`` defaults to the full price and must lie in
        1..price_cents (exactly 0 for a zero-price sale).  The status is
        checked before the amount.

        With ``provider`` the money is returned through
        ``provider.refund_payment`` first, outside the database transaction;
        the ledger only records the refund once the provider accepted it.

        Raises:
            PaymentProviderError: The provider refused or failed the refund.
                Nothing is recorded.
        """
        _require_actor(actor_id, LedgerOperation.REFUND)

        if provider is not None:
            snapshot = self.get_transaction(transaction_id)
            resolve_transition(snapshot.id, snapshot.status, LedgerOperation.REFUND)
            amount = _refund_amount(str(snapshot.id), snapshot.price_cents, amount_cents)
            self._refund_at_provider(snapshot, provider, amount)

        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            previous = tx.status
            resolve_transition(tx.id, TransactionStatus(previous), LedgerOperation.REFUND)
            amount = _refund_amount(str(tx.id), tx.price_cents, amount_cents)

            def mutate(t: PosTransaction) -> None:
                t.refunded_cents = amount

            self._apply(
                uow,
                tx,
                LedgerOperation.REFUND,
                actor_id,
                {
                    "refund_amount_cents": amount,
                    "previous_status": previous,
                    "reason": reason,
                    "provider": tx.payment_provider,
                    "provider_tx_id": tx.payment_provider_tx_id,
                },
                mutate,
            )
            return TransactionSnapshot.from_model(tx)

        return self._bound_run(LedgerOperation.REFUND, transaction_id, actor_id, work)

    @staticmethod
    def _refund_at_provider(
        snapshot: TransactionSnapshot,
        provider: RefundingPaymentProvider,
        amount: int,
    ) -> None:
        provider_tx_id = snapshot.payment_provider_tx_id
        if not provider_tx_id:
            raise PaymentProviderError("", f"transaction {snapshot.id} has no provider reference")
        try:
            provider.refund_payment(provider_tx_id, amount)
        except Exception as exc:
            logger.error(
                "payment_refund_failed",
                extra={"transaction_id": str(snapshot.id), "provider_tx_id": provider_tx_id},
            )
            raise PaymentProviderError(provider_tx_id, f"refund failed: {exc}") from exc
        logger.info(
            "payment_refunded_at_provider",
            extra={
                "transaction_id": str(snapshot.id),
                "provider_tx_id": provider_tx_id,
                "amount_cents": amount,
            },
        )

    def storno(
        self,
        transaction_id: UUID | str,
        *,
        actor_id: str,
        reason: str | None = None,
    ) -> TransactionSnapshot:
        """``paid -> storno``: same-session reversal, distinct from a refund."""
        _require_actor(actor_id, LedgerOperation.STORNO)

        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            self._apply(
                uow,
                tx,
                LedgerOperation.STORNO,
                actor_id,
                {"previous_status": tx.status, "reason": reason},
            )
            return TransactionSnapshot.from_model(tx)

        return self._bound_run(LedgerOperation.STORNO, transaction_id, actor_id, work)

    # =========================================================================
    # Documents and contracts
    # =========================================================================

    def issue_receipt(self, transaction_id: UUID | str, *, actor_id: str) -> IssuedDocument:
        """Stamp the next receipt number of the current year (paid only)."""
        return self._issue_document(
            transaction_id,
            actor_id,
            LedgerOperation.ISSUE_RECEIPT,
            CounterScope.RECEIPT,
            self._options.receipt_prefix,
        )

    def issue_invoice(self, transaction_id: UUID | str, *, actor_id: str) -> IssuedDocument:
        """Stamp the next invoice number of the current year (paid only)."""
        return self._issue_document(
            transaction_id,
            actor_id,
            LedgerOperation.ISSUE_INVOICE,
            CounterScope.INVOICE,
            self._options.invoice_prefix,
        )

    def _issue_document(
        self,
        transaction_id: UUID | str,
        actor_id: str,
        operation: LedgerOperation,
        scope: CounterScope,
        prefix: str,
    ) -> IssuedDocument:
        _require_actor(actor_id, operation)
        number_attr = f"{scope.value}_number"
        no_attr = f"{scope.value}_no"

        def work(uow: _UnitOfWork) -> IssuedDocument:
            tx = self._load(uow.session, transaction_id)

            existing = getattr(tx, number_attr)
            if existing is not None:
                document_no = getattr(tx, no_attr)
                logger.info(
                    "document_already_issued",
                    extra={"transaction_id": str(tx.id), "kind": scope.value, "document_no": document_no},
                )
                return IssuedDocument(
                    transaction_id=tx.id,
                    kind=scope.value,
                    number=existing,
                    document_no=document_no,
                    period=_period_of(document_no),
                    newly_issued=False,
                )

            resolve_transition(tx.id, TransactionStatus(tx.status), operation)
            period = self._clock.current_year()
            number = uow.sequences.next(scope, period)
            document_no = format_document_number(
                prefix, period, number, self._options.document_number_width
            )

            def mutate(t: PosTransaction) -> None:
                setattr(t, number_attr, number)
                setattr(t, no_attr, document_no)

            self._apply(
                uow,
                tx,
                operation,
                actor_id,
                {"number": number, "document_no": document_no, "period": period},
                mutate,
            )
            return IssuedDocument(
                transaction_id=tx.id,
                kind=scope.value,
                number=number,
                document_no=document_no,
                period=period,
                newly_issued=True,
            )

        return self._bound_run(operation, transaction_id, actor_id, work)

    def sign_contract(
        self,
        transaction_id: UUID | str,
        contract_id: str,
        *,
        actor_id: str,
    ) -> TransactionSnapshot:
        """Record the signed contract of a paid sale.  Only once."""
        _require_actor(actor_id, LedgerOperation.SIGN_CONTRACT)
        if not contract_id or not str(contract_id).strip():
            raise ValueError("contract_id must be a non-empty string")

        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            if tx.contract_id is not None:
                raise InvalidTransitionError(
                    transaction_id=str(tx.id),
                    current_status=tx.status,
                    operation=LedgerOperation.SIGN_CONTRACT.value,
                    reason="contract already signed",
                )
            signed_at = self._clock.now()

            def mutate(t: PosTransaction) -> None:
                t.contract_id = contract_id
                t.contract_signed_at = signed_at

            self._apply(
                uow,
                tx,
                LedgerOperation.SIGN_CONTRACT,
                actor_id,
                {"contract_id": contract_id, "signed_at": signed_at},
                mutate,
            )
            return TransactionSnapshot.from_model(tx)

        return self._bound_run(LedgerOperation.SIGN_CONTRACT, transaction_id, actor_id, work)

    # =========================================================================
    # Fiscalization (TSE)
    # =========================================================================

    def start_fiscalization(
        self,
        transaction_id: UUID | str,
        *,
        actor_id: str,
    ) -> TransactionSnapshot:
        """
        Open the TSE transaction (created, payment_pending or paid; once).

        Raises:
            FiscalizationError: No fiscalizer configured, or the TSE failed.
        """
        _require_actor(actor_id, LedgerOperation.START_FISCALIZATION)
        fiscalizer = self._require_fiscalizer(transaction_id, "start")

        snapshot = self.get_transaction(transaction_id)
        self._check_not_started(snapshot)
        resolve_transition(snapshot.id, snapshot.status, LedgerOperation.START_FISCALIZATION)

        started = self._call_fiscalizer(
            snapshot, "start", lambda: fiscalizer.start(self._fiscal_context(snapshot, actor_id))
        )
        return self._record_start(snapshot.id, started, actor_id, LedgerOperation.START_FISCALIZATION)

    def retry_fiscalization(
        self,
        transaction_id: UUID | str,
        *,
        actor_id: str,
    ) -> TransactionSnapshot:
        """
        Re-run fiscalization of a paid, refunded or storno'd sale.

        Raises:
            InvalidTransitionError: Wrong status or already fiscalized.
            FiscalizationError: The TSE failed again (the flag stays set).
        """
        _require_actor(actor_id, LedgerOperation.FINISH_FISCALIZATION)
        self._require_fiscalizer(transaction_id, "finish")

        snapshot = self.get_transaction(transaction_id)
        resolve_transition(snapshot.id, snapshot.status, LedgerOperation.FINISH_FISCALIZATION)
        if snapshot.fiscalized:
            raise InvalidTransitionError(
                transaction_id=str(snapshot.id),
                current_status=snapshot.status.value,
                operation=LedgerOperation.FINISH_FISCALIZATION.value,
                reason="already fiscalized",
            )
        with LogContext.bind(actor_id=actor_id, transaction_id=str(snapshot.id)):
            return self._fiscalize(snapshot.id, actor_id, raise_on_failure=True)

    def _fiscalize(
        self,
        transaction_id: UUID,
        actor_id: str,
        raise_on_failure: bool,
    ) -> TransactionSnapshot:
        """
        Start (if needed) and finish; flag the transaction on failure.

        Runs after the payment has committed, so any kernel error raised
        here is a fiscal failure of a sale that stays paid, never a payment
        failure.
        """
        fiscalizer = self._fiscalizer
        snapshot = self.get_transaction(transaction_id)
        stage = "start"
        try:
            if snapshot.tse_started_at is None:
                started = self._call_fiscalizer(
                    snapshot,
                    "start",
                    lambda: fiscalizer.start(self._fiscal_context(snapshot, actor_id)),
                )
                snapshot = self._start_or_adopt(snapshot.id, started, actor_id)
            if snapshot.fiscalized:
                return snapshot
            stage = "finish"
            signature = self._call_fiscalizer(
                snapshot,
                "finish",
                lambda: fiscalizer.finish(self._fiscal_context(snapshot, actor_id)),
            )
            return self._record_finish(snapshot.id, signature, actor_id)
        except PosKernelError as exc:
            if isinstance(exc, FiscalizationError):
                error = exc
            else:
                error = FiscalizationError(str(transaction_id), stage, f"{type(exc).__name__}: {exc}")
            logger.error(
                "fiscalization_failed",
                extra={
                    "transaction_id": str(transaction_id),
                    "stage": error.stage,
                    "detail": error.detail,
                },
            )
            try:
                flagged = self._flag_fiscal_retry(transaction_id, error)
            except PosKernelError:
                logger.exception(
                    "fiscal_retry_flag_failed",
                    extra={"transaction_id": str(transaction_id)},
                )
                flagged = snapshot
            if not raise_on_failure:
                return flagged
            if error is exc:
                raise
            raise error from exc

    def _start_or_adopt(
        self,
        transaction_id: UUID,
        started: FiscalStart,
        actor_id: str,
    ) -> TransactionSnapshot:
        """Record our TSE start, or continue with one another terminal recorded first."""
        try:
            return self._record_start(
                transaction_id, started, actor_id, LedgerOperation.FINISH_FISCALIZATION
            )
        except InvalidTransitionError:
            current = self.get_transaction(transaction_id)
            if current.tse_started_at is None:
                raise
            logger.warning(
                "fiscalization_start_superseded",
                extra={
                    "transaction_id": str(transaction_id),
                    "tse_tx_id": current.tse_tx_id,
                    "discarded_tse_tx_id": started.tse_tx_id,
                },
            )
            return current

    def _record_start(
        self,
        transaction_id: UUID,
        started: FiscalStart,
        actor_id: str,
        guard: LedgerOperation,
    ) -> TransactionSnapshot:
        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            self._check_not_started(TransactionSnapshot.from_model(tx))
            resolve_transition(tx.id, TransactionStatus(tx.status), guard)
            now = self._clock.now()
            tx.tse_provider = started.provider
            tx.tse_tx_id = started.tse_tx_id
            tx.tse_serial = started.serial
            tx.tse_started_at = started.started_at
            tx.updated_at = now
            uow.session.flush()
            uow.audit.append(
                actor_id,
                audit_action_for(LedgerOperation.START_FISCALIZATION),
                {
                    "provider": started.provider,
                    "tse_tx_id": started.tse_tx_id,
                    "serial": started.serial,
                    "started_at": started.started_at,
                },
                transaction_id=tx.id,
            )
            logger.info(
                "fiscalization_started",
                extra={"transaction_id": str(tx.id), "tse_tx_id": started.tse_tx_id},
            )
            return TransactionSnapshot.from_model(tx)

        return self._bound_run(LedgerOperation.START_FISCALIZATION, transaction_id, actor_id, work)

    def _record_finish(
        self,
        transaction_id: UUID,
        signature: FiscalSignature,
        actor_id: str,
    ) -> TransactionSnapshot:
        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            previous = tx.status

            def mutate(t: PosTransaction) -> None:
                t.tse_signature = signature.signature
                t.tse_signature_counter = signature.signature_counter
                t.tse_log_time = signature.log_time
                t.tse_finished_at = signature.finished_at
                t.fiscal_retry_pending = False
                t.fiscal_error = None

            self._apply(
                uow,
                tx,
                LedgerOperation.FINISH_FISCALIZATION,
                actor_id,
                {
                    "status": previous,
                    "tse_tx_id": tx.tse_tx_id,
                    "serial": tx.tse_serial,
                    "signature_counter": signature.signature_counter,
                    "log_time": signature.log_time,
                    "finished_at": signature.finished_at,
                },
                mutate,
            )
            return TransactionSnapshot.from_model(tx)

        return self._bound_run(LedgerOperation.FINISH_FISCALIZATION, transaction_id, actor_id, work)

    def _flag_fiscal_retry(self, transaction_id: UUID, error: FiscalizationError) -> TransactionSnapshot:
        def work(uow: _UnitOfWork) -> TransactionSnapshot:
            tx = self._load(uow.session, transaction_id)
            tx.fiscal_retry_pending = True
            tx.fiscal_error = f"{error.stage}: {error.detail}"[:_FISCAL_ERROR_MAX_LENGTH]
            tx.updated_at = self._clock.now()
            uow.session.flush()
            return TransactionSnapshot.from_model(tx)

        return self._run("flag_fiscal_retry", transaction_id, work)

    def _require_fiscalizer(self, transaction_id, stage: str) -> Fiscalizer:
        if self._fiscalizer is None:
            raise FiscalizationError(str(transaction_id), stage, "no fiscalizer configured")
        return self._fiscalizer

    @staticmethod
    def _check_not_started(snapshot: TransactionSnapshot) -> None:
        if snapshot.tse_started_at is not None:
            raise InvalidTransitionError(
                transaction_id=str(snapshot.id),
                current_status=snapshot.status.value,
                operation=LedgerOperation.START_FISCALIZATION.value,
                reason="fiscalization already started",
            )

    @staticmethod
    def _fiscal_context(snapshot: TransactionSnapshot, actor_id: str) -> FiscalContext:
        return FiscalContext(
            transaction_id=snapshot.id,
            actor_id=actor_id,
            price_cents=snapshot.price_cents,
            currency=snapshot.currency,
            status=snapshot.status.value,
            tse_tx_id=snapshot.tse_tx_id,
        )

    @staticmethod
    def _call_fiscalizer(snapshot: TransactionSnapshot, stage: str, call: Callable[[], T]) -> T:
        try:
            return call()
        except FiscalizationError:
            raise
        except Exception as exc:
            raise FiscalizationError(str(snapshot.id), stage, f"{type(exc).__name__}: {exc}") from exc

    # =========================================================================
    # Reads
    # =========================================================================

    def get_transaction(self, transaction_id: UUID | str) -> TransactionSnapshot:
        """
        Committed state of one transaction.

        Raises:
            TransactionNotFoundError: Unknown id.
        """
        session = self._session_factory()
        try:
            return TransactionSnapshot.from_model(self._load(session, transaction_id))
        finally:
            session.close()

    def _bound_run(
        self,
        operation: LedgerOperation,
        transaction_id: UUID | str,
        actor_id: str,
        work: Callable[[_UnitOfWork], T],
    ) -> T:
        with LogContext.bind(actor_id=actor_id, transaction_id=str(transaction_id)):
            return self._run(operation.value, transaction_id, work)


# =============================================================================
# Helpers
# =============================================================================


def format_document_number(prefix: str, period: int, number: int, width: int = 6) -> str:
    """``R-2024-000001`` style document number."""
    return f"{prefix}-{period}-{number:0{width}d}"


def _period_of(document_no: str) -> int:
    return int(document_no.rsplit("-", 2)[1])


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_price(transaction_id: str | None, price_cents: Any) -> None:
    if not _is_int(price_cents) or price_cents < 0:
        raise InvalidAmountError(
            transaction_id,
            price_cents,
            "price must be a non-negative integer number of cents",
        )


def _refund_amount(transaction_id: str, price_cents: int, requested: Any) -> int:
    """Requested refund, defaulting to the full price; 1..price (0 only on a free sale)."""
    amount = price_cents if requested is None else requested
    lower = 1 if price_cents > 0 else 0
    if not _is_int(amount) or amount < lower or amount > price_cents:
        raise InvalidAmountError(
            transaction_id,
            amount,
            f"refund must be between {lower} and {price_cents} cents",
        )
    return amount


def _validate_currency(currency: str) -> str:
    code = str(currency).strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid ISO 4217 currency code: {currency!r}")
    return code


def _require_actor(actor_id: str | None, operation: LedgerOperation) -> None:
    if actor_id is None or not str(actor_id).strip():
        raise MissingActorError(audit_action_for(operation).value)


def _as_uuid(value: UUID | str) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None
