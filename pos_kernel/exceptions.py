"""
Typed Exception Hierarchy for the POS Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Point-of-sale bookkeeping is subject to fiscal audit. Callers (request
handlers, terminal agents, operator tooling) must be able to react to a
failure by its TYPE, never by parsing a message string:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - WRONG way to handle errors:
    try:
        ledger.refund(tx_id, actor_id=admin)
    except Exception as e:
        if "not allowed" in str(e):  # FRAGILE
            ...

Example - RIGHT way:
    try:
        ledger.refund(tx_id, actor_id=admin)
    except InvalidTransitionError as e:
        return {"error": e.code, "current": e.current_status, "requested": e.operation}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    PosKernelError (base)
    |
    +-- LedgerError
    |   +-- InvalidTransitionError
    |   +-- TransactionNotFoundError
    |   +-- InvalidAmountError
    |
    +-- AuditError
    |   +-- ChainIntegrityError
    |   +-- MissingActorError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ConcurrencyError
    |   +-- ConcurrencyConflictError
    |
    +-- PersistenceError
    |
    +-- EncodingError
    |
    +-- CollaboratorError
        +-- FiscalizationError
        +-- PaymentProviderError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Ledger          | INVALID_TRANSITION          | Operation illegal from current status
                | TRANSACTION_NOT_FOUND       | Transaction id does not exist
                | INVALID_AMOUNT              | Negative price, refund above price
----------------|-----------------------------|-----------------------------------------
Audit           | CHAIN_INTEGRITY             | Hash mismatch or broken link
                | MISSING_ACTOR               | Audit entry without an actor
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Update/delete of an append-only record
----------------|-----------------------------|-----------------------------------------
Concurrency     | CONCURRENCY_CONFLICT        | Chain tail or status changed under us
----------------|-----------------------------|-----------------------------------------
Persistence     | PERSISTENCE_ERROR           | Storage I/O failure or timeout
----------------|-----------------------------|-----------------------------------------
Encoding        | ENCODING_ERROR              | Payload cannot be canonicalized
----------------|-----------------------------|-----------------------------------------
Collaborators   | FISCALIZATION_FAILED        | TSE start/finish failed
                | PAYMENT_PROVIDER_ERROR      | Provider returned an untrusted status

===============================================================================
HANDLING PATTERNS
===============================================================================

1. REJECTIONS ARE NOT RETRIED:

    except InvalidTransitionError as e:
        respond(409, code=e.code, current=e.current_status)

2. CONFLICTS ARE RETRIED BY THE LEDGER, THEN SURFACED:

    except ConcurrencyConflictError as e:
        respond(503, code=e.code, attempts=e.attempts)

3. INTEGRITY FAILURES ARE INCIDENTS, NOT USER ERRORS:

    except (ChainIntegrityError, ImmutabilityViolationError) as e:
        page_compliance_officer(e)
        halt_processing()
"""


class PosKernelError(Exception):
    """
    Base exception for all POS kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "POS_KERNEL_ERROR"


# Ledger-related exceptions


class LedgerError(PosKernelError):
    """Base exception for transaction ledger errors."""

    code: str = "LEDGER_ERROR"


class InvalidTransitionError(LedgerError):
    """
    Requested operation is illegal from the transaction's current status.

    Recovered locally by rejecting the request; never retried automatically.
    """

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        transaction_id: str,
        current_status: str,
        operation: str,
        reason: str | None = None,
    ):
        self.transaction_id = transaction_id
        self.current_status = current_status
        self.operation = operation
        self.reason = reason
        message = (
            f"Cannot {operation} transaction {transaction_id}: "
            f"current status is {current_status}"
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class TransactionNotFoundError(LedgerError):
    """Transaction with given ID was not found."""

    code: str = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class InvalidAmountError(LedgerError):
    """Amount is out of range for the requested operation."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, transaction_id: str | None, amount_cents: int, reason: str):
        self.transaction_id = transaction_id
        self.amount_cents = amount_cents
        self.reason = reason
        super().__init__(f"Invalid amount {amount_cents} for transaction {transaction_id}: {reason}")


# Audit-related exceptions


class AuditError(PosKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class ChainIntegrityError(AuditError):
    """
    Audit hash chain verification failed.

    Surfaced to operators as a compliance incident; never auto-repaired.
    """

    code: str = "CHAIN_INTEGRITY"

    def __init__(
        self,
        broken_at_index: int,
        entry_id: str | None,
        expected_hash: str | None,
        actual_hash: str | None,
        reason: str,
    ):
        self.broken_at_index = broken_at_index
        self.entry_id = entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        self.reason = reason
        super().__init__(
            f"Audit chain broken at index {broken_at_index} (entry {entry_id}): "
            f"{reason}; expected {expected_hash}, found {actual_hash}"
        )


class MissingActorError(AuditError):
    """An audit entry must name the acting administrator."""

    code: str = "MISSING_ACTOR"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Audit entry for {action} has no actor")


# Immutability-related exceptions


class ImmutabilityError(PosKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record.

    Always a programmer error: something bypassed the append-only contract.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Concurrency-related exceptions


class ConcurrencyError(PosKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrencyConflictError(ConcurrencyError):
    """
    An optimistic-write precondition failed.

    Raised after the bounded retry budget is exhausted, or by a single
    compare-and-swap attempt when the caller handles the retry itself.
    """

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, resource: str, attempts: int):
        self.resource = resource
        self.attempts = attempts
        super().__init__(
            f"Concurrent modification of {resource} after {attempts} attempt(s)"
        )


# Persistence


class PersistenceError(PosKernelError):
    """
    Storage-layer I/O failure.

    The operation must be treated as not completed: nothing it wrote is
    visible, no number it allocated was issued.
    """

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Persistence failure during {operation}: {detail}")


# Encoding


class EncodingError(PosKernelError):
    """
    Audit payload could not be canonicalized.

    Never expected for payloads that passed upstream validation.
    """

    code: str = "ENCODING_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Cannot canonicalize {field}: {reason}")


# External collaborators


class CollaboratorError(PosKernelError):
    """Base exception for failures reported by external collaborators."""

    code: str = "COLLABORATOR_ERROR"


class FiscalizationError(CollaboratorError):
    """The fiscalization service (TSE) rejected or failed a call."""

    code: str = "FISCALIZATION_FAILED"

    def __init__(self, transaction_id: str, stage: str, detail: str):
        self.transaction_id = transaction_id
        self.stage = stage
        self.detail = detail
        super().__init__(f"TSE {stage} failed for transaction {transaction_id}: {detail}")


class PaymentProviderError(CollaboratorError):
    """The payment provider returned a signal the kernel cannot trust."""

    code: str = "PAYMENT_PROVIDER_ERROR"

    def __init__(self, provider_tx_id: str, detail: str):
        self.provider_tx_id = provider_tx_id
        self.detail = detail
        super().__init__(f"Payment provider error for {provider_tx_id}: {detail}")
