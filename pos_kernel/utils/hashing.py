"""
Deterministic hashing for the audit chain.

All hashing in the POS kernel must be deterministic and reproducible by an
independent verifier in any language.  The byte layout is therefore fixed:

    canonical = UTF-8 JSON of
        {"action", "actor_id", "created_at", "payload", "transaction_id"}
        with sorted keys, no whitespace, NaN/Infinity rejected
    hash      = sha256(previous_hash_ascii || canonical), lower-case hex

Timestamps are rendered as UTC ``YYYY-MM-DDTHH:MM:SS.ffffffZ`` so that a value
read back from a database that drops tzinfo (SQLite) hashes the same as the
value that was written.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Protocol
from uuid import UUID

from pos_kernel.exceptions import EncodingError

# Well-known previous_hash of the first entry in the chain
GENESIS_HASH = "0" * 64

HASH_LENGTH = 64


def canonical_timestamp(value: datetime) -> str:
    """Render a timestamp in the canonical UTC form.  Naive values are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        # Remove trailing zeros for consistency
        return str(obj.normalize())
    if isinstance(obj, datetime):
        return canonical_timestamp(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any, field: str = "payload") -> str:
    """
    Convert data to canonical JSON string.

    Produces a deterministic JSON representation:
    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of special types (Decimal, datetime, UUID, Enum)

    Raises:
        EncodingError: If a value is not serializable, a reference is
            circular, or a float is NaN/Infinity.
    """
    try:
        return json.dumps(
            data,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
            default=_json_serializer,
        )
    except (TypeError, ValueError) as exc:
        raise EncodingError(field, str(exc)) from exc


def normalize_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    """
    Reduce a payload to plain JSON types, exactly as it will be stored.

    The audit log stores the normalized form and hashes the normalized form,
    so a JSON round trip through the database cannot change the hash.
    """
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise EncodingError("payload", f"expected a mapping, got {type(payload).__name__}")
    return json.loads(canonicalize_json(payload))


def canonicalize(
    actor_id: str,
    action: str,
    transaction_id: str | None,
    payload: dict[str, Any],
    created_at: datetime,
) -> bytes:
    """Canonical bytes of an audit entry's logical fields."""
    document = {
        "action": action.value if isinstance(action, Enum) else action,
        "actor_id": actor_id,
        "created_at": canonical_timestamp(created_at),
        "payload": payload,
        "transaction_id": str(transaction_id) if transaction_id is not None else None,
    }
    return canonicalize_json(document, field="entry").encode("utf-8")


def compute_hash(previous_hash: str, canonical_bytes: bytes) -> str:
    """sha256(previous_hash || canonical_bytes) as 64 lower-case hex chars."""
    digest = hashlib.sha256()
    digest.update(previous_hash.encode("ascii"))
    digest.update(canonical_bytes)
    return digest.hexdigest()


def hash_entry(
    previous_hash: str,
    actor_id: str,
    action: str,
    transaction_id: str | None,
    payload: dict[str, Any],
    created_at: datetime,
) -> str:
    """Compute the chained hash of one audit entry."""
    return compute_hash(
        previous_hash,
        canonicalize(actor_id, action, transaction_id, payload, created_at),
    )


class ChainLink(Protocol):
    """Anything carrying the fields that participate in the chain."""

    actor_id: str
    action: Any
    transaction_id: Any
    payload: dict[str, Any]
    created_at: datetime
    previous_hash: str
    hash: str


@dataclass(frozen=True)
class VerificationResult:
    """
    Outcome of a chain walk.

    ``broken_at_index`` is the 0-based position (within the walked sequence)
    of the first entry that failed; ``None`` when the chain is intact.
    """

    ok: bool
    checked: int
    broken_at_index: int | None = None
    reason: str | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    last_hash: str | None = None

    def __bool__(self) -> bool:
        return self.ok


def verify_chain(
    entries: Iterable[ChainLink],
    anchor_hash: str = GENESIS_HASH,
) -> VerificationResult:
    """
    Recompute every hash and check every link, failing fast.

    Args:
        entries: Entries in append order.
        anchor_hash: Hash the first entry must point at.  GENESIS_HASH for a
            full walk, or a checkpoint hash for a suffix walk.
    """
    expected_previous = anchor_hash
    checked = 0
    for index, entry in enumerate(entries):
        if entry.previous_hash != expected_previous:
            return VerificationResult(
                ok=False,
                checked=checked,
                broken_at_index=index,
                reason="previous_hash does not match predecessor",
                expected_hash=expected_previous,
                actual_hash=entry.previous_hash,
            )

        try:
            recomputed = hash_entry(
                entry.previous_hash,
                entry.actor_id,
                entry.action,
                entry.transaction_id,
                entry.payload or {},
                entry.created_at,
            )
        except EncodingError as exc:
            return VerificationResult(
                ok=False,
                checked=checked,
                broken_at_index=index,
                reason=f"entry not canonicalizable: {exc.reason}",
                expected_hash=None,
                actual_hash=entry.hash,
            )

        if recomputed != entry.hash:
            return VerificationResult(
                ok=False,
                checked=checked,
                broken_at_index=index,
                reason="stored hash does not match recomputed hash",
                expected_hash=recomputed,
                actual_hash=entry.hash,
            )

        expected_previous = entry.hash
        checked += 1

    return VerificationResult(ok=True, checked=checked, last_hash=expected_previous)
