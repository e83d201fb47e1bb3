"""Utility functions for the POS kernel."""

from pos_kernel.utils.hashing import (
    GENESIS_HASH,
    VerificationResult,
    canonicalize,
    compute_hash,
    hash_entry,
    verify_chain,
)

__all__ = [
    "GENESIS_HASH",
    "VerificationResult",
    "canonicalize",
    "compute_hash",
    "hash_entry",
    "verify_chain",
]
