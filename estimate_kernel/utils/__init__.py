"""Utility modules for the estimate kernel."""

from estimate_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_event,
    hash_formula_body,
    hash_payload,
    hash_snapshot,
)

__all__ = [
    "hash_payload",
    "hash_audit_event",
    "hash_formula_body",
    "hash_snapshot",
    "canonicalize_json",
]
