"""Database layer - engine, base classes, types, and immutability."""

from estimate_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from estimate_kernel.db.engine import create_tables, get_engine, get_session
from estimate_kernel.db.types import RATE_SCALE, STORAGE_SCALE, ExactDecimal

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "ExactDecimal",
    "RATE_SCALE",
    "STORAGE_SCALE",
]
