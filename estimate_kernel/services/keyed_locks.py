"""
KeyedLockRegistry -- per-key in-process mutual exclusion.

Responsibility:
    Serializes work on the same formula key or the same line item inside
    one process, while work on different keys proceeds in parallel.  The
    database row lock (SELECT ... FOR UPDATE, or the SQLite write lock) is
    the cross-process guarantee; this registry keeps same-process callers
    from queueing on the database.

Invariants enforced:
    - Never a global lock: two different keys never block each other.
    - Lock entries are reference counted and removed when unused, so the
      registry does not grow with the number of keys ever seen.
    - Callers acquire the lock before their first statement in a fresh
      transaction and release it after commit.
"""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLockRegistry:
    """Registry of lazily created per-key locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


_default_registry = KeyedLockRegistry()


def default_lock_registry() -> KeyedLockRegistry:
    """The process-wide registry shared by orchestrators that are not given one."""
    return _default_registry


def formula_lock_key(organization_id: str, formula_key: str) -> tuple[str, str, str]:
    return ("formula", organization_id, formula_key)


def line_item_lock_key(line_item_id) -> tuple[str, str]:
    return ("line_item", str(line_item_id))
