"""Per-sheet named locks with ownership and expiry.

Locks are plain data kept in a table, not synchronisation primitives:
a client holds a lock until it releases it or the lock's TTL runs out.
Times are wall-clock seconds since the epoch.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from . import logger


class LockError(Exception):
    """Base class for lock table errors."""


class LockHeldError(LockError):
    """The lock is held, unexpired, by another owner."""

    def __init__(self, message: str = "lock held by another client") -> None:
        super().__init__(message)


class NotOwnerError(LockError):
    """The caller does not own the lock it tried to release."""

    def __init__(self, message: str = "not lock owner") -> None:
        super().__init__(message)


class LockNotFoundError(LockError):
    """There is no lock under the given key."""

    def __init__(self, message: str = "lock not found") -> None:
        super().__init__(message)


@dataclass
class Lock:
    """A lock on `key` in sheet `sheet_id`, held by `owner`."""

    key: str
    owner: str
    sheet_id: str
    acquired_at: float
    expires_at: float

    def is_expired(self) -> bool:
        """True once the current time is past `expires_at`."""
        return time.time() > self.expires_at


def _composite_key(sheet_id: str, key: str) -> str:
    return f"{sheet_id}:{key}"


class LockManager:
    """Table of locks, keyed by sheet and lock name."""

    def __init__(self) -> None:
        self._locks: dict[str, Lock] = {}
        self._mutex = threading.Lock()
        logger.info("LockManager initialized")

    def try_acquire(self, sheet_id: str, key: str, owner: str, ttl: float) -> Lock:
        """Take the lock for `ttl` seconds without waiting.

        The current owner re-acquiring refreshes the expiry; an expired lock
        may be taken by anyone. Raises LockHeldError otherwise.
        """
        composite = _composite_key(sheet_id, key)
        now = time.time()
        with self._mutex:
            existing = self._locks.get(composite)
            if existing is not None and not existing.is_expired():
                if existing.owner != owner:
                    raise LockHeldError()
                existing.expires_at = now + ttl
                return existing
            lock = Lock(key=key, owner=owner, sheet_id=sheet_id, acquired_at=now, expires_at=now + ttl)
            self._locks[composite] = lock
            return lock

    def release(self, sheet_id: str, key: str, owner: str) -> None:
        """Remove the lock if `owner` holds it.

        Raises LockNotFoundError or NotOwnerError.
        """
        composite = _composite_key(sheet_id, key)
        with self._mutex:
            lock = self._locks.get(composite)
            if lock is None:
                raise LockNotFoundError()
            if lock.owner != owner:
                raise NotOwnerError()
            del self._locks[composite]

    def is_locked(self, sheet_id: str, key: str) -> Lock | None:
        """Return the unexpired lock on `key`, or None if it is free."""
        with self._mutex:
            lock = self._locks.get(_composite_key(sheet_id, key))
        if lock is None or lock.is_expired():
            return None
        return lock

    def _remove_where(self, predicate) -> int:
        with self._mutex:
            doomed = [name for name, lock in self._locks.items() if predicate(lock)]
            for name in doomed:
                del self._locks[name]
        return len(doomed)

    def release_all_by_owner(self, owner: str) -> int:
        """Drop every lock `owner` holds; return how many there were."""
        return self._remove_where(lambda lock: lock.owner == owner)

    def cleanup_expired(self) -> int:
        """Drop every expired lock; return how many were removed."""
        count = self._remove_where(Lock.is_expired)
        if count:
            logger.info(f"Cleaned up {count} expired locks")
        return count

    def count(self) -> int:
        """Number of locks in the table, expired ones included."""
        with self._mutex:
            return len(self._locks)

    def __len__(self) -> int:
        return self.count()

    def get_all_by_sheet(self, sheet_id: str) -> list[Lock]:
        """All unexpired locks of one sheet."""
        prefix = f"{sheet_id}:"
        with self._mutex:
            candidates = [lock for name, lock in self._locks.items() if name.startswith(prefix)]
        return [lock for lock in candidates if not lock.is_expired()]

    def set_lock(self, lock: Lock) -> None:
        """Store `lock` as given, replacing any lock under the same key."""
        with self._mutex:
            self._locks[_composite_key(lock.sheet_id, lock.key)] = lock