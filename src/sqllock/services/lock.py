from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqllock.lib.backend import LockAcquisitionError, LockBackend
from sqllock.models.lock import LockLevel


def _validate_level(level) -> LockLevel:
    if isinstance(level, bool) or not isinstance(level, int):
        raise TypeError(f"lock level must be LockLevel.READ or LockLevel.WRITE, got {level!r}")
    try:
        return LockLevel(level)
    except ValueError:
        raise ValueError(f"unknown lock level: {level!r}") from None


def _validate_expiration(expiration) -> int:
    if isinstance(expiration, bool) or not isinstance(expiration, int):
        raise TypeError(f"expiration must be an int number of seconds, got {expiration!r}")
    if expiration < 0:
        raise ValueError(f"expiration must not be negative, got {expiration}")
    return expiration


class Lock:
    """Handle on one resource's lock.

    Usage:
        lock = Lock("user:1:balance", backend)
        if lock.acquire(LockLevel.WRITE, blocking=False):
            try:
                ...
            finally:
                lock.release()

    or as a context manager, which blocks until the lock is granted:
        with Lock("user:1:balance", backend, level=LockLevel.READ):
            ...
    """

    def __init__(self, resource_id: str, backend: LockBackend, level: LockLevel = LockLevel.WRITE, expiration: int = 0):
        if not isinstance(resource_id, str):
            raise TypeError(f"resource id must be a str, got {type(resource_id).__name__}")
        if not resource_id:
            raise ValueError("resource id must not be empty")
        if not isinstance(backend, LockBackend):
            raise TypeError(f"backend must be a LockBackend, got {type(backend).__name__}")
        self.id = resource_id
        self.backend = backend
        self.level = _validate_level(level)
        self.expiration = _validate_expiration(expiration)
        self.held_levels: set[LockLevel] = set()

    def acquire(self, level: LockLevel = LockLevel.WRITE, blocking: bool = True, expiration: int = 0) -> bool:
        """Acquire the lock.

        Args:
            level: LockLevel.READ (shared) or LockLevel.WRITE (exclusive)
            blocking: If True, wait until the lock is granted
            expiration: Seconds after which an unreleased lock may be reclaimed (0 = never)

        The backend keeps one row id per resource, so a handle that already
        holds the lock must release it before acquiring again; otherwise the
        earlier row could never be released.

        Returns:
            True if the lock was granted

        Raises:
            LockAcquisitionError: If this handle already holds the lock
        """
        level = _validate_level(level)
        if not isinstance(blocking, bool):
            raise TypeError(f"blocking must be a bool, got {blocking!r}")
        expiration = _validate_expiration(expiration)
        if self.held_levels:
            held = ",".join(held_level.name for held_level in sorted(self.held_levels))
            raise LockAcquisitionError(f"Lock '{self.id}' is already held ({held}); release it first")

        acquired = self.backend.acquire(self.id, level, blocking, expiration)
        if acquired:
            self.held_levels.add(level)
        return acquired

    def release(self) -> bool:
        """Release the lock. Returns False if nothing was released.

        On a datastore error the backend keeps its handle, and held_levels is
        left as it was, so the release can be retried.
        """
        released = self.backend.release(self.id)
        if released:
            self.held_levels.clear()
        return released

    def lock_exists(self, level: LockLevel = LockLevel.READ) -> bool:
        """Check whether anyone holds an unexpired lock of at least `level`."""
        return self.backend.exists(self.id, _validate_level(level))

    def __enter__(self) -> Lock:
        if not self.acquire(self.level, blocking=True, expiration=self.expiration):
            raise LockAcquisitionError(f"Lock '{self.id}' could not be acquired")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        held = ",".join(level.name for level in sorted(self.held_levels)) or "-"
        return f"<Lock {self.id!r} held={held}>"


@contextmanager
def acquire_lock(
    backend: LockBackend,
    resource_id: str,
    level: LockLevel = LockLevel.WRITE,
    blocking: bool = True,
    expiration: int = 0,
) -> Generator[Lock, None, None]:
    """Convenience context manager for holding a lock.

    Raises:
        LockAcquisitionError: If a non-blocking acquisition fails

    Example:
        with acquire_lock(backend, "report:daily", blocking=False):
            # Build the report
            pass
    """
    lock = Lock(resource_id, backend)
    if not lock.acquire(level, blocking=blocking, expiration=expiration):
        raise LockAcquisitionError(f"Lock '{resource_id}' is held by another process")
    try:
        yield lock
    finally:
        lock.release()
