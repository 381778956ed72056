"""Interface shared by all lock backends."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from sqllock.models.lock import LockLevel


class LockAcquisitionError(Exception):
    """Raised when a lock cannot be acquired."""
    pass


class LockBackend(ABC):
    """Storage-independent contract for READ/WRITE resource locks.

    READ locks may be held by any number of callers at once; a WRITE lock
    excludes every other lock on the same resource. All operations report
    success as a bool; only argument errors raise.
    """

    @abstractmethod
    def acquire(self, resource_id: str, level: LockLevel, blocking: bool, expiration: int = 0) -> bool:
        """Acquire a lock on resource_id.

        Args:
            resource_id: Identifier of the resource to lock
            level: LockLevel.READ (shared) or LockLevel.WRITE (exclusive)
            blocking: If True, wait until the lock is granted
            expiration: Seconds after which the lock may be reclaimed (0 = never)

        Returns:
            True if the lock was granted, False otherwise
        """

    @abstractmethod
    def release(self, resource_id: str) -> bool:
        """Release the lock this backend instance acquired on resource_id."""

    @abstractmethod
    def exists(self, resource_id: str, level: LockLevel = LockLevel.READ) -> bool:
        """Check whether an unexpired lock of at least `level` is held on resource_id."""

    @abstractmethod
    def get_ghosts(self, resource_id: Optional[str] = None) -> list:
        """Return locks whose holders are gone (optionally for one resource)."""

    @abstractmethod
    def drop_ghosts(self, resource_id: Optional[str] = None) -> bool:
        """Delete ghost locks. Returns True if any were found."""
