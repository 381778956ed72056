"""Process-local lock backend for tests and single-process hosts."""
from __future__ import annotations

import itertools
import os
import threading
import time
from typing import Callable, Optional

from sqllock.lib.backend import LockBackend
from sqllock.lib.hashing import lock_key
from sqllock.lib.liveness import current_host
from sqllock.models.lock import LockLevel, LockRow


class MemoryLockTable:
    """Shared lock rows for every InMemoryLockBackend built on it."""

    def __init__(self):
        self.cond = threading.Condition()
        self.rows: dict[int, LockRow] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)


class InMemoryLockBackend(LockBackend):
    """Same contract as DatabaseLockBackend, with rows kept in memory.

    Only threads of one process can coordinate through it. Blocking
    acquisition waits on a condition variable instead of spinning.
    """

    def __init__(self, table: Optional[MemoryLockTable] = None, clock: Callable[[], float] = time.time):
        self.table = table or MemoryLockTable()
        self.clock = clock
        self.lock_ids: dict[str, int] = {}

    def _conflicts(self, key: str, level: LockLevel, now: float) -> bool:
        for row in self.table.rows.values():
            if row.lock_key != key or row.is_expired(now):
                continue
            if level == LockLevel.WRITE or row.level > level:
                return True
        return False

    def acquire(self, resource_id: str, level: LockLevel, blocking: bool, expiration: int = 0) -> bool:
        level = LockLevel(level)
        key = lock_key(resource_id)
        with self.table.cond:
            while True:
                now = self.clock()
                self._drop_expired(key, now)
                if not self._conflicts(key, level, now):
                    break
                if not blocking:
                    return False
                # Wake up periodically so expiring rows are noticed
                self.table.cond.wait(timeout=0.05)

            row = LockRow(
                id=self.table.next_id(),
                lock_key=key,
                original_key=resource_id[:255],
                level=int(level),
                pid=os.getpid(),
                cid=None,
                host=current_host(),
                expire=int(now + expiration) if expiration else 0,
            )
            self.table.rows[row.id] = row
            self.lock_ids[key] = row.id
            return True

    def release(self, resource_id: str) -> bool:
        row_id = self.lock_ids.pop(lock_key(resource_id), None)
        if row_id is None:
            return False
        with self.table.cond:
            self.table.rows.pop(row_id, None)
            self.table.cond.notify_all()
        return True

    def exists(self, resource_id: str, level: LockLevel = LockLevel.READ) -> bool:
        key = lock_key(resource_id)
        now = self.clock()
        with self.table.cond:
            return any(
                row.lock_key == key and row.level >= level and not row.is_expired(now)
                for row in self.table.rows.values()
            )

    def get_ghosts(self, resource_id: Optional[str] = None) -> list[LockRow]:
        # Holders share this process, so only the expiration time can orphan a row
        now = self.clock()
        key = lock_key(resource_id) if resource_id is not None else None
        with self.table.cond:
            return sorted(
                (row for row in self.table.rows.values()
                 if row.is_expired(now) and (key is None or row.lock_key == key)),
                key=lambda row: row.id,
            )

    def drop_ghosts(self, resource_id: Optional[str] = None) -> bool:
        ghosts = self.get_ghosts(resource_id)
        if not ghosts:
            return False
        with self.table.cond:
            for row in ghosts:
                self.table.rows.pop(row.id, None)
            self.table.cond.notify_all()
        return True

    def _drop_expired(self, key: str, now: float) -> None:
        for row_id in [i for i, row in self.table.rows.items() if row.lock_key == key and row.is_expired(now)]:
            del self.table.rows[row_id]
