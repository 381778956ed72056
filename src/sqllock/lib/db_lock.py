"""Database-level READ/WRITE locks for coordinating concurrent processes.

Locks are rows in the `locks` table. A lock is granted by a single
INSERT ... SELECT ... WHERE NOT EXISTS statement, so the conflict check and
the insert are evaluated atomically by the database: two processes racing
for the same resource can never both see "no conflict" and both insert.
On PostgreSQL the statement is preceded, in the same transaction, by a
transaction-scoped advisory lock on the lock_key.

Rows left behind by processes that died without releasing them ("ghosts")
are detected from the row's expiration time plus the liveness of the
holder's OS process and database connection, and deleted before waiting.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

from sqlalchemy import String, and_, delete, insert, literal, or_, select, text
from sqlalchemy.exc import DBAPIError, ProgrammingError
from sqlalchemy.orm import Session

from sqllock.lib import database, liveness
from sqllock.lib.backend import LockBackend
from sqllock.lib.config import LockSettings
from sqllock.lib.hashing import lock_key
from sqllock.models.lock import LockLevel, LockRow

logger = logging.getLogger(__name__)

# DBAPIs whose cursor.lastrowid is reliable after INSERT ... SELECT
_LASTROWID_DIALECTS = {"sqlite", "mysql", "mariadb"}

_MISSING_TABLE_MARKERS = ("no such table", "doesn't exist", "does not exist", "undefined table")

_INSERT_COLUMNS = ["lock_key", "original_key", "level", "pid", "cid", "host", "expire"]

# Dialect name -> statement serializing acquirers of one lock_key until commit.
# PostgreSQL takes no lock for a NOT EXISTS that matches nothing, so two
# READ COMMITTED transactions could otherwise both insert.
_KEY_SERIALIZERS = {
    "postgresql": "SELECT pg_advisory_xact_lock(hashtext(:lock_key))",
}


def is_schema_error(exc: DBAPIError) -> bool:
    """Tell a missing/broken table apart from transient contention errors."""
    if isinstance(exc, ProgrammingError):
        return True
    message = str(exc.orig).lower()
    return any(marker in message for marker in _MISSING_TABLE_MARKERS)


def _unexpired(table, now: float):
    return or_(table.c.expire == 0, table.c.expire >= now)


class DatabaseLockBackend(LockBackend):
    """Lock backend storing locks in a shared SQL table.

    Usage:
        backend = DatabaseLockBackend(session)
        if backend.acquire("user:1:balance", LockLevel.WRITE, blocking=False):
            try:
                ...
            finally:
                backend.release("user:1:balance")

    One instance is meant to live for the whole process. It remembers the
    row id of every lock it acquired, so `release` only ever deletes rows
    this instance inserted.
    """

    def __init__(
        self,
        session: Session,
        settings: Optional[LockSettings] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        process_alive: Callable[[int], bool] = liveness.process_alive,
        active_connections: Callable = database.active_connection_ids,
    ):
        """Initialize the backend.

        Args:
            session: SQLAlchemy session used for every lock statement
            settings: Spin delay and ghost-collection options
            clock: Returns the current epoch time in seconds
            sleep: Called with the spin delay between blocking attempts
            process_alive: Process-liveness check for a pid on this host
            active_connections: Returns the subset of connection ids still
                open, or None when that cannot be determined
        """
        self.session = session
        self.settings = settings or LockSettings()
        self.clock = clock
        self.sleep = sleep
        self.process_alive = process_alive
        self.active_connections = active_connections
        self.host = liveness.current_host()
        # lock_key -> id of the row this instance inserted
        self.lock_ids: dict[str, int] = {}

        if self.settings.drop_ghosts_on_init:
            try:
                self.drop_ghosts()
            except DBAPIError as exc:
                if not is_schema_error(exc):
                    raise
                logger.debug("skipping initial ghost sweep, locks table not installed: %s", exc)

    def install(self) -> None:
        """Create the locks table if needed."""
        try:
            database.install_table(self.session.connection())
            self.session.commit()
        except DBAPIError:
            self.session.rollback()
            raise

    def _acquire_statement(self, key: str, resource_id: str, level: LockLevel, cid, expire: int, now: float):
        table = LockRow.__table__
        # Alias keeps the conflict subquery from correlating with the insert target
        existing = table.alias("existing")
        conflict = select(literal(1)).select_from(existing).where(
            existing.c.lock_key == key,
            _unexpired(existing, now),
        )
        if level == LockLevel.READ:
            # READ is shared: only more exclusive levels conflict
            conflict = conflict.where(existing.c.level > int(level))

        values = select(
            literal(key, String(50)).label("lock_key"),
            literal(resource_id[:255], String(255)).label("original_key"),
            literal(int(level)).label("level"),
            literal(os.getpid()).label("pid"),
            literal(cid, table.c.cid.type).label("cid"),
            literal(self.host, String(255)).label("host"),
            literal(expire).label("expire"),
        ).where(~conflict.exists())

        return insert(table).from_select(_INSERT_COLUMNS, values)

    def _try_insert(self, resource_id: str, level: LockLevel, expiration: int) -> bool:
        key = lock_key(resource_id)
        now = self.clock()
        expire = int(now + expiration) if expiration else 0
        dialect = self.session.get_bind().dialect.name
        try:
            serializer = _KEY_SERIALIZERS.get(dialect)
            if serializer is not None:
                # Held until the commit below, so racing acquirers see our row
                self.session.execute(text(serializer), {"lock_key": key})
            cid = database.connection_id(self.session)
            stmt = self._acquire_statement(key, resource_id, level, cid, expire, now)
            if dialect in _LASTROWID_DIALECTS:
                result = self.session.execute(stmt)
                row_id = result.lastrowid if result.rowcount else None
            else:
                result = self.session.execute(stmt.returning(LockRow.__table__.c.id))
                row_id = result.scalar()
            self.session.commit()
        except DBAPIError:
            self.session.rollback()
            raise

        if row_id is None:
            return False
        self.lock_ids[key] = row_id
        logger.debug("acquired %s lock on %r (id=%s, expire=%s)", level.name, resource_id, row_id, expire)
        return True

    def acquire(self, resource_id: str, level: LockLevel, blocking: bool, expiration: int = 0) -> bool:
        level = LockLevel(level)
        first_attempt = True

        while True:
            try:
                if self._try_insert(resource_id, level, expiration):
                    return True
            except DBAPIError as exc:
                if first_attempt:
                    # Most likely the table is not installed yet; stay quiet and retry once
                    first_attempt = False
                    logger.debug("first acquire of %r failed, installing locks table: %s", resource_id, exc)
                    try:
                        self.install()
                    except DBAPIError as install_exc:
                        logger.error("cannot install locks table: %s", install_exc)
                        return False
                    continue
                if is_schema_error(exc):
                    logger.error("cannot acquire lock on %r: %s", resource_id, exc)
                    return False
                logger.warning("contention while acquiring %r, retrying: %s", resource_id, exc)
            first_attempt = False

            try:
                dropped = self.drop_ghosts(resource_id)
            except DBAPIError as exc:
                logger.warning("ghost sweep for %r failed: %s", resource_id, exc)
                dropped = False

            if dropped:
                # Ghosts made room, try again right away
                continue
            if not blocking:
                return False
            self.sleep(self.settings.spin_delay)

    def release(self, resource_id: str) -> bool:
        key = lock_key(resource_id)
        row_id = self.lock_ids.pop(key, None)
        if row_id is None:
            # Not acquired through this instance
            return False

        table = LockRow.__table__
        try:
            self.session.execute(delete(table).where(table.c.id == row_id))
            self.session.commit()
        except DBAPIError as exc:
            self.session.rollback()
            self.lock_ids[key] = row_id
            logger.error("failed to release lock on %r (id=%s): %s", resource_id, row_id, exc)
            return False

        logger.debug("released lock on %r (id=%s)", resource_id, row_id)
        return True

    def exists(self, resource_id: str, level: LockLevel = LockLevel.READ) -> bool:
        table = LockRow.__table__
        stmt = (
            select(table.c.id)
            .where(
                table.c.lock_key == lock_key(resource_id),
                table.c.level >= int(level),
                _unexpired(table, self.clock()),
            )
            .limit(1)
        )
        try:
            found = self.session.execute(stmt).first() is not None
            # End the transaction so the next probe sees a fresh snapshot
            self.session.commit()
        except DBAPIError as exc:
            self.session.rollback()
            if is_schema_error(exc):
                return False
            raise
        return found

    def list_locks(self, resource_id: Optional[str] = None) -> list[LockRow]:
        """Return all lock rows (optionally for one resource), oldest first."""
        stmt = select(LockRow).order_by(LockRow.id)
        if resource_id is not None:
            stmt = stmt.where(LockRow.lock_key == lock_key(resource_id))
        try:
            rows = list(self.session.scalars(stmt))
            for row in rows:
                self.session.expunge(row)
            self.session.commit()
        except DBAPIError:
            self.session.rollback()
            raise
        return rows

    def get_ghosts(self, resource_id: Optional[str] = None) -> list[LockRow]:
        """Return lock rows whose holder is gone.

        A candidate row has passed its expiration time (rows with expire = 0
        are only considered when `reclaim_unexpiring` is set). A candidate is
        kept alive when its process is still running on this host or its
        database connection is still open.
        """
        now = self.clock()
        candidate = and_(LockRow.expire != 0, LockRow.expire <= now)
        if self.settings.reclaim_unexpiring:
            candidate = or_(candidate, LockRow.expire == 0)

        stmt = select(LockRow).where(candidate).order_by(LockRow.id)
        if resource_id is not None:
            stmt = stmt.where(LockRow.lock_key == lock_key(resource_id))

        try:
            candidates = list(self.session.scalars(stmt))
            # Detach first: the liveness queries below may roll the session back
            for row in candidates:
                self.session.expunge(row)
            ghosts = self._filter_ghosts(candidates) if candidates else []
            self.session.commit()
        except DBAPIError:
            self.session.rollback()
            raise
        return ghosts

    def _holder_process_alive(self, row: LockRow) -> Optional[bool]:
        """True/False when the holder's pid can be probed here, None otherwise."""
        if not row.pid:
            return None
        if row.host and row.host != self.host:
            return None
        return self.process_alive(row.pid)

    def _filter_ghosts(self, candidates: list[LockRow]) -> list[LockRow]:
        ghosts = []
        with_connection = []
        for row in candidates:
            process_alive = self._holder_process_alive(row)
            if process_alive:
                continue
            if row.cid:
                with_connection.append(row)
            elif row.expire or process_alive is False:
                # Expired with no connection to vouch for it, or a non-expiring
                # lock whose process is observably gone
                ghosts.append(row)

        if with_connection:
            active = self.active_connections(self.session, [row.cid for row in with_connection])
            if active is not None:
                ghosts.extend(row for row in with_connection if row.cid not in active)

        ghosts.sort(key=lambda row: row.id)
        return ghosts

    def drop_ghosts(self, resource_id: Optional[str] = None) -> bool:
        """Delete ghost locks. Returns True if any were found."""
        return bool(self.reclaim_ghosts(resource_id))

    def reclaim_ghosts(self, resource_id: Optional[str] = None) -> list[LockRow]:
        """Delete ghost locks and return the rows that were deleted."""
        ghosts = self.get_ghosts(resource_id)
        if not ghosts:
            return []

        ids = [row.id for row in ghosts]
        table = LockRow.__table__
        try:
            self.session.execute(delete(table).where(table.c.id.in_(ids)))
            self.session.commit()
        except DBAPIError:
            self.session.rollback()
            raise

        logger.info("dropped %d ghost lock(s): %s", len(ids), ", ".join(
            f"{row.original_key!r} (id={row.id}, pid={row.pid}, cid={row.cid})" for row in ghosts
        ))
        return ghosts
