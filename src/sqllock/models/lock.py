"""Lock row model for database-level process coordination."""
from enum import IntEnum

from sqlalchemy import Column, Integer, SmallInteger, String
from sqllock.models import Base


class LockLevel(IntEnum):
    """Lock levels, ordered so a higher value is more exclusive."""

    READ = 1
    WRITE = 2


class LockRow(Base):
    """One row per granted lock.

    Rows are inserted by the acquire statement and never updated. They are
    removed either by an explicit release (by id) or by ghost collection.

    Mutual exclusion is not enforced by a constraint here: several READ rows
    for the same lock_key are legal, and the acquire statement decides
    whether a new row may be inserted.
    """
    __tablename__ = "locks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # md5 hex digest of original_key; fixed length keeps the index small
    lock_key = Column(String(50), nullable=False, index=True)
    original_key = Column(String(255), nullable=True)
    level = Column(SmallInteger, nullable=False, index=True)
    pid = Column(Integer, nullable=True)  # OS process ID
    cid = Column(Integer, nullable=True)  # Database connection ID
    host = Column(String(255), nullable=True)  # Machine hostname
    # Absolute epoch seconds; 0 = never expires on its own
    expire = Column(Integer, nullable=False, default=0)

    def is_expired(self, now: float) -> bool:
        return bool(self.expire) and self.expire <= now

    def __repr__(self) -> str:
        return (
            f"<LockRow id={self.id} key={self.original_key!r} level={self.level} "
            f"pid={self.pid} cid={self.cid} host={self.host} expire={self.expire}>"
        )
