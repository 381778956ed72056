from sqlalchemy.orm import declarative_base

Base = declarative_base()

from .lock import LockLevel, LockRow  # noqa: F401
