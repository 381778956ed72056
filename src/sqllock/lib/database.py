import logging
import os
from urllib.parse import quote_plus, unquote_plus, urlparse, urlunparse

from sqlalchemy import bindparam, create_engine, inspect, text
from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

# Dialect name -> statement returning the current connection's id
_CONNECTION_ID_SQL = {
    "mysql": "SELECT CONNECTION_ID()",
    "mariadb": "SELECT CONNECTION_ID()",
    "postgresql": "SELECT pg_backend_pid()",
}

# Dialect name -> statement filtering :cids down to the connections still open
_ACTIVE_CONNECTIONS_SQL = {
    "mysql": "SELECT ID FROM information_schema.PROCESSLIST WHERE ID IN :cids",
    "mariadb": "SELECT ID FROM information_schema.PROCESSLIST WHERE ID IN :cids",
    "postgresql": "SELECT pid FROM pg_stat_activity WHERE pid IN :cids",
}


def get_engine(url: str | None = None):
    """Create a SQLAlchemy engine. Defaults to in-memory SQLite when url is None."""
    url = url or "sqlite:///:memory:"
    url = normalize_db_url(url)
    # pool_pre_ping keeps stale pooled connections from failing the first acquire
    engine = create_engine(url, echo=False, future=True, pool_pre_ping=True)
    return engine


def normalize_db_url(value: str) -> str:
    """Normalize different DB connection representations into a SQLAlchemy URL.

    - A URL (contains '://') is returned as-is, with credentials percent-encoded.
    - A semicolon-separated MySQL-style string (key=val;...) becomes a
      mysql+pymysql SQLAlchemy URL.
    - A filesystem path becomes a sqlite URL.
    """
    if not value:
        return value

    if "://" in value:
        parsed = urlparse(value)
        if not (parsed.username or parsed.password):
            return value

        # Unquote first so already-encoded credentials are not encoded twice
        userinfo = quote_plus(unquote_plus(parsed.username or ""))
        if parsed.password is not None:
            userinfo = f"{userinfo}:{quote_plus(unquote_plus(parsed.password))}"
        hostport = parsed.hostname or ""
        if parsed.port:
            hostport = f"{hostport}:{parsed.port}"
        return urlunparse(parsed._replace(netloc=f"{userinfo}@{hostport}"))

    # semicolon-delimited key=value pairs (common Windows MySQL-style DSN)
    if "=" in value and ";" in value:
        kv = {}
        for part in value.split(";"):
            if "=" in part:
                k, v = part.split("=", 1)
                kv[k.strip().lower()] = v.strip()

        host = kv.get("server") or kv.get("host")
        user = kv.get("user") or kv.get("uid") or kv.get("username")
        password = kv.get("password") or kv.get("pwd")
        port = kv.get("port")
        database = kv.get("database") or kv.get("initial catalog") or kv.get("dbname")

        if host and user and database:
            pwd_q = quote_plus(password) if password is not None else ""
            port_part = f":{port}" if port else ""
            return f"mysql+pymysql://{quote_plus(user)}:{pwd_q}@{host}{port_part}/{database}"

    v = value.replace("\\", "/")
    if os.path.exists(v) or "/" in v or v.endswith(".db"):
        return f"sqlite:///{v}"

    return value


def get_sessionmaker(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def install_table(connection) -> None:
    """Create the locks table and its indexes if they do not exist yet.

    Safe to call from several processes at once: when another process wins
    the CREATE race the resulting error is ignored as long as the table is
    there afterwards.
    """
    from sqllock.models import LockRow

    try:
        LockRow.__table__.create(connection, checkfirst=True)
    except (OperationalError, ProgrammingError):
        if not inspect(connection).has_table(LockRow.__tablename__):
            raise
        logger.debug("locks table was created concurrently by another process")


def init_db(engine):
    """Create all tables using metadata from the models package.

    This is the bootstrap hook: call it once at application start so the
    first acquire does not have to install the table lazily.
    """
    with engine.begin() as conn:
        install_table(conn)


def connection_id(session) -> int | None:
    """Return the datastore's id for the connection the session is using."""
    sql = _CONNECTION_ID_SQL.get(session.get_bind().dialect.name)
    if sql is None:
        return None
    return session.execute(text(sql)).scalar()


def active_connection_ids(session, cids) -> set[int] | None:
    """Return which of cids are still open connections.

    None means the dialect has no connection registry or it could not be
    read; callers must then treat every connection as alive.
    """
    cids = sorted({int(c) for c in cids if c})
    if not cids:
        return set()

    sql = _ACTIVE_CONNECTIONS_SQL.get(session.get_bind().dialect.name)
    if sql is None:
        return None

    stmt = text(sql).bindparams(bindparam("cids", expanding=True))
    try:
        rows = session.execute(stmt, {"cids": cids}).scalars().all()
    except DBAPIError as exc:
        session.rollback()
        logger.warning("cannot read active connections, treating all as alive: %s", exc)
        return None
    return {int(r) for r in rows}


class InMemoryAdapter:
    """Lightweight in-memory DB adapter for tests.

    Usage:
        adapter = InMemoryAdapter()
        session = adapter.session()
    """

    def __init__(self, install: bool = True):
        self.engine = get_engine("sqlite:///:memory:")
        self.Session = get_sessionmaker(self.engine)
        if install:
            init_db(self.engine)

    def session(self):
        return self.Session()
