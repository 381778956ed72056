import argparse
import logging
import subprocess
import time
from typing import Optional

from sqllock.lib.config import LockSettings, load_config, settings_from_config
from sqllock.lib.database import get_engine, get_sessionmaker
from sqllock.lib.db_lock import DatabaseLockBackend
from sqllock.models.lock import LockLevel, LockRow


def _settings(args) -> LockSettings:
    settings = settings_from_config(load_config(getattr(args, "config", None)))
    # CLI overrides (if provided) take precedence over config file
    database = getattr(args, "database", None)
    if database:
        settings.database = database
    return settings


def _backend(args) -> DatabaseLockBackend:
    """Build a backend for a command. Tests may inject a Session via `args.session`."""
    settings = _settings(args)
    session = getattr(args, "session", None)
    if session is None:
        if not settings.database:
            print("No database configured: pass --database or set 'database' in config.json")
            raise SystemExit(1)
        session = get_sessionmaker(get_engine(settings.database))()
    return DatabaseLockBackend(session, settings)


def _format_row(row: LockRow, now: float) -> str:
    try:
        level = LockLevel(row.level).name
    except ValueError:
        level = str(row.level)
    if not row.expire:
        expiry = "never expires"
    elif row.expire <= now:
        expiry = f"expired {int(now - row.expire)}s ago"
    else:
        expiry = f"expires in {int(row.expire - now)}s"
    return f"  - {row.original_key} [{level}] id={row.id} pid={row.pid} cid={row.cid} host={row.host} ({expiry})"


def install(args):
    backend = _backend(args)
    backend.install()
    print("Lock table installed")
    return 0


def status(args):
    backend = _backend(args)
    write = backend.exists(args.key, LockLevel.WRITE)
    read = backend.exists(args.key, LockLevel.READ)
    if write:
        print(f"{args.key}: WRITE locked")
    elif read:
        print(f"{args.key}: READ locked")
    else:
        print(f"{args.key}: unlocked")
    return 0


def list_locks(args):
    backend = _backend(args)
    rows = backend.list_locks(getattr(args, "key", None))
    if not rows:
        print("No locks found")
        return 0
    now = time.time()
    print(f"{len(rows)} lock(s):")
    for row in rows:
        print(_format_row(row, now))
    return 0


def ghosts(args):
    backend = _backend(args)
    rows = backend.get_ghosts(getattr(args, "key", None))
    if not rows:
        print("No ghost locks found")
        return 0
    now = time.time()
    print(f"{len(rows)} ghost lock(s):")
    for row in rows:
        print(_format_row(row, now))
    return 0


def drop_ghosts(args):
    backend = _backend(args)
    key = getattr(args, "key", None)
    dropped = backend.reclaim_ghosts(key)
    if not dropped:
        print("No ghost locks found")
        return 0
    print(f"Dropped {len(dropped)} ghost lock(s)")
    return 0


def run(args):
    """Run a command while holding a lock on `args.key`."""
    command = list(getattr(args, "command", None) or [])
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("No command given to run")
        return 2

    level = LockLevel.READ if getattr(args, "read", False) else LockLevel.WRITE
    blocking = not getattr(args, "no_wait", False)
    expiration = getattr(args, "expire", None) or 0
    if expiration < 0:
        print("--expire must not be negative")
        return 2

    backend = _backend(args)
    if not backend.acquire(args.key, level, blocking, expiration):
        print(f"Lock '{args.key}' is held by another process")
        return 1
    try:
        proc = subprocess.run(command)
        return proc.returncode
    finally:
        backend.release(args.key)


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(prog="sqllock")
    parser.add_argument("--config", help="Path to JSON config file (default: config.json)")
    parser.add_argument("--database", help="Override config: database URL, path or DSN")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log lock activity to stderr")
    sub = parser.add_subparsers(dest="cmd")

    p_install = sub.add_parser("install", help="Create the locks table")
    p_install.set_defaults(func=install)

    p_status = sub.add_parser("status", help="Show whether a resource is locked")
    p_status.add_argument("key")
    p_status.set_defaults(func=status)

    p_list = sub.add_parser("list", help="List lock rows")
    p_list.add_argument("key", nargs="?")
    p_list.set_defaults(func=list_locks)

    p_ghosts = sub.add_parser("ghosts", help="List ghost locks left by dead processes")
    p_ghosts.add_argument("key", nargs="?")
    p_ghosts.set_defaults(func=ghosts)

    p_drop = sub.add_parser("drop-ghosts", help="Delete ghost locks")
    p_drop.add_argument("key", nargs="?")
    p_drop.set_defaults(func=drop_ghosts)

    p_run = sub.add_parser("run", help="Run a command while holding a lock")
    p_run.add_argument("key")
    p_run.add_argument("--read", action="store_true", help="Take a shared READ lock instead of WRITE")
    p_run.add_argument("--no-wait", action="store_true", help="Fail instead of waiting for the lock")
    p_run.add_argument("--expire", type=int, help="Seconds after which the lock may be reclaimed")
    p_run.add_argument("command", nargs=argparse.REMAINDER)
    p_run.set_defaults(func=run)

    args = parser.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    if hasattr(args, "func"):
        return args.func(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
