import os

from sqllock.lib.config import LockSettings
from sqllock.lib.database import InMemoryAdapter
from sqllock.lib.db_lock import DatabaseLockBackend
from sqllock.lib.hashing import lock_key
from sqllock.lib.liveness import current_host
from sqllock.models.lock import LockRow

NOW = 1_700_000_000


def add_row(session, resource_id, **fields):
    fields.setdefault("level", 2)
    fields.setdefault("pid", None)
    fields.setdefault("cid", None)
    fields.setdefault("expire", NOW - 60)
    row = LockRow(lock_key=lock_key(resource_id), original_key=resource_id, **fields)
    session.add(row)
    session.commit()
    return row.id


def make_backend(session, settings=None, alive_pids=(), active_cids=None):
    settings = settings or LockSettings(drop_ghosts_on_init=False)
    if active_cids is None:
        def active_connections(session, cids):
            return None
    else:
        def active_connections(session, cids):
            return {c for c in cids if c in active_cids}
    return DatabaseLockBackend(
        session,
        settings=settings,
        clock=lambda: NOW,
        process_alive=lambda pid: pid in alive_pids,
        active_connections=active_connections,
    )


def test_dead_process_without_connection_is_ghost():
    session = InMemoryAdapter().session()
    row_id = add_row(session, "user:1:balance", pid=99999)
    backend = make_backend(session)

    assert [row.id for row in backend.get_ghosts()] == [row_id]
    assert backend.drop_ghosts() is True
    assert session.query(LockRow).count() == 0
    assert backend.drop_ghosts() is False


def test_live_process_is_not_ghost_even_past_expiry():
    session = InMemoryAdapter().session()
    add_row(session, "job", pid=4242)
    backend = make_backend(session, alive_pids={4242})

    assert backend.get_ghosts() == []
    assert backend.drop_ghosts() is False


def test_active_connection_is_not_ghost():
    session = InMemoryAdapter().session()
    alive_id = add_row(session, "pooled", pid=99999, cid=17)
    dead_id = add_row(session, "pooled", pid=99998, cid=18)
    backend = make_backend(session, active_cids={17})

    assert [row.id for row in backend.get_ghosts()] == [dead_id]
    backend.drop_ghosts()
    assert [row.id for row in session.query(LockRow).all()] == [alive_id]


def test_unknown_connection_state_is_treated_as_alive():
    session = InMemoryAdapter().session()
    add_row(session, "pooled", pid=99999, cid=17)
    backend = make_backend(session, active_cids=None)

    assert backend.get_ghosts() == []


def test_unexpired_rows_are_never_ghosts():
    session = InMemoryAdapter().session()
    add_row(session, "future", pid=99999, expire=NOW + 60)
    add_row(session, "forever", pid=99999, expire=0)
    backend = make_backend(session)

    assert backend.get_ghosts() == []


def test_ghost_scan_can_be_limited_to_one_resource():
    session = InMemoryAdapter().session()
    a_id = add_row(session, "a", pid=99999)
    b_id = add_row(session, "b", pid=99999)
    backend = make_backend(session)

    assert [row.id for row in backend.get_ghosts("a")] == [a_id]
    assert backend.drop_ghosts("a") is True
    assert [row.id for row in session.query(LockRow).all()] == [b_id]


def test_reclaim_unexpiring_only_takes_observably_dead_holders():
    session = InMemoryAdapter().session()
    dead_id = add_row(session, "x", pid=99999, expire=0)
    add_row(session, "x", pid=4242, expire=0)
    add_row(session, "x", pid=None, cid=None, expire=0)
    backend = make_backend(
        session,
        settings=LockSettings(reclaim_unexpiring=True, drop_ghosts_on_init=False),
        alive_pids={4242},
    )

    assert [row.id for row in backend.get_ghosts()] == [dead_id]


def test_pid_from_another_host_is_not_probed():
    session = InMemoryAdapter().session()
    remote_id = add_row(session, "r", pid=4242, host="some-other-host")
    add_row(session, "r", pid=4242, host=current_host())
    backend = make_backend(session, alive_pids={4242})

    assert [row.id for row in backend.get_ghosts()] == [remote_id]


def test_backend_construction_sweeps_ghosts():
    session = InMemoryAdapter().session()
    add_row(session, "crashed", pid=99999)

    make_backend(session, settings=LockSettings())

    assert session.query(LockRow).count() == 0


def test_construction_tolerates_missing_table():
    session = InMemoryAdapter(install=False).session()
    backend = DatabaseLockBackend(session, process_alive=lambda pid: pid == os.getpid())

    assert backend.lock_ids == {}
    assert backend.exists("anything") is False


def test_reclaim_ghosts_returns_deleted_rows():
    session = InMemoryAdapter().session()
    first = add_row(session, "a", pid=99999)
    second = add_row(session, "b", pid=99998)
    add_row(session, "c", pid=4242)
    backend = make_backend(session, alive_pids={4242})

    dropped = backend.reclaim_ghosts()

    assert [(row.id, row.original_key) for row in dropped] == [(first, "a"), (second, "b")]
    assert [row.original_key for row in session.query(LockRow).all()] == ["c"]
    assert backend.reclaim_ghosts() == []
