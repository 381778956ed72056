import pytest
from sqlalchemy import text

from sqllock.lib.backend import LockAcquisitionError
from sqllock.lib.database import InMemoryAdapter
from sqllock.lib.db_lock import DatabaseLockBackend
from sqllock.lib.memory_lock import InMemoryLockBackend, MemoryLockTable
from sqllock.models.lock import LockLevel
from sqllock.services.lock import Lock, acquire_lock


def test_facade_binds_resource_and_tracks_levels():
    backend = InMemoryLockBackend()
    lock = Lock("user:1:balance", backend)

    assert lock.acquire(LockLevel.READ, blocking=False)
    assert lock.held_levels == {LockLevel.READ}
    assert lock.lock_exists(LockLevel.READ)
    assert not lock.lock_exists(LockLevel.WRITE)

    assert lock.release() is True
    assert lock.held_levels == set()
    assert lock.release() is False


def test_facade_accepts_plain_int_levels():
    lock = Lock("cfg", InMemoryLockBackend())

    assert lock.acquire(2, blocking=False)
    assert lock.held_levels == {LockLevel.WRITE}


@pytest.mark.parametrize(
    "kwargs, error",
    [
        ({"level": "write"}, TypeError),
        ({"level": 3}, ValueError),
        ({"level": True}, TypeError),
        ({"blocking": 1}, TypeError),
        ({"expiration": -1}, ValueError),
        ({"expiration": 1.5}, TypeError),
    ],
)
def test_facade_rejects_invalid_arguments(kwargs, error):
    lock = Lock("cfg", InMemoryLockBackend())
    with pytest.raises(error):
        lock.acquire(**kwargs)
    assert lock.held_levels == set()


def test_facade_rejects_invalid_resource_or_backend():
    with pytest.raises(TypeError):
        Lock(42, InMemoryLockBackend())
    with pytest.raises(ValueError):
        Lock("", InMemoryLockBackend())
    with pytest.raises(TypeError):
        Lock("x", object())


def test_context_manager_holds_lock_for_block():
    table = MemoryLockTable()
    holder = InMemoryLockBackend(table)
    other = InMemoryLockBackend(table)

    with Lock("job", holder) as lock:
        assert lock.held_levels == {LockLevel.WRITE}
        assert other.acquire("job", LockLevel.READ, blocking=False) is False

    assert other.acquire("job", LockLevel.READ, blocking=False) is True


def test_acquire_lock_raises_when_busy():
    table = MemoryLockTable()
    holder = InMemoryLockBackend(table)
    other = InMemoryLockBackend(table)
    holder.acquire("job", LockLevel.WRITE, blocking=False)

    with pytest.raises(LockAcquisitionError):
        with acquire_lock(other, "job", blocking=False):
            pass

    holder.release("job")
    with acquire_lock(other, "job", LockLevel.READ, blocking=False) as lock:
        assert lock.held_levels == {LockLevel.READ}
    assert not other.exists("job")


def test_facade_over_database_backend():
    session = InMemoryAdapter().session()
    backend = DatabaseLockBackend(session, process_alive=lambda pid: True)
    a = Lock("user:1:balance", backend)

    assert a.acquire(LockLevel.WRITE, blocking=False, expiration=0)
    assert a.lock_exists(LockLevel.WRITE)
    assert a.release()
    assert not a.lock_exists(LockLevel.READ)


def test_failed_release_keeps_held_levels_for_retry():
    session = InMemoryAdapter().session()
    lock = Lock("user:1:balance", DatabaseLockBackend(session, process_alive=lambda pid: True))
    assert lock.acquire(LockLevel.WRITE, blocking=False)

    session.execute(text("ALTER TABLE locks RENAME TO locks_moved"))
    session.commit()
    assert lock.release() is False
    assert lock.held_levels == {LockLevel.WRITE}

    session.execute(text("ALTER TABLE locks_moved RENAME TO locks"))
    session.commit()
    assert lock.release() is True
    assert lock.held_levels == set()
    assert not lock.lock_exists(LockLevel.READ)


def test_reacquire_while_held_is_refused():
    table = MemoryLockTable()
    backend = InMemoryLockBackend(table)
    lock = Lock("report", backend)
    assert lock.acquire(LockLevel.READ, blocking=False)

    with pytest.raises(LockAcquisitionError):
        lock.acquire(LockLevel.READ, blocking=False)
    assert lock.held_levels == {LockLevel.READ}

    assert lock.release() is True
    assert not backend.exists("report")
    assert lock.acquire(LockLevel.WRITE, blocking=False)
    assert lock.held_levels == {LockLevel.WRITE}
