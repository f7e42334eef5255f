import os
import threading
import time

import pytest
import redis

from shopbook.core.locking import (
    LocalLockBackend,
    LockTimeout,
    LockUnavailable,
    PostgresAdvisoryLockBackend,
    RedisLockBackend,
    advisory_lock_id,
    booking_lock_key,
    booking_lock_keys,
    exclusive_section,
    exclusive_sections,
    get_lock_backend,
    set_lock_backend,
)


def test_lock_key_format():
    assert booking_lock_key(7, "2030-03-12") == "booking:staff:7:day:2030-03-12"
    assert booking_lock_keys(7, ["2030-03-13", "2030-03-12", "2030-03-13"]) == [
        "booking:staff:7:day:2030-03-12",
        "booking:staff:7:day:2030-03-13",
    ]


def test_advisory_lock_id_is_stable_signed_64bit():
    first = advisory_lock_id("booking:staff:1:day:2030-03-12")
    assert first == advisory_lock_id("booking:staff:1:day:2030-03-12")
    assert first != advisory_lock_id("booking:staff:2:day:2030-03-12")
    assert -(2**63) <= first < 2**63


def test_local_lock_excludes_and_releases():
    backend = LocalLockBackend()
    key = "booking:staff:1:day:2030-03-12"
    with exclusive_section(key, timeout=1, backend=backend):
        assert backend.is_locked(key)
        with pytest.raises(LockTimeout):
            with exclusive_section(key, timeout=0.05, backend=backend):
                pass
        # other keys are independent
        with exclusive_section("booking:staff:2:day:2030-03-12", timeout=0.05, backend=backend):
            pass
    assert not backend.is_locked(key)
    assert backend._entries == {}


def test_local_lock_released_when_body_raises():
    backend = LocalLockBackend()
    key = "k"
    with pytest.raises(RuntimeError):
        with exclusive_section(key, timeout=1, backend=backend):
            raise RuntimeError("boom")
    with exclusive_section(key, timeout=0, backend=backend):
        pass


def test_local_lock_serializes_threads():
    backend = LocalLockBackend()
    inside = []
    overlaps = []

    def worker():
        with exclusive_section("shared", timeout=5, backend=backend):
            inside.append(1)
            if len(inside) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlaps == []


def test_backend_singleton_built_from_settings():
    set_lock_backend(None)
    first = get_lock_backend()
    assert first is get_lock_backend()
    assert first.name == "local"


class FakeRedisLock:
    def __init__(self, store, name, acquire_error=None):
        self.store = store
        self.name = name
        self.acquire_error = acquire_error

    def acquire(self, blocking=True):
        if self.acquire_error:
            raise self.acquire_error
        if self.name in self.store:
            return False
        self.store.add(self.name)
        return True

    def release(self):
        if self.name not in self.store:
            raise redis.exceptions.LockNotOwnedError("expired")
        self.store.discard(self.name)


class FakeRedis:
    def __init__(self, acquire_error=None):
        self.store = set()
        self.acquire_error = acquire_error
        self.requested = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.requested.append((name, timeout, blocking_timeout))
        return FakeRedisLock(self.store, name, self.acquire_error)

    def ping(self):
        return True


def test_redis_backend_namespaces_and_releases():
    client = FakeRedis()
    backend = RedisLockBackend(client, ttl_seconds=30, namespace="shopbook")
    with exclusive_section("booking:staff:1:day:2030-03-12", timeout=0.5, backend=backend):
        assert client.store == {"shopbook:lock:booking:staff:1:day:2030-03-12"}
        with pytest.raises(LockTimeout):
            with exclusive_section("booking:staff:1:day:2030-03-12", timeout=0.5, backend=backend):
                pass
    assert client.store == set()
    assert client.requested[0] == ("shopbook:lock:booking:staff:1:day:2030-03-12", 30, 0.5)


def test_redis_backend_outage_is_reported_as_unavailable():
    client = FakeRedis(acquire_error=redis.exceptions.ConnectionError("down"))
    backend = RedisLockBackend(client, ttl_seconds=30, namespace="shopbook")
    with pytest.raises(LockUnavailable):
        with exclusive_section("k", timeout=0.1, backend=backend):
            pass


def test_redis_expired_lock_release_does_not_mask_the_body():
    client = FakeRedis()
    backend = RedisLockBackend(client, ttl_seconds=30, namespace="shopbook")
    with exclusive_section("k", timeout=0.1, backend=backend):
        # TTL ran out while the body was running
        client.store.clear()


@pytest.mark.skipif(not os.getenv("TEST_POSTGRES_URL"), reason="TEST_POSTGRES_URL not set")
def test_postgres_advisory_lock_excludes_across_connections():
    from sqlalchemy import create_engine

    engine = create_engine(os.environ["TEST_POSTGRES_URL"], pool_pre_ping=True)
    backend = PostgresAdvisoryLockBackend(engine, poll_interval=0.01)
    key = "booking:staff:1:day:2030-03-12"
    try:
        with exclusive_section(key, timeout=1, backend=backend):
            with pytest.raises(LockTimeout):
                with exclusive_section(key, timeout=0.1, backend=backend):
                    pass
        with exclusive_section(key, timeout=0.1, backend=backend):
            pass
    finally:
        engine.dispose()


def test_exclusive_sections_hold_every_key_and_release_on_timeout():
    backend = LocalLockBackend()
    keys = ["booking:staff:1:day:2030-03-13", "booking:staff:1:day:2030-03-12"]

    with exclusive_sections(keys, timeout=1, backend=backend):
        assert backend.is_locked(keys[0])
        assert backend.is_locked(keys[1])
    assert not backend.is_locked(keys[0])
    assert not backend.is_locked(keys[1])

    # second key busy: the first one must not stay held
    with exclusive_section(keys[0], timeout=1, backend=backend):
        with pytest.raises(LockTimeout):
            with exclusive_sections(keys, timeout=0.05, backend=backend):
                pass
        assert not backend.is_locked(keys[1])
