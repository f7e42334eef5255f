"""
Named, timeout-bounded mutual exclusion for booking creation.

``exclusive_section(key, timeout)`` is the only entry point the booking code
uses; which primitive backs it (in-process locks, PostgreSQL advisory locks,
Redis) is decided once per process from settings. Either the section is
entered and the key is released on exit, or ``LockTimeout`` is raised and the
key was never held.
"""

import hashlib
import threading
import time
from contextlib import ExitStack, contextmanager
from typing import Iterator, Optional

import redis
import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine

from ..config import settings

logger = structlog.get_logger("shopbook.locking")


class LockError(Exception):
    def __init__(self, key: str, message: str | None = None) -> None:
        self.key = key
        super().__init__(message or f"Could not lock {key}")


class LockTimeout(LockError):
    pass


class LockUnavailable(LockError):
    """The lock service itself could not be reached."""


def booking_lock_key(staff_id: int, business_day: str) -> str:
    return f"booking:staff:{int(staff_id)}:day:{business_day}"


class LockBackend:
    name = "abstract"

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        raise NotImplementedError
        yield  # pragma: no cover


class NullLockBackend(LockBackend):
    name = "none"

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        yield


class LocalLockBackend(LockBackend):
    """Per-key ``threading.Lock``; entries are dropped once nobody references them."""

    name = "local"

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}

    def _checkout(self, key: str) -> list:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
            return entry

    def _checkin(self, key: str, entry: list) -> None:
        with self._guard:
            entry[1] -= 1
            if entry[1] <= 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def is_locked(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
        return bool(entry and entry[0].locked())

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        entry = self._checkout(key)
        lock: threading.Lock = entry[0]
        acquired = False
        try:
            if timeout <= 0:
                acquired = lock.acquire(blocking=False)
            else:
                acquired = lock.acquire(timeout=timeout)
            if not acquired:
                raise LockTimeout(key)
            yield
        finally:
            if acquired:
                lock.release()
            self._checkin(key, entry)


def advisory_lock_id(key: str) -> int:
    """Stable signed 64-bit id for ``pg_advisory_lock``."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class PostgresAdvisoryLockBackend(LockBackend):
    """Session-level advisory lock on a dedicated connection, polled until the deadline."""

    name = "postgres"

    def __init__(self, engine: Engine, poll_interval: float = 0.05) -> None:
        self._engine = engine
        self._poll_interval = poll_interval

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        lock_id = advisory_lock_id(key)
        deadline = time.monotonic() + max(0.0, timeout)
        conn = self._engine.connect()
        acquired = False
        try:
            while True:
                acquired = bool(
                    conn.execute(
                        text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
                    ).scalar()
                )
                conn.commit()
                if acquired:
                    break
                if time.monotonic() >= deadline:
                    raise LockTimeout(key)
                time.sleep(self._poll_interval)
            yield
        finally:
            try:
                if acquired:
                    conn.execute(
                        text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": lock_id}
                    )
                    conn.commit()
            except Exception as exc:
                # the lock dies with the server session, never hand it back to the pool
                logger.warning("lock_release_failed", key=key, backend=self.name, error=str(exc))
                conn.invalidate()
            finally:
                conn.close()


class RedisLockBackend(LockBackend):
    name = "redis"

    def __init__(self, client: redis.Redis, ttl_seconds: int, namespace: str) -> None:
        self._client = client
        self._ttl_seconds = max(1, int(ttl_seconds))
        self._namespace = namespace

    def _name(self, key: str) -> str:
        return f"{self._namespace}:lock:{key}"

    def ping(self) -> bool:
        return bool(self._client.ping())

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        lock = self._client.lock(
            self._name(key),
            timeout=self._ttl_seconds,
            blocking_timeout=max(0.0, timeout),
        )
        try:
            acquired = bool(lock.acquire(blocking=timeout > 0))
        except redis.exceptions.RedisError as exc:
            raise LockUnavailable(key, f"Lock service unavailable: {exc}") from exc
        if not acquired:
            raise LockTimeout(key)
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.RedisError as exc:
                # LockError included: the TTL ran out and the key may already be reused
                logger.warning("lock_release_failed", key=key, backend=self.name, error=str(exc))


_BACKEND: Optional[LockBackend] = None
_BACKEND_LOCK = threading.Lock()


def _build_backend() -> LockBackend:
    choice = (settings.BOOKING_LOCK_BACKEND or "auto").strip().lower()
    if choice == "auto":
        choice = "postgres" if settings.DATABASE_URL.startswith("postgresql") else "local"

    if choice == "postgres":
        from ..db import get_engine

        return PostgresAdvisoryLockBackend(get_engine())
    if choice == "redis":
        client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        return RedisLockBackend(
            client,
            ttl_seconds=settings.BOOKING_LOCK_TTL_SECONDS,
            namespace=settings.LOCK_NAMESPACE,
        )
    if choice == "none":
        logger.warning("booking_lock_disabled", backend="none")
        return NullLockBackend()
    if choice != "local":
        raise RuntimeError(f"Unknown BOOKING_LOCK_BACKEND: {choice}")
    return LocalLockBackend()


def get_lock_backend() -> LockBackend:
    global _BACKEND
    if _BACKEND is not None:
        return _BACKEND
    with _BACKEND_LOCK:
        if _BACKEND is None:
            _BACKEND = _build_backend()
            logger.info("lock_backend_initialized", backend=_BACKEND.name)
        return _BACKEND


def set_lock_backend(backend: Optional[LockBackend]) -> None:
    """Replace the process-wide backend (``None`` rebuilds it from settings on next use)."""
    global _BACKEND
    with _BACKEND_LOCK:
        _BACKEND = backend


def booking_lock_keys(staff_id: int, business_days) -> list[str]:
    """Keys for every business day a booking touches, in acquisition order."""
    return sorted({booking_lock_key(staff_id, day) for day in business_days})


@contextmanager
def exclusive_sections(
    keys,
    timeout: float | None = None,
    backend: LockBackend | None = None,
) -> Iterator[None]:
    """Hold several keys at once; taken in sorted order so two callers never deadlock."""
    wait = settings.BOOKING_LOCK_TIMEOUT_SECONDS if timeout is None else float(timeout)
    deadline = time.monotonic() + max(0.0, wait)
    with ExitStack() as stack:
        for key in sorted(set(keys)):
            remaining = max(0.0, deadline - time.monotonic())
            stack.enter_context(exclusive_section(key, timeout=remaining, backend=backend))
        yield


@contextmanager
def exclusive_section(
    key: str,
    timeout: float | None = None,
    backend: LockBackend | None = None,
) -> Iterator[None]:
    active = backend or get_lock_backend()
    wait = settings.BOOKING_LOCK_TIMEOUT_SECONDS if timeout is None else float(timeout)
    started = time.perf_counter()
    with active.hold(key, wait):
        logger.debug(
            "lock_acquired",
            key=key,
            backend=active.name,
            wait_ms=round((time.perf_counter() - started) * 1000.0, 2),
        )
        yield
