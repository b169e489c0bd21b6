from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Final

import redis
from redis.exceptions import LockError, RedisError

from config import APP_ENV, REDIS_DISABLED, REDIS_URL, TENANT_LOCK_TIMEOUT_SECONDS, TENANT_LOCK_TTL_SECONDS
from observability import get_logger, log_event

TENANT_LOCK_REDIS_KEY_PREFIX: Final[str] = "billing:tenant_lock:"

_LOGGER = get_logger("crm_billing.billing.locks")


def _is_production_env() -> bool:
    return str(APP_ENV or "").strip().lower() in {"prod", "production"}


class TenantLockTimeout(TimeoutError):
    def __init__(self, tenant_key: str, timeout_seconds: float) -> None:
        super().__init__(f"tenant lock not acquired within {timeout_seconds}s: {tenant_key}")
        self.tenant_key = tenant_key
        self.timeout_seconds = timeout_seconds


class _MemoryLockTable:
    """Per-key locks for a single process; entries are refcounted and dropped when idle."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                return
            if users <= 1:
                self._locks.pop(key, None)
            else:
                self._locks[key] = (lock, users - 1)

    @contextmanager
    def hold(self, key: str, timeout_seconds: float) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=timeout_seconds):
                raise TenantLockTimeout(key, timeout_seconds)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


class TenantLockManager:
    """
    Serializes settlement per client profile.

    Uses a redis-py `Lock` so concurrent API instances share the mutex. When
    Redis is disabled, or unreachable outside production, the manager degrades
    to in-process locks, which only serialize within one process.
    """

    def __init__(
        self,
        *,
        client: redis.Redis | None = None,
        use_redis: bool | None = None,
        timeout_seconds: float = TENANT_LOCK_TIMEOUT_SECONDS,
        ttl_seconds: int = TENANT_LOCK_TTL_SECONDS,
    ) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.ttl_seconds = int(ttl_seconds)
        self._memory = _MemoryLockTable()
        if client is not None:
            self._client: redis.Redis | None = client
        elif use_redis is False:
            self._client = None
        else:
            self._client = self._build_redis_client()

    @property
    def backend(self) -> str:
        return "redis" if self._client is not None else "memory"

    @staticmethod
    def _build_redis_client() -> redis.Redis | None:
        if REDIS_DISABLED or str(REDIS_URL).startswith("memory://"):
            return None
        client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
        try:
            client.ping()
            return client
        except RedisError as exc:
            if _is_production_env():
                # Keep the Redis client: hold() raises TenantLockTimeout until it recovers.
                log_event(
                    _LOGGER,
                    40,
                    "tenant_lock.redis_unavailable",
                    redis_url=REDIS_URL,
                    error=str(exc),
                )
                return client
            log_event(
                _LOGGER,
                30,
                "tenant_lock.redis_unavailable_fallback_memory",
                redis_url=REDIS_URL,
                error=str(exc),
            )
            return None

    @contextmanager
    def hold(self, tenant_key: str) -> Iterator[None]:
        key = str(tenant_key or "").strip()
        if not key:
            raise ValueError("tenant lock key is required")
        if self._client is None:
            with self._memory.hold(key, self.timeout_seconds):
                yield
            return

        lock = self._client.lock(
            f"{TENANT_LOCK_REDIS_KEY_PREFIX}{key}",
            timeout=self.ttl_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        started = time.monotonic()
        try:
            acquired = lock.acquire(blocking=True)
        except RedisError as exc:
            # No silent fallback here: another instance may hold the Redis lock.
            raise TenantLockTimeout(key, self.timeout_seconds) from exc
        if not acquired:
            raise TenantLockTimeout(key, self.timeout_seconds)
        log_event(
            _LOGGER,
            10,
            "tenant_lock.acquired",
            tenant_key=key,
            backend="redis",
            waited_ms=int((time.monotonic() - started) * 1000),
        )
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as exc:
                # Lease expired mid-settlement; the DB transaction already decided the outcome.
                log_event(_LOGGER, 30, "tenant_lock.release_failed", tenant_key=key, error=str(exc))
