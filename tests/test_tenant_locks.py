from __future__ import annotations

import threading
import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError

from billing import locks as locks_module
from billing.locks import TENANT_LOCK_REDIS_KEY_PREFIX, TenantLockManager, TenantLockTimeout


class _FakeRedisLock:
    def __init__(self, owner: "_FakeRedis", name: str, *, fail_release: bool = False) -> None:
        self.owner = owner
        self.name = name
        self.fail_release = fail_release

    def acquire(self, blocking: bool = True) -> bool:
        if self.owner.down:
            raise RedisConnectionError("connection refused")
        if self.name in self.owner.held:
            return False
        self.owner.held.add(self.name)
        return True

    def release(self) -> None:
        self.owner.held.discard(self.name)
        if self.fail_release:
            raise LockError("lock expired")


class _FakeRedis:
    def __init__(self, *, down: bool = False, fail_release: bool = False) -> None:
        self.down = down
        self.fail_release = fail_release
        self.held: set[str] = set()
        self.requests: list[dict] = []

    def ping(self) -> bool:
        if self.down:
            raise RedisConnectionError("connection refused")
        return True

    def lock(self, name: str, **kwargs) -> _FakeRedisLock:
        self.requests.append({"name": name, **kwargs})
        return _FakeRedisLock(self, name, fail_release=self.fail_release)


def test_memory_lock_serializes_same_tenant_only() -> None:
    locks = TenantLockManager(use_redis=False, timeout_seconds=2)
    assert locks.backend == "memory"
    order: list[str] = []
    inside = threading.Event()

    def _holder() -> None:
        with locks.hold("tenant-a"):
            inside.set()
            time.sleep(0.1)
            order.append("holder")

    worker = threading.Thread(target=_holder)
    worker.start()
    inside.wait(timeout=2)

    with locks.hold("tenant-b"):
        order.append("other-tenant")
    with locks.hold("tenant-a"):
        order.append("waiter")
    worker.join()

    assert order == ["other-tenant", "holder", "waiter"]
    assert locks._memory._locks == {}


def test_memory_lock_times_out() -> None:
    locks = TenantLockManager(use_redis=False, timeout_seconds=0.05)
    with locks.hold("tenant-a"):
        with pytest.raises(TenantLockTimeout) as excinfo:
            with locks.hold("tenant-a"):
                pass
    assert excinfo.value.tenant_key == "tenant-a"
    with pytest.raises(ValueError):
        with locks.hold("  "):
            pass


def test_redis_lock_uses_prefixed_key_and_bounded_wait() -> None:
    client = _FakeRedis()
    locks = TenantLockManager(client=client, timeout_seconds=3, ttl_seconds=20)
    assert locks.backend == "redis"

    with locks.hold("tenant-a"):
        assert client.held == {f"{TENANT_LOCK_REDIS_KEY_PREFIX}tenant-a"}
        with pytest.raises(TenantLockTimeout):
            with locks.hold("tenant-a"):
                pass
    assert client.held == set()
    assert client.requests[0] == {
        "name": f"{TENANT_LOCK_REDIS_KEY_PREFIX}tenant-a",
        "timeout": 20,
        "blocking_timeout": 3.0,
    }


def test_redis_outage_is_a_lock_timeout_not_a_silent_fallback() -> None:
    locks = TenantLockManager(client=_FakeRedis(down=True))
    with pytest.raises(TenantLockTimeout):
        with locks.hold("tenant-a"):
            pass


def test_expired_lease_on_release_is_logged_not_raised() -> None:
    locks = TenantLockManager(client=_FakeRedis(fail_release=True))
    entered = False
    with locks.hold("tenant-a"):
        entered = True
    assert entered


def _unreachable_redis(monkeypatch, *, production: bool) -> _FakeRedis:
    client = _FakeRedis(down=True)
    monkeypatch.setattr(locks_module, "REDIS_DISABLED", False)
    monkeypatch.setattr(locks_module, "REDIS_URL", "redis://redis.internal:6379/0")
    monkeypatch.setattr(locks_module, "_is_production_env", lambda: production)
    monkeypatch.setattr(locks_module.redis.Redis, "from_url", lambda *args, **kwargs: client)
    return client


def test_unreachable_redis_in_production_keeps_redis_backend(monkeypatch) -> None:
    _unreachable_redis(monkeypatch, production=True)
    locks = TenantLockManager(timeout_seconds=1)
    assert locks.backend == "redis"
    with pytest.raises(TenantLockTimeout):
        with locks.hold("tenant-a"):
            pass


def test_unreachable_redis_outside_production_uses_memory(monkeypatch) -> None:
    _unreachable_redis(monkeypatch, production=False)
    locks = TenantLockManager(timeout_seconds=1)
    assert locks.backend == "memory"
    with locks.hold("tenant-a"):
        pass
