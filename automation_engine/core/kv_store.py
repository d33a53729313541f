"""Shared key-value store for run bookkeeping.

The executor keeps join counters, dispatch markers and cancellation flags here
so that several engine instances can cooperate on the same runs. The in-memory
store is only correct for a single-instance deployment; use the Redis store when
more than one process serves triggers.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set, Tuple

from .exceptions import TransientError
from .logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(ABC):
    """Minimal atomic operations the engine needs."""

    @abstractmethod
    def incr(self, key: str, amount: int = 1) -> int:
        """Atomically add ``amount`` and return the new value."""

    @abstractmethod
    def add_to_set(self, key: str, member: str) -> bool:
        """Add ``member``; True only if it was not already present."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    def delete(self, *keys: str) -> None:
        pass

    def ping(self) -> bool:
        return True


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store guarded by a single lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def incr(self, key: str, amount: int = 1) -> int:
        with self._lock:
            self._purge_if_expired(key)
            value = int(self._values.get(key, 0)) + amount
            self._values[key] = value
            return value

    def add_to_set(self, key: str, member: str) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            members: Set[str] = self._values.setdefault(key, set())
            if member in members:
                return False
            members.add(member)
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge_if_expired(key)
            value = self._values.get(key)
            return None if value is None else str(value)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._values[key] = value
            if ttl:
                self._expiry[key] = time.monotonic() + ttl
            else:
                self._expiry.pop(key, None)

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._values.pop(key, None)
                self._expiry.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


class RedisKeyValueStore(KeyValueStore):
    """Store backed by Redis INCRBY / SADD / SET / DEL."""

    def __init__(self, redis_url: Optional[str] = None, client=None, key_prefix: str = "automation:"):
        if client is None:
            import redis
            client = redis.Redis.from_url(redis_url or "redis://localhost:6379/0", decode_responses=False)
        self.client = client
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _call(self, operation: str, *args) -> Any:
        from redis.exceptions import RedisError
        try:
            return getattr(self.client, operation)(*args)
        except RedisError as e:
            raise TransientError(f"Redis {operation} failed: {str(e)}")

    def incr(self, key: str, amount: int = 1) -> int:
        return int(self._call("incrby", self._key(key), amount))

    def add_to_set(self, key: str, member: str) -> bool:
        return int(self._call("sadd", self._key(key), member)) == 1

    def get(self, key: str) -> Optional[str]:
        value = self._call("get", self._key(key))
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            self._call("set", self._key(key), value, ttl)
        else:
            self._call("set", self._key(key), value)

    def delete(self, *keys: str) -> None:
        if keys:
            self._call("delete", *[self._key(key) for key in keys])

    def ping(self) -> bool:
        return bool(self._call("ping"))


class RunKeys:
    """Key layout for one run's shared bookkeeping."""

    def __init__(self, run_id: str):
        self.run_id = run_id

    def join_counter(self, node_id: str) -> str:
        return f"run:{self.run_id}:arrivals:{node_id}"

    @property
    def dispatched(self) -> str:
        return f"run:{self.run_id}:dispatched"

    @property
    def cancelled(self) -> str:
        return f"run:{self.run_id}:cancelled"

    def all_for(self, node_ids) -> Tuple[str, ...]:
        return tuple(self.join_counter(node_id) for node_id in node_ids) + (self.dispatched,)


def build_kv_store(backend: str, redis_url: Optional[str] = None) -> KeyValueStore:
    """Create the store selected by configuration."""
    if backend == "redis":
        logger.info("Using Redis key-value store for run bookkeeping")
        return RedisKeyValueStore(redis_url)
    logger.info("Using in-memory key-value store (single-instance deployments only)")
    return InMemoryKeyValueStore()
