"""
ephemeral/store.py -- TTL-bearing keyed storage for one-time credentials.

Holds authorization codes, CAS tickets, MFA one-time codes, reset tokens,
refresh-token records and failed-login counters. Every value is a JSON
object; counters are plain integers kept alongside.

The one invariant that matters: get_and_delete() is linearizable per key.
Two concurrent redemptions of the same code must produce exactly one value
and one None. Callers rely on that instead of keeping "used" flags.

Backends:
  MemoryStore -- process-local dict guarded by a lock. Single worker only.
  RedisStore  -- redis-py. GET+DEL in one MULTI/EXEC, INCR+EXPIRE pipelined.

Failure mode: any backend error becomes StoreUnavailable. Callers treat it
as a failed lookup -- an artifact that cannot be read is never valid.

Usage:
    store = open_store("memory://")
    store.put("oauth2:code:abc", {"client_id": "app"}, ttl=600)
    store.get_and_delete("oauth2:code:abc")   # returns dict
    store.get_and_delete("oauth2:code:abc")   # returns None
    store.incr("failed_login:1.2.3.4:alice", ttl=3600)
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Optional

import redis

from core.errors import StoreUnavailable

logger = logging.getLogger("gatekeeper.ephemeral")


class EphemeralStore(ABC):
    """Contract shared by all backends. TTLs are whole seconds."""

    @abstractmethod
    def put(self, key: str, value: dict, ttl: int) -> None:
        """Store value under key, replacing any existing entry."""

    @abstractmethod
    def get(self, key: str) -> Optional[dict]:
        """Return the value without consuming it, or None if absent/expired."""

    @abstractmethod
    def get_and_delete(self, key: str) -> Optional[dict]:
        """Atomically return and remove the value. None if absent/expired."""

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def incr(self, key: str, ttl: int) -> int:
        """Increment a counter and (re)arm its expiry. Returns the new count."""

    @abstractmethod
    def counter(self, key: str) -> int:
        """Current counter value; 0 if absent."""

    @abstractmethod
    def ping(self) -> bool: ...

    def purge_expired(self) -> int:
        """Drop expired entries. Backends with native expiry return 0."""
        return 0

    def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class MemoryStore(EphemeralStore):
    """Dict-backed store. All operations hold one lock, so get_and_delete is
    trivially linearizable. Expired entries are dropped lazily on access and
    in bulk by purge_expired().

    clock is injectable so TTL behaviour can be tested without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (expires_at, serialized value or int counter)
        self._entries: dict[str, tuple[float, Any]] = {}

    def _live(self, key: str) -> Optional[tuple[float, Any]]:
        # Caller must hold self._lock.
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[0] <= self._clock():
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, value: dict, ttl: int) -> None:
        # Serialize on write so callers cannot mutate stored state by alias.
        payload = json.dumps(value)
        with self._lock:
            self._entries[key] = (self._clock() + ttl, payload)

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            entry = self._live(key)
        if entry is None or not isinstance(entry[1], str):
            return None
        return json.loads(entry[1])

    def get_and_delete(self, key: str) -> Optional[dict]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._entries[key]
        if not isinstance(entry[1], str):
            return None
        return json.loads(entry[1])

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def incr(self, key: str, ttl: int) -> int:
        with self._lock:
            entry = self._live(key)
            count = entry[1] + 1 if entry is not None and isinstance(entry[1], int) else 1
            self._entries[key] = (self._clock() + ttl, count)
        return count

    def counter(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
        if entry is None or not isinstance(entry[1], int):
            return 0
        return entry[1]

    def ping(self) -> bool:
        return True

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisStore(EphemeralStore):
    """redis-py backed store.

    get_and_delete uses a MULTI/EXEC transaction (GET then DEL) rather than
    GETDEL so it works against Redis servers older than 6.2. MULTI/EXEC
    executes both commands without interleaving, which is all the single-use
    guarantee needs.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None) -> None:
        self._client = client if client is not None else redis.Redis.from_url(url, decode_responses=True)

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as exc:
            logger.error("Ephemeral store %s failed: %s", op, exc)
            raise StoreUnavailable() from exc

    def put(self, key: str, value: dict, ttl: int) -> None:
        with self._guard("put"):
            self._client.set(key, json.dumps(value), ex=ttl)

    def get(self, key: str) -> Optional[dict]:
        with self._guard("get"):
            raw = self._client.get(key)
        return _decode(raw)

    def get_and_delete(self, key: str) -> Optional[dict]:
        with self._guard("get_and_delete"):
            pipe = self._client.pipeline(transaction=True)
            pipe.get(key)
            pipe.delete(key)
            raw, _deleted = pipe.execute()
        return _decode(raw)

    def delete(self, key: str) -> None:
        with self._guard("delete"):
            self._client.delete(key)

    def incr(self, key: str, ttl: int) -> int:
        with self._guard("incr"):
            pipe = self._client.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, ttl)
            count, _ = pipe.execute()
        return int(count)

    def counter(self, key: str) -> int:
        with self._guard("counter"):
            raw = self._client.get(key)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self._client.close()


def _decode(raw) -> Optional[dict]:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def open_store(url: str) -> EphemeralStore:
    """Return the backend for a store URL ("memory://" or a redis URL)."""
    if url.startswith("memory://"):
        logger.info("Ephemeral store: in-process memory")
        return MemoryStore()
    if url.startswith(("redis://", "rediss://", "unix://")):
        logger.info("Ephemeral store: redis")
        return RedisStore(url)
    raise ValueError(f"Unsupported ephemeral store URL: {url!r}")
