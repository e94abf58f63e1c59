"""Namespaced key-value store shared by every worker.

All persisted orchestration state (queue index, locks, dedup markers,
idempotency keys, follow-up lists, rate counters, halt flags) lives here
as independent keys with TTL-driven garbage collection.  There are no
cross-key transactions.

Two backends implement the same interface:

• **MemoryStore** — a thread-safe in-process dict guarded by one
  ``threading.Lock``.  TTLs are checked lazily on read.  Used for local
  development, the CLI simulation and the test-suite.  Data is lost on
  process restart and is not shared between processes.
• **RedisStore** — redis-py backed.  Every primitive maps onto a native
  atomic Redis command, so concurrent workers never race on a
  get-then-set round-trip.

Values are JSON-serialised in both backends; a value read back is always
a fresh copy.

Usage
-----
>>> store = MemoryStore()
>>> store.set("sms:halt:+447700900000", 1, ttl_seconds=86400)
>>> store.set_if_absent("sms:lock:+447700900000", "token", ttl_seconds=30)
True
"""

from __future__ import annotations

import fnmatch
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import redis

logger = logging.getLogger(__name__)

_MISSING = object()


def _copy(value: Any) -> Any:
    """Return a detached JSON round-trip copy of *value*."""
    return json.loads(json.dumps(value, default=str))


class KeyValueStore(ABC):
    """Operations every backend must provide."""

    # ── Plain values ─────────────────────────────────────────────────

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the decoded value or ``None`` if missing/expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store *value* under *key*, replacing any previous value."""

    @abstractmethod
    def set_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool:
        """Store *value* only if *key* does not exist.  ``True`` if stored."""

    @abstractmethod
    def compare_and_set(
        self, key: str, expected: Any | None, new: Any | None, ttl_seconds: float,
    ) -> bool:
        """Replace the value of *key* only if it currently equals *expected*.

        ``expected=None`` means "key is absent"; ``new=None`` deletes the
        key.  Returns ``False`` when another writer got there first.
        """

    @abstractmethod
    def incr(self, key: str, ttl_seconds: float) -> int:
        """Atomically increment a counter.  TTL is applied only on creation."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove *key* (any type).  ``True`` if it existed."""

    @abstractmethod
    def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob *pattern*.  Returns count removed."""

    @abstractmethod
    def scan(self, pattern: str) -> list[str]:
        """Return the keys matching a glob *pattern*."""

    # ── FIFO lists ───────────────────────────────────────────────────

    @abstractmethod
    def list_push(self, key: str, value: Any) -> int:
        """Append to the tail.  Returns the new length."""

    @abstractmethod
    def list_pop(self, key: str) -> Any | None:
        """Remove and return the head, or ``None`` if empty."""

    @abstractmethod
    def list_length(self, key: str) -> int:
        """Number of elements in the list."""

    # ── Sets ─────────────────────────────────────────────────────────

    @abstractmethod
    def set_add(self, key: str, member: str) -> None:
        """Add *member* to the set at *key*."""

    @abstractmethod
    def set_remove(self, key: str, member: str) -> None:
        """Remove *member* from the set at *key*."""

    @abstractmethod
    def set_members(self, key: str) -> set[str]:
        """Return all members of the set."""

    # ── Sorted sets (delayed work) ───────────────────────────────────

    @abstractmethod
    def zset_add(self, key: str, member: str, score: float) -> None:
        """Add *member* with *score* (epoch seconds for delayed work)."""

    @abstractmethod
    def zset_pop_due(self, key: str, max_score: float, limit: int = 100) -> list[str]:
        """Claim and remove members with ``score <= max_score``.

        Each member is returned to exactly one caller even when several
        workers sweep the same key concurrently.
        """

    @abstractmethod
    def zset_count(self, key: str) -> int:
        """Number of members in the sorted set."""


class MemoryStore(KeyValueStore):
    """In-process store with lazy TTL expiry and an injectable clock."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        # key → (value, expires_at epoch seconds)
        self._values: dict[str, tuple[Any, float]] = {}
        self._lists: dict[str, list[Any]] = {}
        self._sets: dict[str, set[str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._lock = threading.Lock()

    # ── Internal ─────────────────────────────────────────────────────

    def _live(self, key: str) -> Any:
        """Return the stored value or ``_MISSING``.  Caller holds the lock."""
        entry = self._values.get(key)
        if entry is None:
            return _MISSING
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return _MISSING
        return value

    def _all_keys(self) -> list[str]:
        for key in list(self._values):
            self._live(key)
        return [*self._values, *self._lists, *self._sets, *self._zsets]

    # ── Plain values ─────────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        with self._lock:
            value = self._live(key)
            return None if value is _MISSING else _copy(value)

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        stored = _copy(value)
        with self._lock:
            self._values[key] = (stored, self._clock() + ttl_seconds)

    def set_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool:
        stored = _copy(value)
        with self._lock:
            if self._live(key) is not _MISSING:
                return False
            self._values[key] = (stored, self._clock() + ttl_seconds)
            return True

    def compare_and_set(
        self, key: str, expected: Any | None, new: Any | None, ttl_seconds: float,
    ) -> bool:
        with self._lock:
            current = self._live(key)
            current = None if current is _MISSING else current
            if current != expected:
                return False
            if new is None:
                self._values.pop(key, None)
            else:
                self._values[key] = (_copy(new), self._clock() + ttl_seconds)
            return True

    def incr(self, key: str, ttl_seconds: float) -> int:
        with self._lock:
            current = self._live(key)
            if current is _MISSING:
                self._values[key] = (1, self._clock() + ttl_seconds)
                return 1
            _, expires_at = self._values[key]
            self._values[key] = (int(current) + 1, expires_at)
            return int(current) + 1

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._live(key) is not _MISSING
            self._values.pop(key, None)
            for bucket in (self._lists, self._sets, self._zsets):
                if bucket.pop(key, None) is not None:
                    existed = True
            return existed

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [k for k in self._all_keys() if fnmatch.fnmatchcase(k, pattern)]
            for key in keys:
                for bucket in (self._values, self._lists, self._sets, self._zsets):
                    bucket.pop(key, None)
            return len(keys)

    def scan(self, pattern: str) -> list[str]:
        with self._lock:
            return [k for k in self._all_keys() if fnmatch.fnmatchcase(k, pattern)]

    # ── FIFO lists ───────────────────────────────────────────────────

    def list_push(self, key: str, value: Any) -> int:
        stored = _copy(value)
        with self._lock:
            items = self._lists.setdefault(key, [])
            items.append(stored)
            return len(items)

    def list_pop(self, key: str) -> Any | None:
        with self._lock:
            items = self._lists.get(key)
            if not items:
                return None
            value = items.pop(0)
            if not items:
                del self._lists[key]
            return value

    def list_length(self, key: str) -> int:
        with self._lock:
            return len(self._lists.get(key, ()))

    # ── Sets ─────────────────────────────────────────────────────────

    def set_add(self, key: str, member: str) -> None:
        with self._lock:
            self._sets.setdefault(key, set()).add(member)

    def set_remove(self, key: str, member: str) -> None:
        with self._lock:
            members = self._sets.get(key)
            if members is None:
                return
            members.discard(member)
            if not members:
                del self._sets[key]

    def set_members(self, key: str) -> set[str]:
        with self._lock:
            return set(self._sets.get(key, ()))

    # ── Sorted sets ──────────────────────────────────────────────────

    def zset_add(self, key: str, member: str, score: float) -> None:
        with self._lock:
            self._zsets.setdefault(key, {})[member] = score

    def zset_pop_due(self, key: str, max_score: float, limit: int = 100) -> list[str]:
        with self._lock:
            entries = self._zsets.get(key)
            if not entries:
                return []
            due = sorted(
                (score, member) for member, score in entries.items() if score <= max_score
            )[:limit]
            for _, member in due:
                del entries[member]
            if not entries:
                del self._zsets[key]
            return [member for _, member in due]

    def zset_count(self, key: str) -> int:
        with self._lock:
            return len(self._zsets.get(key, ()))


class RedisStore(KeyValueStore):
    """redis-py backed store.  Safe to share between processes."""

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> RedisStore:
        """Build a store from a ``redis://`` URL."""
        client = redis.Redis.from_url(url, decode_responses=True)
        logger.info("Redis store configured (%s)", url.split("@")[-1])
        return cls(client)

    @staticmethod
    def _ttl_ms(ttl_seconds: float) -> int:
        return max(1, int(ttl_seconds * 1000))

    @staticmethod
    def _decode(raw: str | None) -> Any | None:
        return None if raw is None else json.loads(raw)

    # ── Plain values ─────────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        return self._decode(self._redis.get(key))

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._redis.set(key, json.dumps(value, default=str), px=self._ttl_ms(ttl_seconds))

    def set_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool:
        created = self._redis.set(
            key, json.dumps(value, default=str), nx=True, px=self._ttl_ms(ttl_seconds),
        )
        return bool(created)

    def compare_and_set(
        self, key: str, expected: Any | None, new: Any | None, ttl_seconds: float,
    ) -> bool:
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                current = self._decode(pipe.get(key))
                if current != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                if new is None:
                    pipe.delete(key)
                else:
                    pipe.set(key, json.dumps(new, default=str), px=self._ttl_ms(ttl_seconds))
                pipe.execute()
                return True
            except redis.WatchError:
                logger.debug("Store: CAS conflict on %s", key)
                return False

    def incr(self, key: str, ttl_seconds: float) -> int:
        # Seed with the TTL and bump in one MULTI so a counter never outlives its window.
        with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, nx=True, px=self._ttl_ms(ttl_seconds))
            pipe.incr(key)
            _, count = pipe.execute()
        return int(count)

    def delete(self, key: str) -> bool:
        return bool(self._redis.delete(key))

    def delete_pattern(self, pattern: str) -> int:
        keys = self.scan(pattern)
        removed = 0
        for i in range(0, len(keys), 500):
            removed += int(self._redis.delete(*keys[i : i + 500]))
        return removed

    def scan(self, pattern: str) -> list[str]:
        return list(self._redis.scan_iter(match=pattern, count=500))

    # ── FIFO lists ───────────────────────────────────────────────────

    def list_push(self, key: str, value: Any) -> int:
        return int(self._redis.rpush(key, json.dumps(value, default=str)))

    def list_pop(self, key: str) -> Any | None:
        return self._decode(self._redis.lpop(key))

    def list_length(self, key: str) -> int:
        return int(self._redis.llen(key))

    # ── Sets ─────────────────────────────────────────────────────────

    def set_add(self, key: str, member: str) -> None:
        self._redis.sadd(key, member)

    def set_remove(self, key: str, member: str) -> None:
        self._redis.srem(key, member)

    def set_members(self, key: str) -> set[str]:
        return set(self._redis.smembers(key))

    # ── Sorted sets ──────────────────────────────────────────────────

    def zset_add(self, key: str, member: str, score: float) -> None:
        self._redis.zadd(key, {member: score})

    def zset_pop_due(self, key: str, max_score: float, limit: int = 100) -> list[str]:
        candidates = self._redis.zrangebyscore(key, "-inf", max_score, start=0, num=limit)
        # ZREM returns 1 only for the caller that actually removed the member.
        return [member for member in candidates if self._redis.zrem(key, member)]

    def zset_count(self, key: str) -> int:
        return int(self._redis.zcard(key))


def build_store(redis_url: str | None) -> KeyValueStore:
    """Return a RedisStore when *redis_url* is set, else a MemoryStore."""
    if redis_url:
        return RedisStore.from_url(redis_url)
    logger.warning("REDIS_URL not set; using in-memory store (single process only)")
    return MemoryStore()
