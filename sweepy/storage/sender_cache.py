"""
Per-user sender reputation cache (second resolution tier).

Remembers, per (user, sender address), what the LLM or the user said the
sender's mail is. Keys are ``user:{user_id}:sender:{address}``.

Concurrency model:
    - One re-entrant lock per key (KeyedLocks); no lock spans users.
    - Every write stamps a fresh version from a process-wide counter, and
      an invalidation leaves a tombstone carrying a fresh version, so a key
      never reports a version an earlier reader already holds. Callers
      that read before a slow operation (the LLM tier) pass the version back
      as ``expected_version`` so their write is dropped if a correction or
      rejection landed in between.
    - A non-override write never replaces a ``user_override`` entry.

Storage is pluggable through SenderStore. The default InMemorySenderStore is
a cachetools.TTLCache bounded by size and age; a durable store only has to
provide get/set/delete. Any store failure surfaces as CacheUnavailable.
"""

from __future__ import annotations

import contextlib
import itertools
import threading
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime, timezone
from typing import NamedTuple, Protocol

from cachetools import TTLCache

from sweepy.classification.errors import CacheUnavailable
from sweepy.config import (
    SENDER_CACHE_DECAY_PER_DAY,
    SENDER_CACHE_MAX_DECAY,
    SENDER_CACHE_MAX_ENTRIES,
    SENDER_CACHE_TTL_SECONDS,
)
from sweepy.observability.logging import get_logger
from sweepy.observability.telemetry import counter, log_event
from sweepy.storage.models import SenderCacheEntry
from sweepy.utils.email import normalize_address
from sweepy.utils.redaction import redact

logger = get_logger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60

# Version reported for a key with no entry
ABSENT_VERSION = 0


class VersionedEntry(NamedTuple):
    entry: SenderCacheEntry
    version: int


class CacheRead(NamedTuple):
    """A lookup result plus the version to hand back on a conditional upsert."""

    entry: SenderCacheEntry | None
    version: int


class SenderStore(Protocol):
    """Minimal keyed store the cache needs. Implementations may raise on outage."""

    def get(self, key: str) -> VersionedEntry | None: ...

    def set(self, key: str, value: VersionedEntry) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemorySenderStore:
    """TTL + LRU bounded in-process store."""

    def __init__(
        self,
        maxsize: int = SENDER_CACHE_MAX_ENTRIES,
        ttl_seconds: float = SENDER_CACHE_TTL_SECONDS,
        timer: Callable[[], float] | None = None,
    ) -> None:
        if timer is None:
            self._data: TTLCache[str, VersionedEntry] = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        else:
            self._data = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        # TTLCache mutates shared bookkeeping on every access
        self._lock = threading.Lock()

    def get(self, key: str) -> VersionedEntry | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: VersionedEntry) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            self._data.expire()
            return len(self._data)


class KeyedLocks:
    """Re-entrant lock per key, created on demand and dropped when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [RLock, holders]

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = [threading.RLock(), 0]
                self._locks[key] = slot
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def cache_key(user_id: str, sender_address: str) -> str:
    return f"user:{user_id}:sender:{normalize_address(sender_address)}"


class SenderReputationCache:
    """
    Atomic-per-key sender cache with versioned conditional writes.

    Example:
        >>> cache = SenderReputationCache()
        >>> entry = SenderCacheEntry(category="newsletter", confidence=0.9, source="llm")
        >>> read = cache.read("u1", "news@site.example")
        >>> read.entry is None
        True
        >>> cache.upsert("u1", "news@site.example", entry, expected_version=read.version)
        True
    """

    def __init__(
        self,
        store: SenderStore | None = None,
        now_fn: Callable[[], datetime] | None = None,
        decay_per_day: float = SENDER_CACHE_DECAY_PER_DAY,
        max_decay: float = SENDER_CACHE_MAX_DECAY,
    ) -> None:
        self.store: SenderStore = store if store is not None else InMemorySenderStore()
        self._now = now_fn or (lambda: datetime.now(timezone.utc))
        self._decay_per_day = decay_per_day
        self._max_decay = max_decay
        self._locks = KeyedLocks()
        self._versions = itertools.count(1)
        self._version_lock = threading.Lock()
        # key -> version stamped by the last invalidate, aged out like entries
        self._tombstones: TTLCache[str, int] = TTLCache(
            maxsize=SENDER_CACHE_MAX_ENTRIES, ttl=SENDER_CACHE_TTL_SECONDS
        )
        self._tombstone_lock = threading.Lock()

    # -- reads -----------------------------------------------------------

    def read(self, user_id: str, sender_address: str) -> CacheRead:
        """
        Current entry (with age decay applied) and its version.

        Raises:
            CacheUnavailable: the store could not be read
        """
        key = cache_key(user_id, sender_address)
        with self._locks.hold(key):
            stored = self._store_get(key)
            absent_version = self._absent_version(key) if stored is None else ABSENT_VERSION
        if stored is None:
            counter("sender_cache.miss")
            return CacheRead(None, absent_version)
        counter("sender_cache.hit")
        return CacheRead(self._apply_decay(stored.entry), stored.version)

    def lookup(self, user_id: str, sender_address: str) -> SenderCacheEntry | None:
        return self.read(user_id, sender_address).entry

    def lookup_many(self, user_id: str, sender_addresses: Iterable[str]) -> dict[str, CacheRead]:
        """
        Read several senders for one user, keyed by normalized address.

        Raises:
            CacheUnavailable: the store failed on any key
        """
        reads: dict[str, CacheRead] = {}
        for address in sender_addresses:
            normalized = normalize_address(address)
            if normalized not in reads:
                reads[normalized] = self.read(user_id, normalized)
        return reads

    # -- writes ----------------------------------------------------------

    def upsert(
        self,
        user_id: str,
        sender_address: str,
        entry: SenderCacheEntry,
        expected_version: int | None = None,
    ) -> bool:
        """
        Store ``entry`` for the sender.

        Args:
            expected_version: version observed by a previous ``read``. When
                given, the write only happens if the key is unchanged since.

        Returns:
            True if the entry was written.

        Side Effects:
            - Writes to the backing store
            - Increments sender_cache.write / sender_cache.conflict counters

        Raises:
            CacheUnavailable: the store could not be read or written
        """
        key = cache_key(user_id, sender_address)
        with self._locks.hold(key):
            current = self._store_get(key)
            current_version = current.version if current else self._absent_version(key)
            if expected_version is not None and expected_version != current_version:
                counter("sender_cache.conflict")
                logger.debug(
                    "Dropped stale cache write for %s (expected v%s, found v%s)",
                    redact(key),
                    expected_version,
                    current_version,
                )
                return False
            if current is not None and current.entry.is_user_override and not entry.is_user_override:
                counter("sender_cache.override_protected")
                return False
            self._store_set(key, VersionedEntry(entry, self._next_version()))
            with self._tombstone_lock:
                self._tombstones.pop(key, None)
        counter("sender_cache.write")
        return True

    def invalidate(self, user_id: str, sender_address: str) -> bool:
        """
        Remove the sender's entry and leave a versioned tombstone.

        Writers still holding a version read before this call are rejected,
        including ones that saw the key absent.

        Returns:
            True if an entry existed.

        Side Effects:
            - Deletes from the backing store
            - Emits sender_cache.invalidated telemetry

        Raises:
            CacheUnavailable: the store could not be reached
        """
        key = cache_key(user_id, sender_address)
        with self._locks.hold(key):
            existed = self._store_get(key) is not None
            self._store_delete(key)
            tombstone = self._next_version()
            with self._tombstone_lock:
                self._tombstones[key] = tombstone
        counter("sender_cache.invalidate")
        log_event("sender_cache.invalidated", key=redact(key), existed=existed)
        return existed

    @contextlib.contextmanager
    def transaction(self, user_id: str, sender_address: str) -> Iterator[None]:
        """Hold the sender's key lock across several cache calls."""
        with self._locks.hold(cache_key(user_id, sender_address)):
            yield

    def stats(self) -> dict[str, int]:
        size = len(self.store) if hasattr(self.store, "__len__") else -1  # type: ignore[arg-type]
        return {
            "entries": size,
            "hits": counter("sender_cache.hit", 0),
            "misses": counter("sender_cache.miss", 0),
            "writes": counter("sender_cache.write", 0),
            "conflicts": counter("sender_cache.conflict", 0),
        }

    # -- internals -------------------------------------------------------

    def _apply_decay(self, entry: SenderCacheEntry) -> SenderCacheEntry:
        if entry.is_user_override:
            return entry
        age_days = max((self._now() - entry.cached_at).total_seconds(), 0.0) / _SECONDS_PER_DAY
        decay = min(age_days * self._decay_per_day, self._max_decay)
        if decay <= 0:
            return entry
        return entry.model_copy(update={"confidence": max(0.0, entry.confidence - decay)})

    def _next_version(self) -> int:
        with self._version_lock:
            return next(self._versions)

    def _absent_version(self, key: str) -> int:
        with self._tombstone_lock:
            return self._tombstones.get(key, ABSENT_VERSION)

    def _store_get(self, key: str) -> VersionedEntry | None:
        try:
            return self.store.get(key)
        except CacheUnavailable:
            raise
        except Exception as exc:
            counter("sender_cache.unavailable")
            raise CacheUnavailable(f"sender store read failed: {exc}") from exc

    def _store_set(self, key: str, value: VersionedEntry) -> None:
        try:
            self.store.set(key, value)
        except CacheUnavailable:
            raise
        except Exception as exc:
            counter("sender_cache.unavailable")
            raise CacheUnavailable(f"sender store write failed: {exc}") from exc

    def _store_delete(self, key: str) -> None:
        try:
            self.store.delete(key)
        except CacheUnavailable:
            raise
        except Exception as exc:
            counter("sender_cache.unavailable")
            raise CacheUnavailable(f"sender store delete failed: {exc}") from exc
