"""Unit tests for the per-user sender reputation cache."""

from datetime import datetime, timedelta, timezone

import pytest

from sweepy.classification.errors import CacheUnavailable
from sweepy.contracts.categories import Category, ResolutionSource
from sweepy.observability.telemetry import counter
from sweepy.storage.models import SenderCacheEntry
from sweepy.storage.sender_cache import (
    ABSENT_VERSION,
    InMemorySenderStore,
    KeyedLocks,
    SenderReputationCache,
    cache_key,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def llm_entry(category=Category.NEWSLETTER, confidence=0.9, cached_at=NOW):
    return SenderCacheEntry(
        category=category, confidence=confidence, source=ResolutionSource.LLM, cached_at=cached_at
    )


def override_entry(category=Category.IMPORTANT):
    return SenderCacheEntry(
        category=category, confidence=1.0, source=ResolutionSource.USER_OVERRIDE, cached_at=NOW
    )


class FailingStore:
    def get(self, key):
        raise ConnectionError("store unreachable")

    def set(self, key, value):
        raise ConnectionError("store unreachable")

    def delete(self, key):
        raise ConnectionError("store unreachable")


@pytest.fixture
def cache():
    return SenderReputationCache(now_fn=lambda: NOW)


class TestReadWrite:
    def test_miss_reports_absent_version(self, cache):
        read = cache.read("u1", "news@site.example")
        assert read.entry is None
        assert read.version == ABSENT_VERSION
        assert counter("sender_cache.miss", 0) == 1

    def test_upsert_then_read(self, cache):
        assert cache.upsert("u1", "news@site.example", llm_entry())
        read = cache.read("u1", "news@site.example")
        assert read.entry == llm_entry()
        assert read.version > ABSENT_VERSION

    def test_address_is_normalized(self, cache):
        cache.upsert("u1", "News <News@Site.Example>", llm_entry())
        assert cache.lookup("u1", "news@site.example") is not None
        assert cache_key("u1", "NEWS@site.example") == "user:u1:sender:news@site.example"

    def test_users_are_isolated(self, cache):
        cache.upsert("u1", "news@site.example", llm_entry())
        assert cache.lookup("u2", "news@site.example") is None

    def test_every_write_gets_a_new_version(self, cache):
        cache.upsert("u1", "a@site.example", llm_entry())
        first = cache.read("u1", "a@site.example").version
        cache.upsert("u1", "a@site.example", llm_entry(confidence=0.95))
        assert cache.read("u1", "a@site.example").version > first

    def test_lookup_many_dedupes_senders(self, cache):
        cache.upsert("u1", "a@site.example", llm_entry())
        reads = cache.lookup_many("u1", ["A@site.example", "a@site.example", "b@site.example"])
        assert set(reads) == {"a@site.example", "b@site.example"}
        assert reads["a@site.example"].entry is not None
        assert reads["b@site.example"].entry is None


class TestConditionalWrites:
    def test_stale_version_is_rejected(self, cache):
        """Should drop a write based on a read that a later write superseded."""
        read = cache.read("u1", "a@site.example")
        cache.upsert("u1", "a@site.example", llm_entry(Category.MARKETING))

        written = cache.upsert("u1", "a@site.example", llm_entry(), expected_version=read.version)

        assert written is False
        assert cache.lookup("u1", "a@site.example").category == Category.MARKETING
        assert counter("sender_cache.conflict", 0) == 1

    def test_matching_version_is_accepted(self, cache):
        cache.upsert("u1", "a@site.example", llm_entry(Category.MARKETING))
        read = cache.read("u1", "a@site.example")
        assert cache.upsert("u1", "a@site.example", llm_entry(), expected_version=read.version)
        assert cache.lookup("u1", "a@site.example").category == Category.NEWSLETTER

    def test_invalidated_key_rejects_old_version(self, cache):
        cache.upsert("u1", "a@site.example", llm_entry())
        read = cache.read("u1", "a@site.example")
        cache.invalidate("u1", "a@site.example")
        assert not cache.upsert("u1", "a@site.example", llm_entry(), expected_version=read.version)
        assert cache.lookup("u1", "a@site.example") is None

    def test_absent_read_is_rejected_after_write_and_invalidate(self, cache):
        """Should not let a key that went absent again accept a version read before."""
        stale = cache.read("u1", "a@site.example")
        cache.upsert("u1", "a@site.example", llm_entry())
        cache.invalidate("u1", "a@site.example")

        after = cache.read("u1", "a@site.example")
        assert after.entry is None
        assert after.version != stale.version
        assert not cache.upsert("u1", "a@site.example", llm_entry(), expected_version=stale.version)
        assert cache.lookup("u1", "a@site.example") is None

    def test_tombstone_version_accepts_fresh_reader(self, cache):
        cache.upsert("u1", "a@site.example", llm_entry())
        cache.invalidate("u1", "a@site.example")
        read = cache.read("u1", "a@site.example")

        assert cache.upsert("u1", "a@site.example", llm_entry(), expected_version=read.version)
        assert cache.read("u1", "a@site.example").version > read.version

    def test_llm_write_never_replaces_override(self, cache):
        cache.upsert("u1", "boss@work.example", override_entry())
        assert not cache.upsert("u1", "boss@work.example", llm_entry(Category.MARKETING))
        assert cache.lookup("u1", "boss@work.example").is_user_override

    def test_override_replaces_override(self, cache):
        cache.upsert("u1", "boss@work.example", override_entry())
        assert cache.upsert("u1", "boss@work.example", override_entry(Category.PERSONAL))
        assert cache.lookup("u1", "boss@work.example").category == Category.PERSONAL


class TestInvalidate:
    def test_reports_whether_entry_existed(self, cache):
        assert cache.invalidate("u1", "a@site.example") is False
        cache.upsert("u1", "a@site.example", llm_entry())
        assert cache.invalidate("u1", "a@site.example") is True
        assert cache.lookup("u1", "a@site.example") is None

    def test_transaction_is_reentrant(self, cache):
        with cache.transaction("u1", "a@site.example"):
            cache.invalidate("u1", "a@site.example")
            cache.upsert("u1", "a@site.example", override_entry())
        assert cache.lookup("u1", "a@site.example").is_user_override


class TestDecay:
    def test_confidence_decays_with_age(self):
        cache = SenderReputationCache(now_fn=lambda: NOW)
        cache.upsert("u1", "a@site.example", llm_entry(confidence=0.9, cached_at=NOW - timedelta(days=10)))
        assert cache.lookup("u1", "a@site.example").confidence == pytest.approx(0.88)

    def test_decay_is_capped(self):
        cache = SenderReputationCache(now_fn=lambda: NOW)
        cache.upsert("u1", "a@site.example", llm_entry(confidence=0.9, cached_at=NOW - timedelta(days=365)))
        assert cache.lookup("u1", "a@site.example").confidence == pytest.approx(0.85)

    def test_overrides_do_not_decay(self):
        cache = SenderReputationCache(now_fn=lambda: NOW + timedelta(days=365))
        cache.upsert("u1", "a@site.example", override_entry())
        assert cache.lookup("u1", "a@site.example").confidence == 1.0


class TestStoreFailures:
    def test_read_failure_raises_cache_unavailable(self):
        cache = SenderReputationCache(store=FailingStore())
        with pytest.raises(CacheUnavailable):
            cache.read("u1", "a@site.example")
        assert counter("sender_cache.unavailable", 0) == 1

    def test_write_failure_raises_cache_unavailable(self):
        cache = SenderReputationCache(store=FailingStore())
        with pytest.raises(CacheUnavailable):
            cache.upsert("u1", "a@site.example", llm_entry())

    def test_invalidate_failure_raises_cache_unavailable(self):
        cache = SenderReputationCache(store=FailingStore())
        with pytest.raises(CacheUnavailable):
            cache.invalidate("u1", "a@site.example")


class TestInMemoryStore:
    def test_entries_expire_after_ttl(self):
        clock = [0.0]
        store = InMemorySenderStore(ttl_seconds=10, timer=lambda: clock[0])
        cache = SenderReputationCache(store=store, now_fn=lambda: NOW)
        cache.upsert("u1", "a@site.example", llm_entry())

        clock[0] = 11.0

        assert cache.lookup("u1", "a@site.example") is None
        assert len(store) == 0

    def test_size_is_bounded(self):
        store = InMemorySenderStore(maxsize=2)
        cache = SenderReputationCache(store=store, now_fn=lambda: NOW)
        for sender in ("a@x.example", "b@x.example", "c@x.example"):
            cache.upsert("u1", sender, llm_entry())
        assert len(store) == 2
        assert cache.stats()["entries"] == 2

    def test_keyed_locks_are_released(self):
        locks = KeyedLocks()
        with locks.hold("k"):
            with locks.hold("k"):
                assert len(locks) == 1
        assert len(locks) == 0
