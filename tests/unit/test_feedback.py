from datetime import datetime, timezone

import pytest

from sweepy.classification.errors import CacheUnavailable
from sweepy.concepts.feedback import FeedbackSink, FeedbackType
from sweepy.contracts.categories import Category, ResolutionSource
from sweepy.observability.telemetry import counter
from sweepy.storage.models import SenderCacheEntry
from sweepy.storage.sender_cache import SenderReputationCache

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class BrokenStore:
    def get(self, key):
        raise OSError("disk gone")

    def set(self, key, value):
        raise OSError("disk gone")

    def delete(self, key):
        raise OSError("disk gone")


@pytest.fixture
def cache():
    cache = SenderReputationCache(now_fn=lambda: NOW)
    cache.upsert(
        "u1",
        "deals@shop.example",
        SenderCacheEntry(
            category=Category.MARKETING, confidence=0.9, source=ResolutionSource.LLM, cached_at=NOW
        ),
    )
    return cache


@pytest.fixture
def sink(cache):
    return FeedbackSink(cache, now_fn=lambda: NOW)


class TestApplyCorrection:
    def test_correction_writes_user_override(self, sink, cache):
        record = sink.apply_correction("u1", "Deals@Shop.Example", Category.IMPORTANT)

        entry = cache.lookup("u1", "deals@shop.example")
        assert entry.category == Category.IMPORTANT
        assert entry.confidence == 1.0
        assert entry.source == ResolutionSource.USER_OVERRIDE

        assert record.feedback_type == FeedbackType.CORRECTED
        assert record.corrected_category == Category.IMPORTANT
        assert record.sender_domain == "shop.example"
        assert record.previous_entry_existed
        assert record.recorded_at == NOW
        assert counter("feedback.corrected", 0) == 1

    def test_category_may_be_given_as_string(self, sink, cache):
        sink.apply_correction("u1", "deals@shop.example", "newsletter")
        assert cache.lookup("u1", "deals@shop.example").category == Category.NEWSLETTER

    def test_bare_rejection_only_invalidates(self, sink, cache):
        record = sink.apply_correction("u1", "deals@shop.example", None)

        assert cache.lookup("u1", "deals@shop.example") is None
        assert record.feedback_type == FeedbackType.REJECTED
        assert record.corrected_category is None
        assert counter("feedback.rejected", 0) == 1

    def test_correction_to_unknown_is_a_rejection(self, sink, cache):
        record = sink.apply_correction("u1", "deals@shop.example", Category.UNKNOWN)
        assert record.feedback_type == FeedbackType.REJECTED
        assert cache.lookup("u1", "deals@shop.example") is None

    def test_rejecting_unknown_sender(self, sink):
        record = sink.apply_correction("u1", "new@site.example")
        assert not record.previous_entry_existed

    def test_correction_replaces_previous_override(self, sink, cache):
        sink.apply_correction("u1", "deals@shop.example", Category.IMPORTANT)
        sink.apply_correction("u1", "deals@shop.example", Category.PERSONAL)
        assert cache.lookup("u1", "deals@shop.example").category == Category.PERSONAL

    def test_other_users_unaffected(self, sink, cache):
        sink.apply_correction("u2", "deals@shop.example", Category.IMPORTANT)
        assert cache.lookup("u1", "deals@shop.example").category == Category.MARKETING

    def test_invalid_category(self, sink):
        with pytest.raises(ValueError):
            sink.apply_correction("u1", "deals@shop.example", "receipts")

    def test_missing_sender(self, sink):
        with pytest.raises(ValueError):
            sink.apply_correction("u1", "  ", Category.SPAM)

    def test_store_outage_propagates(self):
        sink = FeedbackSink(SenderReputationCache(store=BrokenStore()))
        with pytest.raises(CacheUnavailable):
            sink.apply_correction("u1", "deals@shop.example", Category.SPAM)
