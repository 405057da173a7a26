"""Unit tests for the wire/domain models and category contracts."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from sweepy.contracts.categories import (
    CATEGORY_CONFIG,
    CATEGORY_ORDER,
    CLEANUP_CATEGORIES,
    PROTECTED_CATEGORIES,
    ActionType,
    Category,
    ResolutionSource,
    is_protected,
)
from sweepy.storage.models import (
    CategorizationResult,
    EmailRecord,
    SenderCacheEntry,
    SenderInfo,
    SuggestedAction,
)


class TestCategoryContracts:
    def test_protected_categories(self):
        assert PROTECTED_CATEGORIES == frozenset({Category.PERSONAL, Category.IMPORTANT})
        assert is_protected("personal")
        assert not is_protected(Category.NEWSLETTER)

    def test_protected_default_is_keep(self):
        for category in PROTECTED_CATEGORIES:
            assert CATEGORY_CONFIG[category].default_action == ActionType.KEEP

    def test_order_and_cleanup_views(self):
        assert CATEGORY_ORDER[0] == Category.SPAM
        assert CATEGORY_ORDER[-1] == Category.UNKNOWN
        assert Category.TRANSACTIONAL not in CLEANUP_CATEGORIES
        assert Category.MARKETING in CLEANUP_CATEGORIES

    def test_config_is_read_only(self):
        with pytest.raises(TypeError):
            CATEGORY_CONFIG[Category.SPAM] = CATEGORY_CONFIG[Category.UNKNOWN]


class TestEmailRecord:
    def test_camel_case_wire_format(self):
        record = EmailRecord.model_validate(
            {
                "id": "m1",
                "threadId": "t1",
                "from": {"address": "Shop <Promo@Shop.Example>", "name": "Shop"},
                "hasListUnsubscribe": True,
                "bodyLength": 2048,
            }
        )
        assert record.thread_id == "t1"
        assert record.sender_address == "promo@shop.example"
        assert record.sender.domain == "shop.example"
        assert record.has_list_unsubscribe
        assert record.body_length == 2048

    def test_nested_headers_are_flattened(self):
        record = EmailRecord.model_validate(
            {
                "id": "m1",
                "from": "news@site.example",
                "headers": {
                    "hasPrecedenceBulk": True,
                    "isNoreply": True,
                    "listUnsubscribePost": "List-Unsubscribe=One-Click",
                },
            }
        )
        assert record.has_precedence_bulk
        assert record.is_noreply
        assert record.has_one_click_unsubscribe
        assert not record.has_campaign_header
        assert not record.has_marketing_mailer

    def test_null_text_fields_become_empty(self):
        record = EmailRecord.model_validate({"id": "m1", "from": "a@b.example", "subject": None})
        assert record.subject == ""

    @pytest.mark.parametrize(
        "data",
        [
            {"from": "a@b.example"},
            {"id": "", "from": "a@b.example"},
            {"id": "m1"},
            {"id": "m1", "from": {"address": ""}},
            {"id": "m1", "from": "a@b.example", "linkCount": -1},
        ],
    )
    def test_structural_problems_fail_validation(self, data):
        with pytest.raises(ValidationError):
            EmailRecord.model_validate(data)

    def test_received_at(self):
        record = EmailRecord.model_validate({"id": "m1", "from": "a@b.example", "date": "2026-10-18T09:30:00Z"})
        assert record.received_at == datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

    def test_repr_redacts_content(self):
        record = EmailRecord.model_validate(
            {"id": "m1", "from": "secret@b.example", "subject": "Medical results"}
        )
        text = repr(record)
        assert "Medical results" not in text
        assert "secret@b.example" not in text
        assert "hash:" in text

    def test_sender_info_from_string(self):
        info = SenderInfo.model_validate("A@B.Example")
        assert info.address == "a@b.example"
        assert info.domain == "b.example"


class TestResultModels:
    def test_actions_must_be_descending(self):
        low = SuggestedAction(type=ActionType.KEEP, reason="x", priority=1)
        high = SuggestedAction(type=ActionType.UNSUBSCRIBE, reason="y", priority=5)
        with pytest.raises(ValidationError):
            CategorizationResult(
                email_id="m1",
                category=Category.MARKETING,
                confidence=0.9,
                source=ResolutionSource.LLM,
                suggested_actions=(low, high),
            )

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            CategorizationResult(
                email_id="m1", category=Category.SPAM, confidence=1.2, source=ResolutionSource.LLM
            )

    def test_priority_bounds(self):
        with pytest.raises(ValidationError):
            SuggestedAction(type=ActionType.KEEP, reason="x", priority=6)

    def test_cache_entry_rejects_heuristic_source(self):
        with pytest.raises(ValidationError):
            SenderCacheEntry(category=Category.SPAM, confidence=0.9, source=ResolutionSource.HEURISTIC)

    def test_cache_entry_naive_timestamp_becomes_utc(self):
        entry = SenderCacheEntry(
            category=Category.SPAM,
            confidence=0.9,
            source=ResolutionSource.LLM,
            cached_at=datetime(2026, 1, 1),
        )
        assert entry.cached_at.tzinfo == timezone.utc

    def test_results_are_frozen(self):
        result = CategorizationResult(
            email_id="m1", category=Category.SPAM, confidence=0.9, source=ResolutionSource.LLM
        )
        with pytest.raises(ValidationError):
            result.category = Category.PERSONAL
