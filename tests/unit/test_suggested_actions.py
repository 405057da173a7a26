from datetime import datetime, timezone

import pytest

from sweepy.classification.suggested_actions import (
    KEEP_PROTECTED,
    boosted_action,
    build_suggested_actions,
    default_action,
)
from sweepy.contracts.categories import ActionType, Category

NOW = datetime(2026, 10, 19, tzinfo=timezone.utc)


class TestSuggestedActions:
    @pytest.mark.parametrize("category", [Category.PERSONAL, Category.IMPORTANT])
    def test_protected_always_keep(self, category, make_record):
        """Should give protected mail exactly [keep], whatever the signals."""
        record = make_record(hasOneClickUnsubscribe=True, isRead=True)
        assert build_suggested_actions(category, record, NOW) == (KEEP_PROTECTED,)
        assert boosted_action(category, record) is None

    def test_marketing_defaults_to_trash(self, make_record):
        actions = build_suggested_actions(Category.MARKETING, make_record(), NOW)
        assert [a.type for a in actions] == [ActionType.MOVE_TO_TRASH]
        assert actions[0].priority == 4

    def test_one_click_unsubscribe_boost_comes_first(self, make_record):
        record = make_record(hasOneClickUnsubscribe=True)
        actions = build_suggested_actions(Category.MARKETING, record, NOW)
        assert [a.type for a in actions] == [ActionType.UNSUBSCRIBE, ActionType.MOVE_TO_TRASH]
        assert [a.priority for a in actions] == [5, 4]

    def test_unread_newsletter_is_top_priority(self, make_record):
        assert default_action(Category.NEWSLETTER, make_record(isRead=False), NOW).priority == 5
        assert default_action(Category.NEWSLETTER, make_record(isRead=True), NOW).priority == 3

    def test_recent_transactional_is_kept(self, make_record):
        action = default_action(Category.TRANSACTIONAL, make_record(date="2026-10-01T00:00:00Z"), NOW)
        assert action.type == ActionType.KEEP

    def test_old_transactional_is_archived(self, make_record):
        action = default_action(Category.TRANSACTIONAL, make_record(date="2026-08-01T00:00:00Z"), NOW)
        assert action.type == ActionType.ARCHIVE
        assert action.priority == 3

    def test_unparseable_date_is_not_old(self, make_record):
        action = default_action(Category.TRANSACTIONAL, make_record(date="yesterday"), NOW)
        assert action.type == ActionType.KEEP

    def test_unknown_without_record(self):
        actions = build_suggested_actions(Category.UNKNOWN)
        assert [a.type for a in actions] == [ActionType.KEEP]
