"""
Suggested actions per resolved category.

Every result gets the category's default action from CATEGORY_CONFIG, plus at
most one boosted action when a strong signal applies (one-click unsubscribe on
bulk mail). Protected categories always get exactly ``[keep]``; the pipeline
re-applies that rule after all tiers have run.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sweepy.config import TRANSACTIONAL_ARCHIVE_AFTER_DAYS
from sweepy.contracts.categories import CATEGORY_CONFIG, ActionType, Category, is_protected
from sweepy.storage.models import EmailRecord, SuggestedAction

KEEP_PROTECTED = SuggestedAction(
    type=ActionType.KEEP,
    reason="Personal/important email, never auto-removed",
    priority=1,
)

# (reason, priority) for each category's default action
_DEFAULT_ACTION_DETAIL: dict[Category, tuple[str, int]] = {
    Category.SPAM: ("Likely spam", 5),
    Category.MARKETING: ("Marketing email", 4),
    Category.NEWSLETTER: ("Newsletter", 3),
    Category.NOTIFICATION: ("Notification", 2),
    Category.SOCIAL: ("Social notification", 3),
    Category.TRANSACTIONAL: ("Recent transactional email", 1),
    Category.UNKNOWN: ("Unknown category", 1),
}

# Categories where offering an unsubscribe makes sense
_UNSUBSCRIBE_CATEGORIES = frozenset({Category.MARKETING, Category.NEWSLETTER, Category.SOCIAL})


def default_action(
    category: Category, record: EmailRecord | None = None, now: datetime | None = None
) -> SuggestedAction:
    if is_protected(category):
        return KEEP_PROTECTED

    action_type = CATEGORY_CONFIG[category].default_action
    reason, priority = _DEFAULT_ACTION_DETAIL[category]

    if category == Category.NEWSLETTER and record is not None and not record.is_read:
        reason, priority = "Newsletter you never opened", 5
    elif category == Category.TRANSACTIONAL and _is_older_than(
        record, TRANSACTIONAL_ARCHIVE_AFTER_DAYS, now
    ):
        action_type = ActionType.ARCHIVE
        reason, priority = f"Old transactional email (>{TRANSACTIONAL_ARCHIVE_AFTER_DAYS} days)", 3

    return SuggestedAction(type=action_type, reason=reason, priority=priority)


def boosted_action(category: Category, record: EmailRecord | None) -> SuggestedAction | None:
    """The single extra action a strong signal earns, if any."""
    if record is None or is_protected(category):
        return None
    if category in _UNSUBSCRIBE_CATEGORIES and record.has_one_click_unsubscribe:
        return SuggestedAction(
            type=ActionType.UNSUBSCRIBE,
            reason="One-click unsubscribe available",
            priority=5,
        )
    return None


def build_suggested_actions(
    category: Category, record: EmailRecord | None = None, now: datetime | None = None
) -> tuple[SuggestedAction, ...]:
    """
    Default action plus optional boost, highest priority first.

    Examples:
        >>> [a.type.value for a in build_suggested_actions(Category.PERSONAL)]
        ['keep']
    """
    if is_protected(category):
        return (KEEP_PROTECTED,)
    actions = [default_action(category, record, now)]
    boost = boosted_action(category, record)
    if boost is not None:
        actions.append(boost)
    # Stable sort keeps the default first on equal priority
    return tuple(sorted(actions, key=lambda action: action.priority, reverse=True))


def _is_older_than(record: EmailRecord | None, days: int, now: datetime | None) -> bool:
    if record is None:
        return False
    received = record.received_at
    if received is None:
        return False
    reference = now or datetime.now(timezone.utc)
    return received < reference - timedelta(days=days)
