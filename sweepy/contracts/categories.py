"""
Category taxonomy and per-category static configuration.

CATEGORY_CONFIG is read-only: the orchestrator consults it to build
suggested actions, nothing mutates it at runtime.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import NamedTuple


class Category(str, Enum):
    SPAM = "spam"
    MARKETING = "marketing"
    NEWSLETTER = "newsletter"
    NOTIFICATION = "notification"
    SOCIAL = "social"
    TRANSACTIONAL = "transactional"
    PERSONAL = "personal"
    IMPORTANT = "important"
    UNKNOWN = "unknown"


class ActionType(str, Enum):
    ARCHIVE = "archive"
    UNSUBSCRIBE = "unsubscribe"
    MOVE_TO_TRASH = "move_to_trash"
    MARK_READ = "mark_read"
    KEEP = "keep"


class ResolutionSource(str, Enum):
    """Which tier produced the final category."""

    HEURISTIC = "heuristic"
    CACHE = "cache"
    LLM = "llm"
    USER_OVERRIDE = "user_override"


class CategoryConfig(NamedTuple):
    label: str
    protected: bool
    default_action: ActionType
    order: int


CATEGORY_CONFIG: MappingProxyType[Category, CategoryConfig] = MappingProxyType(
    {
        Category.SPAM: CategoryConfig("Spam", False, ActionType.MOVE_TO_TRASH, 1),
        Category.MARKETING: CategoryConfig("Marketing", False, ActionType.MOVE_TO_TRASH, 2),
        Category.NEWSLETTER: CategoryConfig("Newsletter", False, ActionType.MOVE_TO_TRASH, 3),
        Category.NOTIFICATION: CategoryConfig("Notification", False, ActionType.MOVE_TO_TRASH, 4),
        Category.SOCIAL: CategoryConfig("Social", False, ActionType.MOVE_TO_TRASH, 5),
        Category.TRANSACTIONAL: CategoryConfig("Transactional", False, ActionType.KEEP, 6),
        Category.PERSONAL: CategoryConfig("Personal", True, ActionType.KEEP, 7),
        Category.IMPORTANT: CategoryConfig("Important", True, ActionType.KEEP, 8),
        Category.UNKNOWN: CategoryConfig("Unknown", False, ActionType.KEEP, 9),
    }
)

CATEGORY_ORDER: tuple[Category, ...] = tuple(
    sorted(CATEGORY_CONFIG, key=lambda category: CATEGORY_CONFIG[category].order)
)

PROTECTED_CATEGORIES: frozenset[Category] = frozenset(
    category for category, config in CATEGORY_CONFIG.items() if config.protected
)

# Categories whose default action removes mail from the inbox
CLEANUP_CATEGORIES: tuple[Category, ...] = tuple(
    category
    for category in CATEGORY_ORDER
    if not CATEGORY_CONFIG[category].protected
    and CATEGORY_CONFIG[category].default_action != ActionType.KEEP
)


def is_protected(category: Category | str) -> bool:
    return Category(category) in PROTECTED_CATEGORIES
