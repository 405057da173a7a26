"""Static contracts shared by every tier: categories, actions, sources."""

from sweepy.contracts.categories import (
    CATEGORY_CONFIG,
    CATEGORY_ORDER,
    CLEANUP_CATEGORIES,
    PROTECTED_CATEGORIES,
    ActionType,
    Category,
    CategoryConfig,
    ResolutionSource,
    is_protected,
)

__all__ = [
    "CATEGORY_CONFIG",
    "CATEGORY_ORDER",
    "CLEANUP_CATEGORIES",
    "PROTECTED_CATEGORIES",
    "ActionType",
    "Category",
    "CategoryConfig",
    "ResolutionSource",
    "is_protected",
]
