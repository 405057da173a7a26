"""
Applies user corrections to the sender reputation cache.

When a user says "mail from this sender is X", the cached verdict for the
sender is replaced by a ``user_override`` entry with confidence 1.0, which
every later categorization honours without calling the LLM. When the user only
says "that was wrong" (no category), the entry is dropped so the next
categorization re-resolves the sender from scratch.

Key: apply_correction() mutates the cache and returns a CorrectionRecord for
whoever persists feedback history.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict

from sweepy.contracts.categories import Category, ResolutionSource
from sweepy.observability.confidence import USER_OVERRIDE_CONFIDENCE
from sweepy.observability.logging import get_logger
from sweepy.observability.telemetry import counter, log_event
from sweepy.storage.models import SenderCacheEntry
from sweepy.storage.sender_cache import SenderReputationCache
from sweepy.utils.email import extract_domain, normalize_address

logger = get_logger(__name__)


class FeedbackType(str, Enum):
    CORRECTED = "corrected"
    REJECTED = "rejected"


class CorrectionRecord(BaseModel):
    """What happened to a sender's cache entry, for the feedback history."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    sender_domain: str
    feedback_type: FeedbackType
    corrected_category: Category | None = None
    previous_entry_existed: bool = False
    recorded_at: datetime


class FeedbackSink:
    """
    Entry point for user corrections.

    Example:
        >>> sink = FeedbackSink(cache)
        >>> sink.apply_correction("user-1", "news@site.example", Category.NEWSLETTER).feedback_type
        <FeedbackType.CORRECTED: 'corrected'>
    """

    def __init__(
        self,
        cache: SenderReputationCache,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.cache = cache
        self._now = now_fn or (lambda: datetime.now(timezone.utc))

    def apply_correction(
        self,
        user_id: str,
        sender: str,
        corrected_category: Category | str | None = None,
    ) -> CorrectionRecord:
        """
        Record a correction (with a category) or a bare rejection (without).

        Side Effects:
        - Invalidates the sender's cache entry for this user
        - Writes a user_override entry when a category is given
        - Emits feedback.* telemetry

        Raises:
            CacheUnavailable: the sender store could not be reached
            ValueError: ``corrected_category`` is not a known category
        """
        address = normalize_address(sender)
        if not address:
            raise ValueError("sender address is required")
        category = Category(corrected_category) if corrected_category is not None else None

        # Never learn "unknown" as a rule
        if category == Category.UNKNOWN:
            logger.info("Correction to unknown treated as rejection")
            category = None

        now = self._now()
        with self.cache.transaction(user_id, address):
            existed = self.cache.invalidate(user_id, address)
            if category is not None:
                entry = SenderCacheEntry(
                    category=category,
                    confidence=USER_OVERRIDE_CONFIDENCE,
                    source=ResolutionSource.USER_OVERRIDE,
                    cached_at=now,
                )
                self.cache.upsert(user_id, address, entry)

        feedback_type = FeedbackType.CORRECTED if category is not None else FeedbackType.REJECTED
        record = CorrectionRecord(
            user_id=user_id,
            sender_domain=extract_domain(address),
            feedback_type=feedback_type,
            corrected_category=category,
            previous_entry_existed=existed,
            recorded_at=now,
        )

        counter(f"feedback.{feedback_type.value}")
        log_event(
            "feedback.correction",
            type=feedback_type.value,
            category=category.value if category else None,
            domain=record.sender_domain,
            replaced=existed,
        )
        logger.info(
            "Applied %s feedback for sender domain %s", feedback_type.value, record.sender_domain
        )
        return record
