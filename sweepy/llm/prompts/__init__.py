"""
Prompt templates for the LLM tier.

The system instruction lives in a text file next to this module so it can be
edited without touching code. Set SWEEPY_CLASSIFIER_PROMPT to load an
alternate file from this directory.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, Sequence
from functools import lru_cache
from pathlib import Path

from sweepy.config import SNIPPET_MAX_CHARS, SUBJECT_MAX_CHARS
from sweepy.observability.logging import get_logger
from sweepy.storage.models import EmailRecord

logger = get_logger(__name__)

PROMPTS_DIR = Path(__file__).parent
CLASSIFIER_PROMPT_NAME = os.getenv("SWEEPY_CLASSIFIER_PROMPT", "classifier_system")

# Markers that try to turn email content into instructions
_INJECTION_RE = re.compile(
    r"ignore\s+(previous|above|all)\s+instructions?"
    r"|disregard\s+(previous|above|all)\s+instructions?"
    r"|new\s+instructions?:"
    r"|(system|assistant)\s*:"
    r"|\[/?INST\]"
    r"|<\|im_(start|end)\|>",
    re.IGNORECASE,
)


@lru_cache(maxsize=4)
def load_prompt(prompt_name: str = CLASSIFIER_PROMPT_NAME) -> str:
    """
    Load a prompt template by file stem.

    Raises:
        FileNotFoundError: no such prompt file
    """
    prompt_path = PROMPTS_DIR / f"{prompt_name}.txt"
    if not prompt_path.exists():
        raise FileNotFoundError(f"Prompt file not found: {prompt_path}")
    with open(prompt_path, encoding="utf-8") as f:
        return f.read().strip()


def sanitize_field(text: str, max_length: int) -> str:
    """Strip injection markers, flatten newlines and clip to ``max_length``."""
    if not text:
        return ""
    if _INJECTION_RE.search(text):
        logger.warning("Prompt injection marker removed from email field (length=%d)", len(text))
        text = _INJECTION_RE.sub("[removed]", text)
    text = " ".join(text.split())
    return text[:max_length]


def format_email(record: EmailRecord, hint: str | None = None) -> str:
    sender = record.sender
    lines = [
        f"--- EMAIL {record.id} ---",
        f"From: {sanitize_field(sender.name, 100)} <{sender.address}>",
        f"Subject: {sanitize_field(record.subject, SUBJECT_MAX_CHARS)}",
        f"Snippet: {sanitize_field(record.snippet, SNIPPET_MAX_CHARS)}",
        f"Date: {record.date}",
        f"Read: {str(record.is_read).lower()}",
        f"Has-Unsubscribe: {str(record.has_list_unsubscribe).lower()}",
        f"Bulk: {str(record.has_precedence_bulk).lower()}",
        f"Is-Noreply: {str(record.is_noreply).lower()}",
        f"Body-Length: {record.body_length}",
        f"Links: {record.link_count}",
        f"Images: {record.image_count}",
        f"Has-Unsubscribe-Text: {str(record.has_unsubscribe_text).lower()}",
    ]
    if hint:
        lines.append(f"Hint: {hint}")
    lines.append("--- END ---")
    return "\n".join(lines)


def build_batch_prompt(records: Sequence[EmailRecord], hints: Mapping[str, str]) -> str:
    """User prompt for one batch; ``hints`` is keyed by email id."""
    blocks = [format_email(record, hints.get(record.id)) for record in records]
    return f"Classify these {len(records)} emails:\n\n" + "\n\n".join(blocks)
