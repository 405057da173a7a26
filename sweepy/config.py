"""Centralized configuration for the categorization pipeline.

Re-exports everything from sweepy.infrastructure.settings, then adds typed
constants for each resolution tier. Environment variable overrides use safe
defaults so the pipeline runs without extra configuration. Confidence
thresholds are loaded from config/sweepy_policy.yaml by
sweepy.observability.confidence.
"""

from __future__ import annotations

import os

from sweepy.infrastructure.settings import *  # noqa: F401, F403

# --- Invocation ---
MAX_RECORDS_PER_INVOCATION: int = int(os.getenv("SWEEPY_MAX_RECORDS", "50"))
SUBJECT_MAX_CHARS: int = 200
SNIPPET_MAX_CHARS: int = 100

# --- Sender cache ---
SENDER_CACHE_TTL_SECONDS: int = int(os.getenv("SWEEPY_CACHE_TTL", str(30 * 24 * 60 * 60)))
SENDER_CACHE_MAX_ENTRIES: int = int(os.getenv("SWEEPY_CACHE_MAX_ENTRIES", "10000"))
SENDER_CACHE_DECAY_PER_DAY: float = 0.002
SENDER_CACHE_MAX_DECAY: float = 0.05

# --- LLM ---
LLM_BATCH_SIZE: int = int(os.getenv("SWEEPY_LLM_BATCH_SIZE", "50"))
LLM_MAX_ATTEMPTS: int = 2
LLM_RETRY_MIN_WAIT: float = float(os.getenv("SWEEPY_LLM_RETRY_MIN_WAIT", "1.0"))
LLM_RETRY_MAX_WAIT: float = float(os.getenv("SWEEPY_LLM_RETRY_MAX_WAIT", "8.0"))
LLM_TIMEOUT_SECONDS: int = int(os.getenv("SWEEPY_LLM_TIMEOUT", "30"))
LLM_MAX_WORKERS: int = int(os.getenv("SWEEPY_LLM_MAX_WORKERS", "4"))
LLM_REASONING_MAX_CHARS: int = 200

# Token estimates used when the response carries no usage metadata
LLM_EST_INPUT_TOKENS_PER_EMAIL: int = 200
LLM_EST_PROMPT_OVERHEAD_TOKENS: int = 500
LLM_EST_OUTPUT_TOKENS_PER_EMAIL: int = 50

# --- Circuit breaker ---
CIRCUIT_FAIL_MAX: int = int(os.getenv("SWEEPY_CIRCUIT_FAIL_MAX", "3"))
CIRCUIT_RESET_SECONDS: float = float(os.getenv("SWEEPY_CIRCUIT_RESET_SECONDS", "60"))

# --- Suggested actions ---
TRANSACTIONAL_ARCHIVE_AFTER_DAYS: int = 30
