"""
Confidence thresholds for the resolution waterfall.

config/sweepy_policy.yaml is the source of truth. The constants below are
read from it once at import time and fall back to hardcoded defaults when the
file (or a key) is missing.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from sweepy.infrastructure.settings import CONFIG_DIR
from sweepy.observability.logging import get_logger

logger = get_logger(__name__)


def _load_policy_config() -> dict[str, Any]:
    """
    Load configuration from sweepy_policy.yaml.

    Side Effects:
        - Reads config/sweepy_policy.yaml from the filesystem
    """
    possible_paths = [
        CONFIG_DIR / "sweepy_policy.yaml",
        Path("config/sweepy_policy.yaml"),
    ]

    for config_path in possible_paths:
        if config_path.exists():
            with open(config_path) as f:
                config = yaml.safe_load(f) or {}
                logger.debug("Loaded confidence policy from %s", config_path)
                return config

    logger.warning("sweepy_policy.yaml not found, using hardcoded defaults")
    return {}


_POLICY_CONFIG = _load_policy_config()
_HEURISTICS_CONFIG = _POLICY_CONFIG.get("heuristics", {})
_CACHE_CONFIG = _POLICY_CONFIG.get("cache", {})
_LLM_CONFIG = _POLICY_CONFIG.get("llm", {})
_FEEDBACK_CONFIG = _POLICY_CONFIG.get("feedback", {})

# Heuristic result at or above this resolves the record
HEURISTIC_CONFIDENCE_MIN: float = float(_HEURISTICS_CONFIG.get("min_confidence", 0.70))

# Sender cache hit at or above this resolves the record; lower hits become LLM hints
CACHE_CONFIDENCE_MIN: float = float(_CACHE_CONFIG.get("min_confidence", 0.85))

# LLM personal/important below this collapse to unknown
LLM_PROTECTED_CONFIDENCE_MIN: float = float(_LLM_CONFIG.get("protected_min_confidence", 0.80))

USER_OVERRIDE_CONFIDENCE: float = float(_FEEDBACK_CONFIG.get("user_override_confidence", 1.0))


def get_thresholds() -> dict[str, float]:
    """Current thresholds, for logging at pipeline start."""
    return {
        "heuristic": HEURISTIC_CONFIDENCE_MIN,
        "cache": CACHE_CONFIDENCE_MIN,
        "llm_protected": LLM_PROTECTED_CONFIDENCE_MIN,
        "user_override": USER_OVERRIDE_CONFIDENCE,
    }
