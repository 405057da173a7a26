"""Sweepy categorization core: heuristics, sender cache and LLM fallback."""

__version__ = "0.1.0"
