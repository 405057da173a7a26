"""
Gemini model manager.

One Vertex AI initialization per process; model instances are cached per
system instruction since Gemini binds the instruction to the model object.
"""

from __future__ import annotations

import os
from functools import lru_cache

from sweepy.infrastructure.settings import GEMINI_LOCATION, GEMINI_MODEL, GOOGLE_CLOUD_PROJECT
from sweepy.observability.logging import get_logger

logger = get_logger(__name__)


class GeminiInitializationError(RuntimeError):
    """Raised when the Gemini model cannot be initialized."""


@lru_cache(maxsize=1)
def _init_vertex() -> None:
    # Read env fresh: settings may have been imported before .env was loaded
    project = os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT
    location = os.getenv("GEMINI_LOCATION") or GEMINI_LOCATION or "us-central1"
    if not project:
        raise GeminiInitializationError("GOOGLE_CLOUD_PROJECT not set")

    try:
        import vertexai

        vertexai.init(project=project, location=location)
    except ImportError as e:
        raise GeminiInitializationError(
            "Vertex AI SDK not available. Install google-cloud-aiplatform."
        ) from e
    except Exception as e:
        logger.error("Failed to initialize Vertex AI: %s", e)
        raise GeminiInitializationError(f"Failed to initialize Vertex AI: {e}") from e

    logger.info(
        "Initialized Vertex AI: project=%s, location=%s, model=%s",
        project,
        location,
        GEMINI_MODEL,
    )


@lru_cache(maxsize=8)
def get_gemini_model(system_instruction: str | None = None, model_name: str = GEMINI_MODEL):
    """
    Shared GenerativeModel for a given system instruction.

    Raises:
        GeminiInitializationError: Vertex AI cannot be initialized
    """
    _init_vertex()
    from vertexai.generative_models import GenerativeModel

    if system_instruction is None:
        return GenerativeModel(model_name)
    return GenerativeModel(model_name, system_instruction=system_instruction)


def clear_model_cache() -> None:
    """
    Drop cached models and the Vertex AI init so the next call reinitializes.

    Side Effects:
        - Clears lru caches
    """
    get_gemini_model.cache_clear()
    _init_vertex.cache_clear()
    logger.info("Cleared Gemini model cache")
