"""
External classification service boundary.

The resolver only needs ``complete(prompt, system_instruction, timeout)``.
GeminiClassificationService is the production implementation on Vertex AI;
tests substitute any object with the same method.

Every provider problem leaves this module as LlmTransportFailure so the
resolver has one exception type to retry on.
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass
from typing import Any, Protocol

from sweepy.classification.errors import LlmTransportFailure
from sweepy.config import (
    GEMINI_MAX_TOKENS,
    GEMINI_MODEL,
    GEMINI_TEMPERATURE,
    LLM_MAX_WORKERS,
    LLM_TIMEOUT_SECONDS,
)
from sweepy.llm.gemini import GeminiInitializationError, get_gemini_model
from sweepy.observability.logging import get_logger
from sweepy.observability.telemetry import counter

logger = get_logger(__name__)

# Shared by every call so a hung request holds one of a fixed number of
# threads. A call still queued when its deadline passes is cancelled unsent.
_CALL_EXECUTOR = concurrent.futures.ThreadPoolExecutor(
    max_workers=LLM_MAX_WORKERS, thread_name_prefix="gemini-call"
)


@dataclass(frozen=True)
class LlmCompletion:
    """Raw model text plus token usage, when the provider reports it."""

    text: str
    input_tokens: int | None = None
    output_tokens: int | None = None
    model: str = GEMINI_MODEL
    # Set by providers that bill per call rather than per token
    cost_usd: float | None = None


class ClassificationService(Protocol):
    def complete(
        self, prompt: str, system_instruction: str, timeout: float
    ) -> LlmCompletion: ...


class GeminiClassificationService:
    """Gemini over Vertex AI with JSON output and a hard per-call timeout."""

    def __init__(
        self,
        model_name: str = GEMINI_MODEL,
        max_output_tokens: int = GEMINI_MAX_TOKENS,
        temperature: float = GEMINI_TEMPERATURE,
    ) -> None:
        self.model_name = model_name
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    def ensure_ready(self) -> None:
        """
        Initialize the model eagerly so misconfiguration shows up before work starts.

        Raises:
            GeminiInitializationError: Vertex AI or the model cannot be initialized
        """
        get_gemini_model(None, self.model_name)

    def complete(
        self, prompt: str, system_instruction: str, timeout: float = LLM_TIMEOUT_SECONDS
    ) -> LlmCompletion:
        """
        One generate_content call.

        Side Effects:
            Makes an HTTP request to Vertex AI.

        Raises:
            LlmTransportFailure: timeout, rate limit, provider outage or empty answer
        """
        from google.api_core.exceptions import (
            DeadlineExceeded,
            GoogleAPICallError,
            InternalServerError,
            ResourceExhausted,
            ServiceUnavailable,
        )

        try:
            model = get_gemini_model(system_instruction, self.model_name)
        except GeminiInitializationError as e:
            raise LlmTransportFailure(f"Gemini unavailable: {e}") from e

        generation_config = {
            "temperature": self.temperature,
            "max_output_tokens": self.max_output_tokens,
            "response_mime_type": "application/json",
        }

        # generate_content has no client-side deadline of its own
        future = _CALL_EXECUTOR.submit(
            model.generate_content, prompt, generation_config=generation_config
        )
        try:
            response = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            cancelled = future.cancel()
            counter("llm.timeout")
            logger.warning("Gemini call timed out after %ss (cancelled before send: %s)", timeout, cancelled)
            raise LlmTransportFailure(f"Gemini call timed out after {timeout}s") from e
        except DeadlineExceeded as e:
            counter("llm.timeout")
            raise LlmTransportFailure(f"Gemini deadline exceeded: {e}") from e
        except ResourceExhausted as e:
            counter("llm.rate_limited")
            logger.warning("Gemini rate limited (429): %s", e)
            raise LlmTransportFailure(f"Gemini rate limited: {e}") from e
        except (ServiceUnavailable, InternalServerError) as e:
            counter("llm.service_unavailable")
            logger.warning("Gemini service error: %s", e)
            raise LlmTransportFailure(f"Gemini service error: {e}") from e
        except GoogleAPICallError as e:
            counter("llm.api_error")
            logger.error("Gemini call failed: %s", e)
            raise LlmTransportFailure(f"Gemini call failed: {e}") from e

        try:
            text = response.text
        except ValueError as e:
            # Raised when the candidate was blocked or carries no text part
            raise LlmTransportFailure(f"Gemini returned no text: {e}") from e
        if not text or not text.strip():
            raise LlmTransportFailure("Gemini returned an empty response")

        input_tokens, output_tokens = _usage(response)
        return LlmCompletion(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.model_name,
        )


def _usage(response: Any) -> tuple[int | None, int | None]:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return None, None
    input_tokens = getattr(usage, "prompt_token_count", None)
    output_tokens = getattr(usage, "candidates_token_count", None)
    return (
        int(input_tokens) if input_tokens is not None else None,
        int(output_tokens) if output_tokens is not None else None,
    )
