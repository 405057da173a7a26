"""
Error taxonomy for the categorization pipeline.

Per-record and per-batch failures degrade to ``unknown`` inside the pipeline
and are surfaced through telemetry; only PipelineMisconfigured escapes
``categorize``. The LLM tier returns explicit batch outcomes, so
LlmPartialResponse and LlmBatchFailure travel as the ``error`` of an outcome
rather than being raised to the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sweepy.storage.models import BatchStats, CategorizationResult


class SweepyError(RuntimeError):
    """Base class for pipeline errors."""


class InvalidRecord(SweepyError):
    """An input record failed validation; it resolves to unknown/0."""

    def __init__(self, message: str, email_id: str | None = None):
        super().__init__(message)
        self.email_id = email_id


class LlmTransportFailure(SweepyError):
    """Timeout, connection, rate-limit or provider error. Retried once."""


class LlmMalformedResponse(LlmTransportFailure):
    """The model answered but the payload was not usable JSON. Retried once."""


class LlmPartialResponse(SweepyError):
    """The response omitted some records; only those degrade."""

    def __init__(self, missing_ids: list[str]):
        super().__init__(f"LLM response missing {len(missing_ids)} record(s)")
        self.missing_ids = missing_ids


class LlmBatchFailure(SweepyError):
    """Both attempts failed; every record in the batch degrades."""

    def __init__(self, message: str, attempts: int, cause: BaseException | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class CacheUnavailable(SweepyError):
    """The sender store could not be reached; treated as a cache miss."""


class PipelineMisconfigured(SweepyError):
    """
    Neither the LLM service nor the cache is usable while records remain
    unresolved. Carries the full result set so callers can still show the
    heuristic answers.
    """

    def __init__(
        self,
        message: str,
        results: list[CategorizationResult],
        stats: BatchStats,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.results = results
        self.stats = stats
        self.details = details or {}
