"""
Third resolution tier: batched LLM classification.

Records still unresolved after heuristics and the sender cache are sent to the
classification service in batches of at most LLM_BATCH_SIZE. Each batch ends
in an explicit LlmBatchOutcome instead of an exception:

    success  every record answered
    partial  some records missing or invalid; only those degrade
    failure  both attempts failed (or the circuit is open); all degrade
    skipped  never started because the invocation was cancelled

Degraded records are ``unknown`` with confidence 0.0. Cost is accounted per
call from the provider's token usage, or estimated from batch size when the
provider reports none.
"""

from __future__ import annotations

import json
import re
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sweepy.classification.errors import (
    LlmBatchFailure,
    LlmMalformedResponse,
    LlmPartialResponse,
    LlmTransportFailure,
    SweepyError,
)
from sweepy.config import (
    GEMINI_INPUT_COST_PER_1M,
    GEMINI_OUTPUT_COST_PER_1M,
    LLM_BATCH_SIZE,
    LLM_EST_INPUT_TOKENS_PER_EMAIL,
    LLM_EST_OUTPUT_TOKENS_PER_EMAIL,
    LLM_EST_PROMPT_OVERHEAD_TOKENS,
    LLM_MAX_ATTEMPTS,
    LLM_MAX_WORKERS,
    LLM_REASONING_MAX_CHARS,
    LLM_RETRY_MAX_WAIT,
    LLM_RETRY_MIN_WAIT,
    LLM_TIMEOUT_SECONDS,
)
from sweepy.contracts.categories import PROTECTED_CATEGORIES, Category
from sweepy.infrastructure.circuitbreaker import CircuitBreaker
from sweepy.llm.client import ClassificationService, LlmCompletion
from sweepy.llm.gemini import GeminiInitializationError
from sweepy.llm.prompts import build_batch_prompt, load_prompt
from sweepy.observability.confidence import LLM_PROTECTED_CONFIDENCE_MIN
from sweepy.observability.logging import get_logger
from sweepy.observability.telemetry import counter, log_event, time_block
from sweepy.storage.models import EmailRecord

logger = get_logger(__name__)


class BatchStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"
    SKIPPED = "skipped"


class LlmResolution(NamedTuple):
    category: Category
    confidence: float
    reasoning: str
    degraded: bool = False


@dataclass(frozen=True)
class LlmBatchOutcome:
    batch_index: int
    email_ids: tuple[str, ...]
    status: BatchStatus
    resolutions: Mapping[str, LlmResolution]
    missing: tuple[str, ...] = ()
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0
    attempts: int = 0
    error: SweepyError | None = None

    @property
    def started(self) -> bool:
        return self.status != BatchStatus.SKIPPED


class _LlmItem(BaseModel):
    """One entry of the model's ``results`` array."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email_id: str = Field(alias="emailId", min_length=1)
    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""

    @field_validator("email_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("category", mode="before")
    @classmethod
    def _lower_category(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("reasoning", mode="before")
    @classmethod
    def _clip_reasoning(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)[:LLM_REASONING_MAX_CHARS]


def estimate_tokens(record_count: int) -> tuple[int, int]:
    """Prompt/answer token estimate for a batch of ``record_count`` emails."""
    input_tokens = record_count * LLM_EST_INPUT_TOKENS_PER_EMAIL + LLM_EST_PROMPT_OVERHEAD_TOKENS
    output_tokens = record_count * LLM_EST_OUTPUT_TOKENS_PER_EMAIL
    return input_tokens, output_tokens


def token_cost(
    input_tokens: int,
    output_tokens: int,
    input_price_per_1m: float = GEMINI_INPUT_COST_PER_1M,
    output_price_per_1m: float = GEMINI_OUTPUT_COST_PER_1M,
) -> float:
    return (input_tokens * input_price_per_1m + output_tokens * output_price_per_1m) / 1_000_000


def extract_json(text: str) -> Any:
    """Parse model output as JSON, repairing common LLM formatting slips.

    Handles:
    - Markdown code fences
    - Prose before or after the JSON value
    - Trailing commas before ``}`` or ``]``

    Raises:
        json.JSONDecodeError: nothing parseable could be recovered
    """
    text = re.sub(r"```(?:json)?\s*", "", text).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("JSON parse error (attempting repair): %s", e)

        match = re.search(r"[\{\[].*[\}\]]", text, re.DOTALL)
        if not match:
            raise
        candidate = match.group(0)
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass

        repaired = re.sub(r",\s*([\}\]])", r"\1", candidate)
        try:
            result = json.loads(repaired)
            logger.info("JSON repair succeeded (trailing commas removed)")
            return result
        except json.JSONDecodeError as repair_error:
            logger.warning("JSON repair failed: %s", repair_error)
        raise


@dataclass
class _CallLedger:
    """Cost and usage across the attempts of one batch."""

    calls: int = 0
    cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0

    def charge(self, completion: LlmCompletion, record_count: int) -> None:
        est_in, est_out = estimate_tokens(record_count)
        input_tokens = completion.input_tokens if completion.input_tokens is not None else est_in
        output_tokens = completion.output_tokens if completion.output_tokens is not None else est_out
        self.calls += 1
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        cost = completion.cost_usd
        if cost is not None and cost < 0:
            counter("llm.negative_cost_rejected")
            logger.warning("Ignoring negative provider cost %s; using token pricing", cost)
            cost = None
        self.cost_usd += cost if cost is not None else token_cost(input_tokens, output_tokens)


@dataclass
class LlmResolver:
    """
    Batches unresolved records through the classification service.

    ``sleep_fn`` is the wait between the two attempts; tests pass a no-op.
    """

    service: ClassificationService
    batch_size: int = LLM_BATCH_SIZE
    max_attempts: int = LLM_MAX_ATTEMPTS
    max_workers: int = LLM_MAX_WORKERS
    timeout_seconds: float = LLM_TIMEOUT_SECONDS
    protected_floor: float = LLM_PROTECTED_CONFIDENCE_MIN
    breaker: CircuitBreaker = field(default_factory=lambda: CircuitBreaker(stage="llm"))
    sleep_fn: Callable[[float], None] = time.sleep
    system_instruction: str = field(default_factory=load_prompt)

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    # -- availability ----------------------------------------------------

    def available(self) -> bool:
        """Whether the service can be used at all (credentials, SDK, project)."""
        ensure_ready = getattr(self.service, "ensure_ready", None)
        if ensure_ready is None:
            return True
        try:
            ensure_ready()
        except (GeminiInitializationError, LlmTransportFailure) as exc:
            counter("llm.unavailable")
            logger.error("LLM service unavailable: %s", exc)
            return False
        return True

    # -- batching --------------------------------------------------------

    def chunk(self, records: Sequence[EmailRecord]) -> list[list[EmailRecord]]:
        return [
            list(records[start : start + self.batch_size])
            for start in range(0, len(records), self.batch_size)
        ]

    def resolve(
        self,
        records: Sequence[EmailRecord],
        hints: Mapping[str, str] | None = None,
        cancel_event: threading.Event | None = None,
        on_batch_done: Callable[[LlmBatchOutcome], None] | None = None,
    ) -> list[LlmBatchOutcome]:
        """
        Resolve every record, at most ``max_workers`` batches in flight.

        Once ``cancel_event`` is set no new batch is submitted; batches already
        running finish normally and keep their cost. The rest come back as
        ``skipped`` outcomes.

        Returns:
            One outcome per batch, in batch order.
        """
        hints = hints or {}
        batches = self.chunk(records)
        if not batches:
            return []

        outcomes: dict[int, LlmBatchOutcome] = {}
        pending: deque[tuple[int, list[EmailRecord]]] = deque(enumerate(batches))
        workers = max(1, min(self.max_workers, len(batches)))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sweepy-llm") as executor:
            in_flight: dict[Future[LlmBatchOutcome], int] = {}
            while pending or in_flight:
                while pending and len(in_flight) < workers and not _is_set(cancel_event):
                    index, batch = pending.popleft()
                    in_flight[executor.submit(self.resolve_batch, batch, hints, index)] = index

                if pending and _is_set(cancel_event):
                    counter("llm.batch.cancelled", len(pending))
                    log_event("llm.cancelled", skipped_batches=len(pending))
                    while pending:
                        index, batch = pending.popleft()
                        outcomes[index] = self._skipped(batch, index)

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    index = in_flight.pop(future)
                    outcomes[index] = future.result()
                    if on_batch_done is not None:
                        on_batch_done(outcomes[index])

        return [outcomes[index] for index in range(len(batches))]

    def resolve_batch(
        self,
        records: Sequence[EmailRecord],
        hints: Mapping[str, str] | None = None,
        batch_index: int = 0,
    ) -> LlmBatchOutcome:
        """
        Classify one batch with one retry on transport or format failure.

        Side Effects:
            - Calls the classification service (at most ``max_attempts`` times)
            - Updates the circuit breaker
            - Emits llm.batch telemetry
        """
        if len(records) > self.batch_size:
            raise ValueError(f"batch of {len(records)} exceeds batch_size={self.batch_size}")
        hints = hints or {}
        email_ids = tuple(record.id for record in records)

        if not self.breaker.allow_request():
            log_event("llm.batch.circuit_open", batch=batch_index, size=len(records))
            error = LlmBatchFailure("circuit breaker open", attempts=0)
            return self._failed(email_ids, batch_index, _CallLedger(), 0, error)

        prompt = build_batch_prompt(records, hints)
        ledger = _CallLedger()
        attempts = 0

        def attempt() -> dict[str, LlmResolution]:
            nonlocal attempts
            attempts += 1
            completion = self.service.complete(prompt, self.system_instruction, self.timeout_seconds)
            ledger.charge(completion, len(records))
            return self._parse(completion.text, email_ids)

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=LLM_RETRY_MIN_WAIT, min=LLM_RETRY_MIN_WAIT, max=LLM_RETRY_MAX_WAIT),
            retry=retry_if_exception_type(LlmTransportFailure),
            sleep=self.sleep_fn,
            before_sleep=lambda state: self._log_retry(state, batch_index),
            reraise=True,
        )

        try:
            with time_block("llm.batch"):
                resolutions = retrying(attempt)
        except LlmTransportFailure as exc:
            self.breaker.record_failure()
            failure = LlmBatchFailure(
                f"batch {batch_index} failed after {attempts} attempt(s): {exc}",
                attempts=attempts,
                cause=exc,
            )
            logger.error("%s", failure)
            return self._failed(email_ids, batch_index, ledger, attempts, failure)
        except Exception as exc:
            # Unexpected service bug: degrade the batch rather than fail the invocation
            self.breaker.record_failure()
            logger.exception("LLM batch %s raised unexpectedly", batch_index)
            failure = LlmBatchFailure(f"batch {batch_index} error: {exc}", attempts=attempts, cause=exc)
            return self._failed(email_ids, batch_index, ledger, attempts, failure)

        self.breaker.record_success()
        return self._finish(email_ids, batch_index, resolutions, ledger, attempts)

    # -- internals -------------------------------------------------------

    def _parse(self, text: str, email_ids: tuple[str, ...]) -> dict[str, LlmResolution]:
        """
        Validate the model's answer item by item.

        Raises:
            LlmMalformedResponse: not JSON, no ``results`` list, or no usable item
        """
        try:
            payload = extract_json(text)
        except json.JSONDecodeError as exc:
            counter("llm.malformed")
            raise LlmMalformedResponse(f"unparseable LLM response: {exc}") from exc

        items = payload.get("results") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            counter("llm.malformed")
            raise LlmMalformedResponse("LLM response has no results list")

        wanted = set(email_ids)
        resolutions: dict[str, LlmResolution] = {}
        for raw in items:
            try:
                item = _LlmItem.model_validate(raw)
            except ValidationError as exc:
                counter("llm.item_invalid")
                logger.warning("Dropping invalid LLM result item: %s", exc.errors()[:1])
                continue
            if item.email_id not in wanted:
                counter("llm.item_unexpected_id")
                continue
            if item.email_id in resolutions:
                continue
            resolutions[item.email_id] = self._apply_floor(item)

        if email_ids and not resolutions:
            counter("llm.malformed")
            raise LlmMalformedResponse("LLM response contained no usable results")
        return resolutions

    def _apply_floor(self, item: _LlmItem) -> LlmResolution:
        if item.category in PROTECTED_CATEGORIES and item.confidence < self.protected_floor:
            counter("llm.protected_floor")
            return LlmResolution(
                Category.UNKNOWN,
                item.confidence,
                f"Low-confidence {item.category.value} treated as unknown: {item.reasoning}"[
                    :LLM_REASONING_MAX_CHARS
                ],
            )
        return LlmResolution(item.category, item.confidence, item.reasoning)

    def _finish(
        self,
        email_ids: tuple[str, ...],
        batch_index: int,
        resolutions: dict[str, LlmResolution],
        ledger: _CallLedger,
        attempts: int,
    ) -> LlmBatchOutcome:
        missing = tuple(email_id for email_id in email_ids if email_id not in resolutions)
        error: SweepyError | None = None
        status = BatchStatus.SUCCESS
        if missing:
            status = BatchStatus.PARTIAL
            error = LlmPartialResponse(list(missing))
            counter("llm.partial_missing", len(missing))
            logger.warning("LLM batch %s missing %d of %d results", batch_index, len(missing), len(email_ids))
            for email_id in missing:
                resolutions[email_id] = _degraded("Missing from LLM response")

        counter(f"llm.batch.{status.value}")
        log_event(
            "llm.batch",
            batch=batch_index,
            status=status.value,
            size=len(email_ids),
            attempts=attempts,
            cost_usd=round(ledger.cost_usd, 6),
        )
        return LlmBatchOutcome(
            batch_index=batch_index,
            email_ids=email_ids,
            status=status,
            resolutions={email_id: resolutions[email_id] for email_id in email_ids},
            missing=missing,
            cost_usd=ledger.cost_usd,
            input_tokens=ledger.input_tokens,
            output_tokens=ledger.output_tokens,
            calls=ledger.calls,
            attempts=attempts,
            error=error,
        )

    def _failed(
        self,
        email_ids: tuple[str, ...],
        batch_index: int,
        ledger: _CallLedger,
        attempts: int,
        error: LlmBatchFailure,
    ) -> LlmBatchOutcome:
        counter("llm.batch.failure")
        log_event(
            "llm.batch",
            batch=batch_index,
            status=BatchStatus.FAILURE.value,
            size=len(email_ids),
            attempts=attempts,
            cost_usd=round(ledger.cost_usd, 6),
        )
        reason = "LLM unavailable (circuit breaker open)" if attempts == 0 else "LLM classification failed"
        return LlmBatchOutcome(
            batch_index=batch_index,
            email_ids=email_ids,
            status=BatchStatus.FAILURE,
            resolutions={email_id: _degraded(reason) for email_id in email_ids},
            missing=email_ids,
            cost_usd=ledger.cost_usd,
            input_tokens=ledger.input_tokens,
            output_tokens=ledger.output_tokens,
            calls=ledger.calls,
            attempts=attempts,
            error=error,
        )

    def _skipped(self, records: Sequence[EmailRecord], batch_index: int) -> LlmBatchOutcome:
        email_ids = tuple(record.id for record in records)
        return LlmBatchOutcome(
            batch_index=batch_index,
            email_ids=email_ids,
            status=BatchStatus.SKIPPED,
            resolutions={email_id: _degraded("Cancelled before classification") for email_id in email_ids},
            missing=email_ids,
        )

    @staticmethod
    def _log_retry(state: RetryCallState, batch_index: int) -> None:
        counter("llm.retry")
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "LLM batch %s attempt %d failed, retrying: %s",
            batch_index,
            state.attempt_number,
            exc,
        )


def _degraded(reason: str) -> LlmResolution:
    return LlmResolution(Category.UNKNOWN, 0.0, reason, degraded=True)


def _is_set(event: threading.Event | None) -> bool:
    return event is not None and event.is_set()
