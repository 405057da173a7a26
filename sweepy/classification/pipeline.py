"""
Categorization orchestrator.

Implements the resolution waterfall:
    HeuristicClassifier → SenderReputationCache → LlmResolver

Each record walks a small state machine
(Unclassified → HeuristicTried → CacheTried → LlmQueued → Resolved) and
stops at the first tier that is confident enough. A sender the user has
corrected (``user_override`` in the cache) wins over every other tier.

Guarantees to the caller:
    - one result per input record, in input order
    - per-record and per-batch failures degrade to ``unknown``, never raise
    - personal/important results carry exactly ``[keep]``
    - PipelineMisconfigured (carrying every result) is the only exception,
      raised when neither the LLM nor the cache can be used for leftovers
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

from pydantic import ValidationError

from sweepy.classification.errors import CacheUnavailable, InvalidRecord, PipelineMisconfigured
from sweepy.classification.heuristics import HeuristicClassifier, HeuristicResult
from sweepy.classification.llm_resolver import BatchStatus, LlmBatchOutcome, LlmResolver
from sweepy.classification.suggested_actions import KEEP_PROTECTED, build_suggested_actions
from sweepy.config import ENV, MAX_RECORDS_PER_INVOCATION, USE_LLM_FALLBACK
from sweepy.contracts.categories import Category, ResolutionSource, is_protected
from sweepy.observability.confidence import CACHE_CONFIDENCE_MIN, get_thresholds
from sweepy.observability.logging import get_logger
from sweepy.observability.telemetry import counter, log_event, time_block
from sweepy.storage.models import (
    BatchStats,
    CategorizationResult,
    EmailRecord,
    PipelineResult,
    SenderCacheEntry,
)
from sweepy.storage.sender_cache import CacheRead, SenderReputationCache
from sweepy.utils.redaction import redact_address

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]


class ResolutionStage(IntEnum):
    UNCLASSIFIED = 0
    HEURISTIC_TRIED = 1
    CACHE_TRIED = 2
    LLM_QUEUED = 3
    RESOLVED = 4


@dataclass
class _RecordState:
    index: int
    email_id: str
    record: EmailRecord | None
    stage: ResolutionStage = ResolutionStage.UNCLASSIFIED
    category: Category = Category.UNKNOWN
    confidence: float = 0.0
    source: ResolutionSource | None = None
    reasoning: str | None = None
    hint: str | None = None
    cache_version: int | None = None

    def advance(self, stage: ResolutionStage) -> None:
        if stage <= self.stage:
            raise RuntimeError(f"{self.email_id}: cannot move from {self.stage.name} to {stage.name}")
        self.stage = stage

    def resolve(
        self,
        category: Category,
        confidence: float,
        source: ResolutionSource,
        reasoning: str | None = None,
    ) -> None:
        self.advance(ResolutionStage.RESOLVED)
        self.category = category
        self.confidence = confidence
        self.source = source
        self.reasoning = reasoning

    @property
    def resolved(self) -> bool:
        return self.stage == ResolutionStage.RESOLVED


@dataclass
class _StatsAccumulator:
    total: int = 0
    invalid_records: int = 0
    llm_cost_usd: float = 0.0
    llm_calls: int = 0
    llm_input_tokens: int = 0
    llm_output_tokens: int = 0
    by_source: Counter[ResolutionSource] = field(default_factory=Counter)
    by_category: Counter[str] = field(default_factory=Counter)

    def add_outcome(self, outcome: LlmBatchOutcome) -> None:
        self.llm_cost_usd += outcome.cost_usd
        self.llm_calls += outcome.calls
        self.llm_input_tokens += outcome.input_tokens
        self.llm_output_tokens += outcome.output_tokens

    def freeze(self, results: Iterable[CategorizationResult]) -> BatchStats:
        for result in results:
            self.by_source[result.source] += 1
            self.by_category[result.category.value] += 1
        return BatchStats(
            total=self.total,
            resolved_by_heuristic=self.by_source[ResolutionSource.HEURISTIC],
            resolved_by_cache=self.by_source[ResolutionSource.CACHE]
            + self.by_source[ResolutionSource.USER_OVERRIDE],
            resolved_by_llm=self.by_source[ResolutionSource.LLM],
            llm_cost_usd=self.llm_cost_usd,
            llm_calls=self.llm_calls,
            llm_input_tokens=self.llm_input_tokens,
            llm_output_tokens=self.llm_output_tokens,
            invalid_records=self.invalid_records,
            category_counts=dict(self.by_category),
        )


class ResolutionPipeline:
    """
    Runs the waterfall for one user's batch of records.

    Example:
        >>> pipeline = ResolutionPipeline(llm_resolver=LlmResolver(service=my_service))
        >>> outcome = pipeline.categorize(records, user_id="user-123")
        >>> outcome.stats.resolved_by_heuristic
        12
    """

    def __init__(
        self,
        heuristics: HeuristicClassifier | None = None,
        cache: SenderReputationCache | None = None,
        llm_resolver: LlmResolver | None = None,
        cache_threshold: float = CACHE_CONFIDENCE_MIN,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.heuristics = heuristics or HeuristicClassifier()
        self.cache = cache
        self.llm_resolver = llm_resolver
        self.cache_threshold = cache_threshold
        self._now = now_fn or (lambda: datetime.now(timezone.utc))
        logger.info(
            "ResolutionPipeline initialized (cache=%s, llm=%s, thresholds=%s)",
            "on" if cache is not None else "off",
            "on" if llm_resolver is not None else "off",
            get_thresholds(),
        )

    def categorize(
        self,
        records: Sequence[EmailRecord | Mapping[str, Any]],
        user_id: str,
        *,
        cancel_event: threading.Event | None = None,
        skip_cache: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineResult:
        """
        Categorize ``records`` for ``user_id``.

        Args:
            records: EmailRecord models or raw wire mappings; invalid ones
                resolve to unknown/0 instead of failing the call.
            cancel_event: once set, no further LLM batch starts. Records in
                unstarted batches come back unknown/0 from the ``llm`` tier.
            skip_cache: ignore cached sender verdicts (user corrections
                included) for this run. LLM answers are still written back,
                conditional on the version read at the start.
            on_progress: called with (resolved_so_far, total) after the
                cheap tiers and after every LLM batch.

        Returns:
            PipelineResult with one CategorizationResult per input record.

        Side Effects:
            - Reads and writes the sender cache
            - Calls the classification service for unresolved records
            - Emits pipeline.* telemetry

        Raises:
            PipelineMisconfigured: records needed the LLM tier, the LLM service
                is unusable and the cache is unavailable too.
        """
        stats = _StatsAccumulator(total=len(records))
        if len(records) > MAX_RECORDS_PER_INVOCATION:
            logger.warning(
                "categorize called with %d records (expected <= %d); processing all",
                len(records),
                MAX_RECORDS_PER_INVOCATION,
            )
            counter("pipeline.oversized_input")

        with time_block("pipeline.categorize"):
            states = self._validate(records, stats)
            valid = [state for state in states if not state.resolved]

            heuristic_results = self._run_heuristics(valid)
            cache_reads, cache_ok = self._read_cache(valid, user_id)
            queued = self._decide(valid, heuristic_results, cache_reads, skip_cache)
            self._report(on_progress, states)

            if queued:
                self._run_llm(queued, user_id, states, stats, cache_ok, cancel_event, on_progress)

            results = [self._build_result(state) for state in states]
            final_stats = stats.freeze(results)

        log_event(
            "pipeline.complete",
            total=final_stats.total,
            heuristic=final_stats.resolved_by_heuristic,
            cache=final_stats.resolved_by_cache,
            llm=final_stats.resolved_by_llm,
            invalid=final_stats.invalid_records,
            cost_usd=round(final_stats.llm_cost_usd, 6),
        )
        return PipelineResult(results=tuple(results), stats=final_stats)

    # -- tiers -----------------------------------------------------------

    def _validate(
        self, records: Sequence[EmailRecord | Mapping[str, Any]], stats: _StatsAccumulator
    ) -> list[_RecordState]:
        states: list[_RecordState] = []
        for index, raw in enumerate(records):
            try:
                record = _coerce_record(raw, index)
            except InvalidRecord as exc:
                counter("pipeline.invalid_record")
                logger.warning("Invalid record at position %d: %s", index, exc)
                stats.invalid_records += 1
                state = _RecordState(index, exc.email_id or f"invalid-{index}", None)
                state.resolve(Category.UNKNOWN, 0.0, ResolutionSource.HEURISTIC, f"Invalid record: {exc}")
                states.append(state)
                continue
            states.append(_RecordState(index, record.id, record))
        return states

    def _run_heuristics(self, states: list[_RecordState]) -> dict[int, HeuristicResult]:
        results: dict[int, HeuristicResult] = {}
        for state in states:
            results[state.index] = self.heuristics.classify(_record_of(state))
            state.advance(ResolutionStage.HEURISTIC_TRIED)
        return results

    def _read_cache(
        self, states: list[_RecordState], user_id: str
    ) -> tuple[dict[str, CacheRead], bool]:
        """
        Read the cache once per distinct sender.

        Runs even when the caller skips the cache, because the versions read
        here guard the LLM write-back against corrections made meanwhile.

        Returns:
            (reads keyed by normalized address, whether the cache is usable)
        """
        if self.cache is None:
            return {}, False
        if not states:
            return {}, True
        senders = [state.record.sender_address for state in states if state.record is not None]
        try:
            return self.cache.lookup_many(user_id, senders), True
        except CacheUnavailable as exc:
            counter("pipeline.cache_unavailable")
            logger.warning("Sender cache unavailable, treating as miss: %s", exc)
            return {}, False

    def _decide(
        self,
        states: list[_RecordState],
        heuristic_results: Mapping[int, HeuristicResult],
        cache_reads: Mapping[str, CacheRead],
        skip_cache: bool,
    ) -> list[_RecordState]:
        queued: list[_RecordState] = []
        for state in states:
            heuristic = heuristic_results[state.index]
            read = cache_reads.get(_record_of(state).sender_address)
            state.cache_version = read.version if read else None
            entry = read.entry if read and not skip_cache else None

            if entry is not None and entry.is_user_override:
                state.advance(ResolutionStage.CACHE_TRIED)
                state.resolve(
                    entry.category,
                    entry.confidence,
                    ResolutionSource.USER_OVERRIDE,
                    "Sender category set by user correction",
                )
                continue

            if self.heuristics.is_resolved(heuristic):
                state.resolve(
                    heuristic.category,
                    heuristic.confidence,
                    ResolutionSource.HEURISTIC,
                    f"Header rule: {heuristic.rule}",
                )
                continue

            state.advance(ResolutionStage.CACHE_TRIED)
            if (
                entry is not None
                and entry.category != Category.UNKNOWN
                and entry.confidence >= self.cache_threshold
            ):
                state.resolve(
                    entry.category,
                    entry.confidence,
                    ResolutionSource.CACHE,
                    f"Cached from previous {entry.source.value} classification",
                )
                continue

            state.hint = _hint(heuristic, entry)
            state.advance(ResolutionStage.LLM_QUEUED)
            queued.append(state)

        counter("pipeline.llm_queued", len(queued))
        return queued

    def _run_llm(
        self,
        queued: list[_RecordState],
        user_id: str,
        states: list[_RecordState],
        stats: _StatsAccumulator,
        cache_ok: bool,
        cancel_event: threading.Event | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        if self.llm_resolver is None or not self.llm_resolver.available():
            self._llm_unavailable(queued, states, stats, cache_ok)
            return

        by_id: dict[str, list[_RecordState]] = {}
        for state in queued:
            by_id.setdefault(state.email_id, []).append(state)
        hints = {state.email_id: state.hint for state in queued if state.hint}
        records = [state.record for state in queued if state.record is not None]
        cache_writable = cache_ok and self.cache is not None

        def on_batch_done(outcome: LlmBatchOutcome) -> None:
            nonlocal cache_writable
            for email_id in outcome.email_ids:
                for state in by_id.get(email_id, []):
                    if state.resolved:
                        continue
                    resolution = outcome.resolutions[email_id]
                    state.resolve(
                        resolution.category,
                        resolution.confidence,
                        ResolutionSource.LLM,
                        resolution.reasoning,
                    )
                    if cache_writable and not resolution.degraded:
                        cache_writable = self._write_back(user_id, state)
            self._report(on_progress, states)

        outcomes = self.llm_resolver.resolve(
            records, hints, cancel_event=cancel_event, on_batch_done=on_batch_done
        )

        for outcome in outcomes:
            stats.add_outcome(outcome)
            if outcome.status == BatchStatus.SKIPPED:
                # Never dispatched, so on_batch_done was not called for it
                on_batch_done(outcome)

    def _write_back(self, user_id: str, state: _RecordState) -> bool:
        """
        Remember a confident LLM verdict for the sender.

        The write is conditional on the version read before dispatch, so a
        correction or rejection that landed meanwhile is never overwritten.

        Returns:
            False once the cache has failed, to stop further writes this run.
        """
        if state.category == Category.UNKNOWN or state.record is None or self.cache is None:
            return True
        entry = SenderCacheEntry(
            category=state.category,
            confidence=state.confidence,
            source=ResolutionSource.LLM,
            cached_at=self._now(),
        )
        try:
            self.cache.upsert(
                user_id, state.record.sender_address, entry, expected_version=state.cache_version
            )
        except CacheUnavailable as exc:
            counter("pipeline.cache_write_failed")
            logger.warning(
                "Could not write LLM result for %s to sender cache: %s",
                redact_address(state.record.sender_address),
                exc,
            )
            return False
        return True

    def _llm_unavailable(
        self,
        queued: list[_RecordState],
        states: list[_RecordState],
        stats: _StatsAccumulator,
        cache_ok: bool,
    ) -> None:
        counter("pipeline.llm_unavailable")
        for state in queued:
            state.resolve(Category.UNKNOWN, 0.0, ResolutionSource.LLM, "No classification service available")

        if cache_ok:
            logger.error(
                "LLM service unavailable; %d record(s) degraded to unknown", len(queued)
            )
            return

        results = [self._build_result(state) for state in states]
        final_stats = stats.freeze(results)
        log_event("pipeline.misconfigured", unresolved=len(queued), total=len(states))
        raise PipelineMisconfigured(
            "No classification service reachable and sender cache unavailable",
            results=results,
            stats=final_stats,
            details={"unresolved": len(queued)},
        )

    # -- output ----------------------------------------------------------

    def _build_result(self, state: _RecordState) -> CategorizationResult:
        if not state.resolved or state.source is None:
            raise RuntimeError(f"{state.email_id}: built a result before resolution")
        actions = build_suggested_actions(state.category, state.record, self._now())
        result = CategorizationResult(
            email_id=state.email_id,
            category=state.category,
            confidence=state.confidence,
            source=state.source,
            reasoning=state.reasoning,
            suggested_actions=actions,
        )
        return enforce_protection(result)

    @staticmethod
    def _report(on_progress: ProgressCallback | None, states: list[_RecordState]) -> None:
        if on_progress is None:
            return
        on_progress(sum(1 for state in states if state.resolved), len(states))


def enforce_protection(result: CategorizationResult) -> CategorizationResult:
    """Force ``[keep]`` onto personal/important results, whatever a tier proposed."""
    if not is_protected(result.category):
        return result
    if result.suggested_actions == (KEEP_PROTECTED,):
        return result
    counter("pipeline.protection_enforced")
    logger.warning("Replaced non-keep actions on protected result %s", result.email_id)
    return result.model_copy(update={"suggested_actions": (KEEP_PROTECTED,)})


def _record_of(state: _RecordState) -> EmailRecord:
    if state.record is None:
        raise RuntimeError(f"{state.email_id}: invalid record reached a resolution tier")
    return state.record


def _coerce_record(raw: EmailRecord | Mapping[str, Any], index: int) -> EmailRecord:
    if isinstance(raw, EmailRecord):
        return raw
    email_id = None
    if isinstance(raw, Mapping):
        raw_id = raw.get("id")
        email_id = str(raw_id) if raw_id not in (None, "") else None
    try:
        return EmailRecord.model_validate(raw)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "record" for err in exc.errors())
        raise InvalidRecord(f"validation failed ({fields})", email_id=email_id) from exc


def _hint(heuristic: HeuristicResult, entry: SenderCacheEntry | None) -> str | None:
    parts = []
    if entry is not None and entry.category != Category.UNKNOWN:
        parts.append(
            f"sender previously classified as {entry.category.value} "
            f"(confidence {entry.confidence:.2f})"
        )
    if heuristic.category != Category.UNKNOWN:
        parts.append(
            f"header rules suggest {heuristic.category.value} (confidence {heuristic.confidence:.2f})"
        )
    return "; ".join(parts) or None


def get_pipeline() -> ResolutionPipeline:
    """Get or create the process-wide pipeline (Gemini + in-memory cache)."""
    global _pipeline_instance
    if _pipeline_instance is None:
        resolver = None
        if USE_LLM_FALLBACK:
            from sweepy.llm.client import GeminiClassificationService

            resolver = LlmResolver(service=GeminiClassificationService())
        _pipeline_instance = ResolutionPipeline(cache=SenderReputationCache(), llm_resolver=resolver)
        logger.info("Created shared pipeline for env=%s (llm=%s)", ENV, USE_LLM_FALLBACK)
    return _pipeline_instance


_pipeline_instance: ResolutionPipeline | None = None
