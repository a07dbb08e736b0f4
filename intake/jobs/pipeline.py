from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from opentelemetry import trace

from intake.core.config import Settings
from intake.schemas.candidates import IntakeRecord, NormalizedCandidate, QualificationResult, RawCandidate
from intake.schemas.runs import PipelineRunResult, PipelineStage, RunStatus
from intake.services.contracts import (
    CorpusLookup,
    Sink,
    SinkConflictError,
    SinkError,
    SinkUnavailableError,
    SourceAdapter,
    StageInterrupted,
)
from intake.services.dedupe import DeduplicationEngine
from intake.services.fetcher import CircuitOpenError, FetchError
from intake.services.normalize import CandidateNormalizer, CandidateValidationError
from intake.services.scoring import QualificationScorer, filter_qualified, rank, summarize_results

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class _RunState:
    started_at: datetime
    stage: PipelineStage = "fetching"
    status: RunStatus = "completed"
    fetched: int = 0
    normalized: int = 0
    unique: int = 0
    qualified: int = 0
    inserted: int = 0
    duplicates: int = 0
    disqualified: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def finish(self) -> PipelineRunResult:
        if self.status == "completed":
            self.stage = "done"
        return PipelineRunResult(
            fetched=self.fetched,
            normalized=self.normalized,
            unique=self.unique,
            qualified=self.qualified,
            inserted=self.inserted,
            duplicates=self.duplicates,
            disqualified=self.disqualified,
            conflicts=self.conflicts,
            errors=list(self.errors),
            warnings=list(self.warnings),
            status=self.status,
            stage=self.stage,
            started_at=self.started_at,
            finished_at=datetime.now(timezone.utc),
        )


class _RunControl:
    """Tracks the caller's cancel event and the run deadline for one run."""

    def __init__(self, cancel: asyncio.Event | None, deadline: float, clock: Callable[[], float]) -> None:
        self.cancel = cancel
        self.deadline = deadline
        self.clock = clock
        # Set once either the deadline expires or the caller cancels; read by the dedupe stage.
        self.stop = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    @property
    def expired(self) -> bool:
        return self.clock() >= self.deadline

    def should_stop(self) -> bool:
        if self.cancelled or self.expired:
            self.stop.set()
        return self.stop.is_set()

    async def watch(self) -> None:
        remaining = max(0.0, self.deadline - self.clock())
        if self.cancel is None:
            await asyncio.sleep(remaining)
        else:
            try:
                await asyncio.wait_for(self.cancel.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
        self.stop.set()


class IngestionPipeline:
    def __init__(
        self,
        *,
        normalizer: CandidateNormalizer,
        deduplicator: DeduplicationEngine,
        scorer: QualificationScorer,
        sink: Sink,
        min_qualification_score: int = 40,
        max_concurrency: int = 8,
        sink_timeout_seconds: float = 10.0,
        run_deadline_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.normalizer = normalizer
        self.deduplicator = deduplicator
        self.scorer = scorer
        self.sink = sink
        self.min_qualification_score = min_qualification_score
        self.max_concurrency = max(1, max_concurrency)
        self.sink_timeout_seconds = sink_timeout_seconds
        self.run_deadline_seconds = run_deadline_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *, corpus: CorpusLookup, sink: Sink) -> IngestionPipeline:
        return cls(
            normalizer=CandidateNormalizer(reject_placeholder_titles=settings.reject_placeholder_titles),
            deduplicator=DeduplicationEngine(
                corpus,
                similarity_threshold=settings.similarity_threshold,
                window_days=settings.dedup_window_days,
                lookup_timeout_seconds=settings.corpus_timeout_ms / 1000.0,
                max_concurrency=settings.max_concurrency,
            ),
            scorer=QualificationScorer.from_settings(settings),
            sink=sink,
            min_qualification_score=settings.min_qualification_score,
            max_concurrency=settings.max_concurrency,
            sink_timeout_seconds=settings.sink_timeout_ms / 1000.0,
            run_deadline_seconds=settings.run_deadline_ms / 1000.0,
        )

    async def run(
        self,
        sources: Sequence[SourceAdapter],
        *,
        cancel: asyncio.Event | None = None,
    ) -> PipelineRunResult:
        state = _RunState(started_at=datetime.now(timezone.utc))
        control = _RunControl(cancel, self._clock() + self.run_deadline_seconds, self._clock)
        watcher = asyncio.create_task(control.watch())

        with tracer.start_as_current_span("pipeline.run") as span:
            span.set_attribute("pipeline.sources", len(sources))
            try:
                await self._run_stages(sources, state, control)
            except StageInterrupted as exc:
                self._interrupt(state, control, str(exc))
            finally:
                watcher.cancel()
            result = state.finish()
            span.set_attribute("pipeline.status", result.status)
            span.set_attribute("pipeline.inserted", result.inserted)

        logger.info(
            "pipeline run %s at stage=%s fetched=%s normalized=%s unique=%s qualified=%s inserted=%s "
            "duplicates=%s conflicts=%s errors=%s",
            result.status,
            result.stage,
            result.fetched,
            result.normalized,
            result.unique,
            result.qualified,
            result.inserted,
            result.duplicates,
            result.conflicts,
            len(result.errors),
        )
        return result

    async def _run_stages(
        self,
        sources: Sequence[SourceAdapter],
        state: _RunState,
        control: _RunControl,
    ) -> None:
        raw = await self._fetch_stage(sources, state, control)
        self._checkpoint(control, "normalizing")

        state.stage = "normalizing"
        normalized = self._normalize_stage(raw, state)
        self._checkpoint(control, "deduplicating")

        state.stage = "deduplicating"
        unique = await self._dedupe_stage(normalized, state, control)
        self._checkpoint(control, "scoring")

        state.stage = "scoring"
        qualified = self._score_stage(unique, state)
        self._checkpoint(control, "persisting")

        state.stage = "persisting"
        await self._persist_stage(qualified, state, control)

    async def _fetch_stage(
        self,
        sources: Sequence[SourceAdapter],
        state: _RunState,
        control: _RunControl,
    ) -> list[RawCandidate]:
        with tracer.start_as_current_span("pipeline.fetch") as span:
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def fetch_one(source: SourceAdapter) -> list[RawCandidate]:
                async with semaphore:
                    if control.should_stop():
                        raise StageInterrupted(f"source {source.name} not started")
                    return await source.fetch()

            tasks = [asyncio.create_task(fetch_one(source)) for source in sources]
            gathered = asyncio.gather(*tasks, return_exceptions=True)
            if control.cancel is not None and tasks:
                waiter = asyncio.create_task(control.cancel.wait())
                try:
                    await asyncio.wait({gathered, waiter}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    waiter.cancel()
                if not gathered.done():
                    for task in tasks:
                        task.cancel()
            results = await gathered

            raw: list[RawCandidate] = []
            for source, result in zip(sources, results):
                if isinstance(result, list):
                    raw.extend(result)
                    logger.info("source %s returned %s items", source.name, len(result))
                elif isinstance(result, asyncio.CancelledError):
                    state.warnings.append(f"source {source.name}: fetch cancelled")
                elif isinstance(result, StageInterrupted):
                    reason = "run cancelled" if control.cancelled else "run deadline reached"
                    state.warnings.append(f"source {source.name}: skipped, {reason}")
                elif isinstance(result, CircuitOpenError):
                    state.errors.append(f"source {source.name}: circuit open for {result.origin}")
                elif isinstance(result, FetchError):
                    state.errors.append(
                        f"source {source.name}: fetch failed after {result.attempts} attempts: {result}"
                    )
                elif isinstance(result, Exception):
                    logger.warning("source %s failed: %s", source.name, result)
                    state.errors.append(f"source {source.name}: {result.__class__.__name__}: {result}")
                elif isinstance(result, BaseException):
                    raise result
                else:
                    state.errors.append(f"source {source.name}: returned {type(result).__name__}, expected a list")

            state.fetched = len(raw)
            span.set_attribute("pipeline.fetched", state.fetched)
        return raw

    def _normalize_stage(self, raw: list[RawCandidate], state: _RunState) -> list[NormalizedCandidate]:
        normalized: list[NormalizedCandidate] = []
        with tracer.start_as_current_span("pipeline.normalize") as span:
            for item in raw:
                try:
                    normalized.append(self.normalizer.normalize(item))
                except CandidateValidationError as exc:
                    state.errors.append(f"invalid candidate from {exc}")
            state.normalized = len(normalized)
            span.set_attribute("pipeline.normalized", state.normalized)
        return normalized

    async def _dedupe_stage(
        self,
        normalized: list[NormalizedCandidate],
        state: _RunState,
        control: _RunControl,
    ) -> list[NormalizedCandidate]:
        if not normalized:
            return []
        with tracer.start_as_current_span("pipeline.dedupe"):
            outcome = await self.deduplicator.dedupe(normalized, stop=control.stop)
        state.unique = len(outcome.unique)
        state.duplicates = len(outcome.duplicates)
        state.warnings.extend(outcome.warnings)
        for match in outcome.duplicates:
            logger.debug("duplicate %s (%s) of %s", match.candidate.url, match.reason, match.matched_url)
        return outcome.unique

    def _score_stage(self, unique: list[NormalizedCandidate], state: _RunState) -> list[QualificationResult]:
        with tracer.start_as_current_span("pipeline.score") as span:
            now = datetime.now(timezone.utc)
            results: list[QualificationResult] = []
            for candidate in unique:
                try:
                    results.append(self.scorer.score(candidate, now=now))
                except ValueError as exc:
                    state.errors.append(f"scoring failed for {candidate.url}: {exc}")
            ranked = rank(results)
            qualified = filter_qualified(ranked, self.min_qualification_score)
            state.disqualified = sum(1 for result in ranked if result.disqualified)
            state.qualified = len(qualified)
            span.set_attribute("pipeline.qualified", state.qualified)
            summary = summarize_results(ranked, min_threshold=self.min_qualification_score)
            logger.info(
                "scored %s candidates: qualified=%s disqualified=%s average=%s by_category=%s",
                summary["total"],
                summary["qualified"],
                summary["disqualified"],
                summary["average_score"],
                summary["by_category"],
            )
        return qualified

    async def _persist_stage(
        self,
        qualified: list[QualificationResult],
        state: _RunState,
        control: _RunControl,
    ) -> None:
        with tracer.start_as_current_span("pipeline.persist") as span:
            for result in qualified:
                self._checkpoint(control, "persisting")
                record = IntakeRecord.from_result(result)
                try:
                    await asyncio.wait_for(self.sink.insert(record), timeout=self.sink_timeout_seconds)
                except SinkConflictError:
                    state.conflicts += 1
                    continue
                except SinkUnavailableError as exc:
                    state.status = "failed"
                    state.errors.append(f"sink unavailable, persistence stopped: {exc}")
                    logger.error("sink unavailable after %s inserts: %s", state.inserted, exc)
                    break
                except asyncio.TimeoutError:
                    state.errors.append(f"sink insert timed out for {record.url}")
                    continue
                except SinkError as exc:
                    state.errors.append(f"sink rejected {record.url}: {exc}")
                    continue
                state.inserted += 1
            span.set_attribute("pipeline.inserted", state.inserted)

    def _checkpoint(self, control: _RunControl, next_stage: PipelineStage) -> None:
        if control.should_stop():
            reason = "cancelled" if control.cancelled else "run deadline reached"
            raise StageInterrupted(f"{reason} before {next_stage}")

    def _interrupt(self, state: _RunState, control: _RunControl, message: str) -> None:
        if state.status == "failed":
            return
        state.status = "cancelled" if control.cancelled else "partial"
        state.warnings.append(message)
        logger.warning("pipeline run interrupted during %s: %s", state.stage, message)
