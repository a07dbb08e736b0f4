from __future__ import annotations

import asyncio
from typing import Any

import pytest

from intake.core.config import Settings, get_settings
from intake.jobs.pipeline import IngestionPipeline
from intake.schemas.candidates import IntakeRecord, RawCandidate
from intake.schemas.runs import PipelineRunResult
from intake.services.contracts import SinkConflictError, SinkUnavailableError
from intake.services.dedupe import DeduplicationEngine
from intake.services.fetcher import CircuitOpenError, TransientNetworkError
from intake.services.normalize import CandidateNormalizer
from intake.services.scoring import QualificationScorer
from intake.services.store import InMemoryStore

GRANT = {"title": "Builder Grants", "url": "https://grants.example.org/builders?utm_source=x", "category": "grant"}
GRANT_MIRROR = {"title": "Builder Grants", "url": "https://www.grants.example.org/builders/", "category": "grant"}
RESOURCE = {
    "title": "Solidity Basics",
    "url": "https://learn.example.org/solidity",
    "category": "tool",
    "metadata": {"price_type": "free", "category": "smart-contracts"},
}
BIG_PROJECT = {"title": "MegaCorp Chain", "url": "https://megacorp.example.com", "category": "project", "team_size": 50}
SPARSE_PROJECT = {"title": "Quiet Project", "url": "https://quiet.example.com", "category": "project"}
NO_URL = {"title": "Orphan", "category": "project"}


class StaticSource:
    def __init__(
        self,
        name: str,
        items: list[dict[str, Any]] | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
        block: bool = False,
    ) -> None:
        self.name = name
        self.items = items or []
        self.error = error
        self.delay = delay
        self.block = block
        self.calls = 0

    async def fetch(self) -> list[RawCandidate]:
        self.calls += 1
        if self.block:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [RawCandidate(origin=self.name, payload=item) for item in self.items]


class RaisingSink:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.attempts: list[IntakeRecord] = []

    async def insert(self, record: IntakeRecord) -> str:
        self.attempts.append(record)
        raise self.error


def _pipeline(store: InMemoryStore, sink: Any = None, **kwargs: Any) -> IngestionPipeline:
    return IngestionPipeline(
        normalizer=CandidateNormalizer(),
        deduplicator=DeduplicationEngine(store),
        scorer=QualificationScorer(),
        sink=sink if sink is not None else store,
        **kwargs,
    )


def _sources() -> list[StaticSource]:
    return [
        StaticSource("feed-a", [GRANT, NO_URL, BIG_PROJECT, SPARSE_PROJECT]),
        StaticSource("feed-b", [GRANT_MIRROR, RESOURCE]),
        StaticSource(
            "feed-c",
            error=CircuitOpenError("circuit open", origin="down.example.com", url="https://down.example.com/feed"),
        ),
    ]


def test_pipeline_end_to_end_counts_every_stage() -> None:
    store = InMemoryStore()

    result = asyncio.run(_pipeline(store).run(_sources()))

    assert result.status == "completed"
    assert result.stage == "done"
    assert (result.fetched, result.normalized, result.unique, result.duplicates) == (6, 5, 4, 1)
    assert (result.disqualified, result.qualified, result.inserted, result.conflicts) == (1, 2, 2, 0)
    assert len(result.errors) == 2
    assert any("circuit open for down.example.com" in error for error in result.errors)
    assert any("missing url" in error for error in result.errors)
    stored_urls = sorted(row["url"] for row in store.records.values())
    assert stored_urls == ["https://grants.example.org/builders", "https://learn.example.org/solidity"]
    assert result.finished_at >= result.started_at


def test_rerun_against_same_store_inserts_nothing_new() -> None:
    store = InMemoryStore()
    pipeline = _pipeline(store)

    first = asyncio.run(pipeline.run(_sources()))
    second = asyncio.run(pipeline.run(_sources()))

    assert first.inserted == 2
    assert second.inserted == 0
    assert second.qualified == 0
    assert second.duplicates == 3
    assert len(store.records) == 2


def test_fetch_failures_after_retries_are_reported_per_source() -> None:
    failing = StaticSource(
        "flaky",
        error=TransientNetworkError("HTTP 503", origin="flaky.example", url="https://flaky.example/x", attempts=4),
    )
    broken = StaticSource("broken", error=RuntimeError("adapter bug"))

    result = asyncio.run(_pipeline(InMemoryStore()).run([failing, broken, StaticSource("ok", [GRANT])]))

    assert result.status == "completed"
    assert result.inserted == 1
    assert "source flaky: fetch failed after 4 attempts: HTTP 503" in result.errors
    assert "source broken: RuntimeError: adapter bug" in result.errors


def test_sink_conflicts_are_counted_not_errors() -> None:
    sink = RaisingSink(SinkConflictError("exists"))

    result = asyncio.run(_pipeline(InMemoryStore(), sink).run(_sources()))

    assert result.status == "completed"
    assert result.conflicts == 2
    assert result.inserted == 0
    assert not any("exists" in error for error in result.errors)


def test_sink_unavailable_fails_run_and_keeps_prior_counts() -> None:
    sink = RaisingSink(SinkUnavailableError("connection refused"))

    result = asyncio.run(_pipeline(InMemoryStore(), sink).run(_sources()))

    assert result.status == "failed"
    assert result.stage == "persisting"
    assert result.qualified == 2
    assert result.inserted == 0
    assert len(sink.attempts) == 1
    assert any(error.startswith("sink unavailable") for error in result.errors)


def test_zero_items_is_a_normal_empty_run() -> None:
    result = asyncio.run(_pipeline(InMemoryStore()).run([]))

    assert result.status == "completed"
    assert result.model_dump(include={"fetched", "normalized", "unique", "qualified", "inserted"}) == {
        "fetched": 0,
        "normalized": 0,
        "unique": 0,
        "qualified": 0,
        "inserted": 0,
    }
    assert result.errors == []


def test_every_item_invalid_still_completes() -> None:
    result = asyncio.run(_pipeline(InMemoryStore()).run([StaticSource("bad", [NO_URL, {"url": "https://x.example"}])]))

    assert result.status == "completed"
    assert result.fetched == 2
    assert result.normalized == 0
    assert len(result.errors) == 2


def test_cancellation_aborts_in_flight_fetches_and_discards_work() -> None:
    store = InMemoryStore()
    hanging = StaticSource("hanging", block=True)

    async def run() -> PipelineRunResult:
        cancel = asyncio.Event()
        task = asyncio.create_task(_pipeline(store).run([hanging, StaticSource("ok", [GRANT])], cancel=cancel))
        await asyncio.sleep(0.01)
        cancel.set()
        return await task

    result = asyncio.run(run())

    assert result.status == "cancelled"
    assert result.inserted == 0
    assert "source hanging: fetch cancelled" in result.warnings
    assert store.records == {}


def test_deadline_lets_in_flight_work_finish_but_schedules_nothing_new() -> None:
    slow = StaticSource("slow", [GRANT], delay=0.05)
    queued = StaticSource("queued", [RESOURCE])

    result = asyncio.run(
        _pipeline(InMemoryStore(), max_concurrency=1, run_deadline_seconds=0.01).run([slow, queued])
    )

    assert result.status == "partial"
    assert result.stage == "fetching"
    assert result.fetched == 1
    assert result.inserted == 0
    assert queued.calls == 0
    assert "source queued: skipped, run deadline reached" in result.warnings


def test_sources_skipped_after_cancellation_say_cancelled() -> None:
    source = StaticSource("feed-a", [GRANT])

    async def run() -> PipelineRunResult:
        cancel = asyncio.Event()
        cancel.set()
        return await _pipeline(InMemoryStore()).run([source], cancel=cancel)

    result = asyncio.run(run())

    assert result.status == "cancelled"
    assert source.calls == 0
    assert "source feed-a: skipped, run cancelled" in result.warnings
    assert not any("deadline" in warning for warning in result.warnings)


def test_from_settings_applies_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INTAKE_MIN_QUALIFICATION_SCORE", "60")
    monkeypatch.setenv("INTAKE_SIMILARITY_THRESHOLD", "0.85")
    monkeypatch.setenv("INTAKE_SCORING_RULES_JSON", '{"max_team_size": 25}')
    get_settings.cache_clear()
    try:
        settings = get_settings()
    finally:
        get_settings.cache_clear()
    store = InMemoryStore()

    pipeline = IngestionPipeline.from_settings(settings, corpus=store, sink=store)

    assert pipeline.min_qualification_score == 60
    assert pipeline.deduplicator.similarity_threshold == 0.85
    assert pipeline.scorer.rules.max_team_size == 25


def test_settings_reject_out_of_range_values() -> None:
    with pytest.raises(ValueError):
        Settings(similarity_threshold=1.5)
    with pytest.raises(ValueError):
        Settings(min_qualification_score=101)
