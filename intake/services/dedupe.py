from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

import Levenshtein
from opentelemetry import trace

from intake.core.urls import normalize_url
from intake.schemas.candidates import CorpusRecord, NormalizedCandidate
from intake.services.contracts import CorpusLookup, StageInterrupted

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

URL_WEIGHT = 0.5
TITLE_WEIGHT = 0.3
DESCRIPTION_WEIGHT = 0.2
# Edit distance is quadratic; titles and descriptions are compared on a prefix.
EDIT_DISTANCE_PREFIX = 500

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_WHITESPACE_RE = re.compile(r"\s+")
_STOP_WORDS = {
    "a",
    "an",
    "and",
    "at",
    "for",
    "from",
    "in",
    "of",
    "on",
    "or",
    "the",
    "to",
    "with",
}


class Comparable(Protocol):
    url: str
    title: str
    description: str


@dataclass(slots=True, frozen=True)
class DuplicateMatch:
    candidate: NormalizedCandidate
    reason: str
    matched_url: str
    similarity: float
    matched_id: str | None = None


@dataclass(slots=True)
class DedupeOutcome:
    unique: list[NormalizedCandidate] = field(default_factory=list)
    duplicates: list[DuplicateMatch] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def similarity_score(left: Comparable, right: Comparable) -> float:
    """Weighted URL/title/description similarity in [0, 1]; symmetric in its arguments."""
    url_match = 1.0 if _comparable_url(left.url) == _comparable_url(right.url) else 0.0
    return (
        URL_WEIGHT * url_match
        + TITLE_WEIGHT * text_similarity(left.title, right.title, prefix=EDIT_DISTANCE_PREFIX)
        + DESCRIPTION_WEIGHT * text_similarity(left.description, right.description, prefix=EDIT_DISTANCE_PREFIX)
    )


def text_similarity(left: str | None, right: str | None, *, prefix: int | None = None) -> float:
    """Mean of token-set Jaccard and normalized Levenshtein similarity."""
    left_text = _clean(left)
    right_text = _clean(right)
    if not left_text and not right_text:
        return 1.0
    if not left_text or not right_text:
        return 0.0
    if left_text == right_text:
        return 1.0
    jaccard = _jaccard(_tokenize(left_text), _tokenize(right_text))
    if prefix is not None:
        left_text = left_text[:prefix]
        right_text = right_text[:prefix]
    return (jaccard + levenshtein_similarity(left_text, right_text)) / 2


def levenshtein_similarity(left: str, right: str) -> float:
    longest = max(len(left), len(right))
    if longest == 0:
        return 1.0
    return 1.0 - (Levenshtein.distance(left, right) / longest)


class DeduplicationEngine:
    def __init__(
        self,
        corpus: CorpusLookup,
        *,
        similarity_threshold: float = 0.7,
        window_days: int = 30,
        lookup_timeout_seconds: float = 10.0,
        max_concurrency: int = 8,
    ) -> None:
        self.corpus = corpus
        self.similarity_threshold = similarity_threshold
        self.window_days = window_days
        self.lookup_timeout_seconds = lookup_timeout_seconds
        self._max_concurrency = max(1, max_concurrency)

    async def dedupe(
        self,
        batch: list[NormalizedCandidate],
        *,
        stop: asyncio.Event | None = None,
    ) -> DedupeOutcome:
        outcome = DedupeOutcome()
        with tracer.start_as_current_span("dedupe.batch") as span:
            span.set_attribute("dedupe.batch_size", len(batch))
            survivors = self._dedupe_within_batch(batch, outcome)
            if survivors:
                await self._dedupe_against_corpus(survivors, outcome, stop)
            span.set_attribute("dedupe.unique", len(outcome.unique))
            span.set_attribute("dedupe.duplicates", len(outcome.duplicates))
        return outcome

    def _dedupe_within_batch(
        self,
        batch: list[NormalizedCandidate],
        outcome: DedupeOutcome,
    ) -> list[NormalizedCandidate]:
        first_seen: dict[str, NormalizedCandidate] = {}
        survivors: list[NormalizedCandidate] = []
        for candidate in batch:
            keys = (f"hash:{candidate.content_hash}", f"url:{candidate.url}")
            original = next((first_seen[key] for key in keys if key in first_seen), None)
            if original is not None:
                outcome.duplicates.append(
                    DuplicateMatch(
                        candidate=candidate,
                        reason="within-batch",
                        matched_url=original.url,
                        similarity=1.0,
                    )
                )
                continue
            for key in keys:
                first_seen[key] = candidate
            survivors.append(candidate)
        return survivors

    async def _dedupe_against_corpus(
        self,
        survivors: list[NormalizedCandidate],
        outcome: DedupeOutcome,
        stop: asyncio.Event | None,
    ) -> None:
        _raise_if_stopped(stop)
        window = await self._load_window(outcome)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def check(candidate: NormalizedCandidate) -> DuplicateMatch | None:
            async with semaphore:
                _raise_if_stopped(stop)
                return await self._check_corpus(candidate, window, outcome)

        matches = await asyncio.gather(*(check(candidate) for candidate in survivors), return_exceptions=True)
        for match in matches:
            if isinstance(match, BaseException):
                raise match
        for candidate, match in zip(survivors, matches):
            if match is None:
                outcome.unique.append(candidate)
            else:
                outcome.duplicates.append(match)

    async def _load_window(self, outcome: DedupeOutcome) -> list[CorpusRecord] | None:
        try:
            return await asyncio.wait_for(
                self.corpus.recent_window(self.window_days),
                timeout=self.lookup_timeout_seconds,
            )
        except Exception as exc:
            message = f"corpus window unavailable, fuzzy matching skipped: {exc.__class__.__name__}: {exc}"
            logger.warning(message)
            outcome.warnings.append(message)
            return None

    async def _check_corpus(
        self,
        candidate: NormalizedCandidate,
        window: list[CorpusRecord] | None,
        outcome: DedupeOutcome,
    ) -> DuplicateMatch | None:
        try:
            existing = await asyncio.wait_for(
                self.corpus.exact_match(candidate.url),
                timeout=self.lookup_timeout_seconds,
            )
        except Exception as exc:
            message = f"corpus lookup failed for {candidate.url}; treated as unique: {exc.__class__.__name__}: {exc}"
            logger.warning(message)
            outcome.warnings.append(message)
            return None

        if existing is not None:
            return DuplicateMatch(
                candidate=candidate,
                reason="exact-url",
                matched_url=existing.url,
                similarity=1.0,
                matched_id=existing.id,
            )

        for record in window or ():
            score = similarity_score(candidate, record)
            if score > self.similarity_threshold:
                return DuplicateMatch(
                    candidate=candidate,
                    reason=f"similarity:{score:.2f}",
                    matched_url=record.url,
                    similarity=round(score, 4),
                    matched_id=record.id,
                )
        return None


def _raise_if_stopped(stop: asyncio.Event | None) -> None:
    if stop is not None and stop.is_set():
        raise StageInterrupted("deduplication stopped before corpus lookup")


def _comparable_url(url: str) -> str:
    try:
        return normalize_url(url)
    except ValueError:
        return url.strip().lower()


def _clean(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value.casefold()).strip()


def _tokenize(value: str) -> set[str]:
    return {token for token in _TOKEN_RE.findall(value) if token not in _STOP_WORDS}


def _jaccard(left: set[str], right: set[str]) -> float:
    if not left and not right:
        return 1.0
    union = len(left | right)
    if union <= 0:
        return 0.0
    return len(left & right) / union

