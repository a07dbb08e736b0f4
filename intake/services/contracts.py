from __future__ import annotations

from typing import Protocol, runtime_checkable

from intake.schemas.candidates import CorpusRecord, IntakeRecord, RawCandidate


class SinkError(Exception):
    """Base sink error."""


class SinkConflictError(SinkError):
    """Raised when the normalized URL already exists in the sink."""


class SinkUnavailableError(SinkError):
    """Raised when the sink cannot be reached at all."""


class CorpusError(Exception):
    """Base corpus lookup error."""


class CorpusUnavailableError(CorpusError):
    """Raised when the corpus cannot be queried."""


class StageInterrupted(Exception):
    """Raised when a stage stops scheduling new I/O after cancellation or deadline expiry."""


@runtime_checkable
class SourceAdapter(Protocol):
    name: str

    async def fetch(self) -> list[RawCandidate]: ...


@runtime_checkable
class CorpusLookup(Protocol):
    async def exact_match(self, url: str) -> CorpusRecord | None: ...

    async def recent_window(self, days: int) -> list[CorpusRecord]: ...


@runtime_checkable
class Sink(Protocol):
    async def insert(self, record: IntakeRecord) -> str: ...
