from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from intake.core.urls import normalize_url
from intake.schemas.candidates import CorpusRecord, IntakeRecord
from intake.services.contracts import SinkConflictError

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Corpus lookup and sink backed by a dict, optionally persisted as JSON lines."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self.records: dict[str, dict[str, Any]] = {}
        self._by_url: dict[str, str] = {}
        if path is not None and path.exists():
            self._load(path)

    async def exact_match(self, url: str) -> CorpusRecord | None:
        record_id = self._by_url.get(_url_key(url))
        if record_id is None:
            return None
        return _as_corpus_record(self.records[record_id])

    async def recent_window(self, days: int) -> list[CorpusRecord]:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        return [
            _as_corpus_record(row)
            for row in self.records.values()
            if row["created_at"] >= cutoff
        ]

    async def insert(self, record: IntakeRecord) -> str:
        key = _url_key(record.url)
        if key in self._by_url:
            raise SinkConflictError(f"url already stored: {record.url}")
        record_id = str(uuid4())
        row = record.model_dump(mode="json")
        row["id"] = record_id
        row["created_at"] = datetime.now(timezone.utc)
        self.records[record_id] = row
        self._by_url[key] = record_id
        if self.path is not None:
            self._append(row)
        return record_id

    def seed(self, *, url: str, title: str = "", description: str = "", created_at: datetime | None = None) -> str:
        record_id = str(uuid4())
        row = {
            "id": record_id,
            "url": url,
            "title": title,
            "description": description,
            "category": None,
            "created_at": created_at or datetime.now(timezone.utc),
        }
        self.records[record_id] = row
        self._by_url[_url_key(url)] = record_id
        return record_id

    def _load(self, path: Path) -> None:
        with path.open(encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    row = json.loads(line)
                    row["created_at"] = datetime.fromisoformat(row["created_at"])
                except (ValueError, KeyError, TypeError) as exc:
                    logger.warning("skipping malformed store line %s:%s: %s", path, line_number, exc)
                    continue
                if row["created_at"].tzinfo is None:
                    row["created_at"] = row["created_at"].replace(tzinfo=timezone.utc)
                self.records[row["id"]] = row
                self._by_url[_url_key(row["url"])] = row["id"]
        logger.info("loaded %s stored records from %s", len(self.records), path)

    def _append(self, row: dict[str, Any]) -> None:
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        serialized = {**row, "created_at": row["created_at"].isoformat()}
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(serialized, separators=(",", ":")) + "\n")


def _url_key(url: str) -> str:
    try:
        return normalize_url(url)
    except ValueError:
        return url.strip()


def _as_corpus_record(row: dict[str, Any]) -> CorpusRecord:
    return CorpusRecord(
        id=row["id"],
        url=row["url"],
        title=row.get("title") or "",
        description=row.get("description") or "",
        category=row.get("category"),
        created_at=row["created_at"],
    )
