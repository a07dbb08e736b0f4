from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from intake.schemas.candidates import Category, RawCandidate
from intake.services.fetcher import FetchRequest, NonRetryableStatusError, ResilientFetcher

logger = logging.getLogger(__name__)


class HttpFeedSource:
    """Source adapter that pulls a JSON list of items from one feed URL."""

    def __init__(
        self,
        name: str,
        url: str,
        fetcher: ResilientFetcher,
        *,
        category: Category | None = None,
        items_key: str | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.url = url
        self.category = category
        self.items_key = items_key
        self.headers = headers or {}
        self.params = params
        self._fetcher = fetcher

    async def fetch(self) -> list[RawCandidate]:
        outcome = await self._fetcher.fetch(FetchRequest(url=self.url, headers=self.headers, params=self.params))
        response = outcome.raise_for_error()
        try:
            payload = response.json()
        except ValueError as exc:
            raise NonRetryableStatusError(
                f"feed did not return JSON: {exc}",
                origin=outcome.origin,
                url=self.url,
                attempts=outcome.attempts,
                status_code=response.status_code,
            ) from exc

        items = payload.get(self.items_key or "items", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise NonRetryableStatusError(
                f"feed items are {type(items).__name__}, expected a list",
                origin=outcome.origin,
                url=self.url,
                attempts=outcome.attempts,
                status_code=response.status_code,
            )

        fetched_at = datetime.now(timezone.utc)
        candidates = []
        for item in items:
            if not isinstance(item, dict):
                logger.warning("skipping non-object item from %s", self.name)
                continue
            if self.category is not None:
                item = {"category": self.category, **item}
            candidates.append(RawCandidate(origin=self.name, fetched_at=fetched_at, payload=item))
        logger.info("fetched %s items from %s", len(candidates), self.name)
        return candidates
