from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx
from opentelemetry import trace

from intake.core.config import Settings
from intake.services.circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RETRYABLE_STATUS_CODES = {429}

RetryCallback = Callable[[int, "FetchError", float], None]
SleepFn = Callable[[float], Awaitable[Any]]


class FetchError(Exception):
    """Base fetch failure carrying the origin and the attempts spent."""

    def __init__(
        self,
        message: str,
        *,
        origin: str,
        url: str,
        attempts: int = 0,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.origin = origin
        self.url = url
        self.attempts = attempts
        self.status_code = status_code


class TransientNetworkError(FetchError):
    """Raised for timeouts, transport failures, 5xx and 429 responses."""


class CircuitOpenError(FetchError):
    """Raised when the origin's circuit rejects the request without network I/O."""


class NonRetryableStatusError(FetchError):
    """Raised for client errors that retrying cannot fix."""


class UnreadableResponseError(FetchError):
    """Raised when a response arrives but cannot be read (bad encoding, redirect loops)."""


@dataclass(slots=True, frozen=True)
class FetchOptions:
    max_retries: int = 3
    initial_delay_ms: float = 1000.0
    max_delay_ms: float = 10000.0
    backoff_multiplier: float = 2.0
    per_request_timeout_ms: float = 30000.0

    @classmethod
    def from_settings(cls, settings: Settings) -> FetchOptions:
        return cls(
            max_retries=settings.max_retries,
            initial_delay_ms=settings.initial_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            backoff_multiplier=settings.backoff_multiplier,
            per_request_timeout_ms=settings.per_request_timeout_ms,
        )

    def backoff_delay_ms(self, attempt: int) -> float:
        """Delay before the retry that follows the 0-indexed ``attempt``."""
        return min(self.initial_delay_ms * (self.backoff_multiplier**attempt), self.max_delay_ms)


@dataclass(slots=True, frozen=True)
class FetchRequest:
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] | None = None
    json: Any = None


@dataclass(slots=True)
class FetchOutcome:
    request: FetchRequest
    origin: str
    response: httpx.Response | None = None
    error: FetchError | None = None
    attempts: int = 0
    delays_ms: list[float] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None

    def raise_for_error(self) -> httpx.Response:
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


class ResilientFetcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        options: FetchOptions | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        max_concurrency: int = 8,
        sleep: SleepFn = asyncio.sleep,
        on_retry: RetryCallback | None = None,
    ) -> None:
        self.options = options or FetchOptions()
        self.breakers = breakers or CircuitBreakerRegistry()
        self._client = client
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._sleep = sleep
        self._on_retry = on_retry

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings, **kwargs: Any) -> ResilientFetcher:
        breakers = CircuitBreakerRegistry(
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_ms / 1000.0,
        )
        return cls(
            client,
            options=FetchOptions.from_settings(settings),
            breakers=breakers,
            max_concurrency=settings.max_concurrency,
            **kwargs,
        )

    async def fetch(
        self,
        request: FetchRequest | str,
        *,
        origin: str | None = None,
        options: FetchOptions | None = None,
    ) -> FetchOutcome:
        if isinstance(request, str):
            request = FetchRequest(url=request)
        opts = options or self.options

        try:
            resolved_origin = origin or _origin_for(request.url)
        except (httpx.InvalidURL, ValueError) as exc:
            return FetchOutcome(
                request=request,
                origin=origin or "",
                error=NonRetryableStatusError(f"invalid URL {request.url!r}: {exc}", origin="", url=request.url),
            )

        outcome = FetchOutcome(request=request, origin=resolved_origin)
        with tracer.start_as_current_span("fetch.request") as span:
            span.set_attribute("fetch.origin", resolved_origin)
            span.set_attribute("http.url", request.url)
            await self._run_attempts(outcome, opts)
            span.set_attribute("fetch.attempts", outcome.attempts)
            span.set_attribute("fetch.ok", outcome.ok)
        return outcome

    async def fetch_batch(
        self,
        requests: Sequence[FetchRequest | str],
        *,
        options: FetchOptions | None = None,
    ) -> list[FetchOutcome]:
        prepared = [FetchRequest(url=request) if isinstance(request, str) else request for request in requests]
        results = await asyncio.gather(
            *(self.fetch(request, options=options) for request in prepared),
            return_exceptions=True,
        )
        outcomes: list[FetchOutcome] = []
        for request, result in zip(prepared, results):
            if isinstance(result, FetchOutcome):
                outcomes.append(result)
            elif isinstance(result, Exception):
                logger.error("fetch crashed for %s", request.url, exc_info=result)
                outcomes.append(
                    FetchOutcome(
                        request=request,
                        origin="",
                        error=FetchError(f"{result.__class__.__name__}: {result}", origin="", url=request.url),
                    )
                )
            else:
                raise result
        return outcomes

    async def _run_attempts(self, outcome: FetchOutcome, opts: FetchOptions) -> None:
        request = outcome.request
        origin = outcome.origin
        timeout = opts.per_request_timeout_ms / 1000.0

        for attempt in range(opts.max_retries + 1):
            if not self.breakers.acquire(origin):
                outcome.error = CircuitOpenError(
                    f"circuit open for {origin}",
                    origin=origin,
                    url=request.url,
                    attempts=outcome.attempts,
                )
                return
            probing = self.breakers.state(origin).state == "half_open"
            outcome.attempts += 1
            retryable = True

            try:
                async with self._semaphore:
                    response = await self._client.request(
                        request.method,
                        request.url,
                        headers=request.headers or None,
                        params=request.params,
                        json=request.json,
                        timeout=timeout,
                    )
            except httpx.TimeoutException as exc:
                error: FetchError = TransientNetworkError(
                    f"timeout after {timeout:.1f}s: {exc.__class__.__name__}",
                    origin=origin,
                    url=request.url,
                    attempts=outcome.attempts,
                )
            except httpx.TransportError as exc:
                error = TransientNetworkError(
                    f"network failure: {exc.__class__.__name__}: {exc}",
                    origin=origin,
                    url=request.url,
                    attempts=outcome.attempts,
                )
            except httpx.HTTPError as exc:
                retryable = False
                error = UnreadableResponseError(
                    f"unreadable response: {exc.__class__.__name__}: {exc}",
                    origin=origin,
                    url=request.url,
                    attempts=outcome.attempts,
                )
            except BaseException:
                # Cancellation or an unexpected client failure: the half-open slot must not stay taken.
                if probing:
                    self.breakers.release_probe(origin)
                raise
            else:
                status_code = response.status_code
                if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
                    error = TransientNetworkError(
                        f"HTTP {status_code}",
                        origin=origin,
                        url=request.url,
                        attempts=outcome.attempts,
                        status_code=status_code,
                    )
                else:
                    self.breakers.on_success(origin)
                    outcome.response = response
                    outcome.error = None
                    if status_code >= 400:
                        outcome.error = NonRetryableStatusError(
                            f"HTTP {status_code}",
                            origin=origin,
                            url=request.url,
                            attempts=outcome.attempts,
                            status_code=status_code,
                        )
                    return

            self.breakers.on_failure(origin)
            outcome.error = error
            if not retryable or attempt >= opts.max_retries:
                break
            if self.breakers.state(origin).state == "open":
                logger.info("circuit opened for %s; not retrying %s", origin, request.url)
                break

            delay_ms = opts.backoff_delay_ms(attempt)
            outcome.delays_ms.append(delay_ms)
            logger.info(
                "retry %s/%s for %s in %.0fms: %s",
                attempt + 1,
                opts.max_retries,
                request.url,
                delay_ms,
                error,
            )
            if self._on_retry is not None:
                self._on_retry(attempt + 1, error, delay_ms)
            await self._sleep(delay_ms / 1000.0)

        logger.warning(
            "fetch failed for %s after %s attempts: %s",
            request.url,
            outcome.attempts,
            outcome.error,
        )


def _origin_for(url: str) -> str:
    host = httpx.URL(url).host
    if not host:
        raise ValueError("missing host")
    return host.lower()
