from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx

from intake.services.circuit_breaker import CircuitBreakerRegistry
from intake.services.fetcher import (
    CircuitOpenError,
    FetchError,
    FetchOptions,
    FetchOutcome,
    FetchRequest,
    NonRetryableStatusError,
    ResilientFetcher,
    TransientNetworkError,
    UnreadableResponseError,
)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _run(
    handler: Callable[[httpx.Request], httpx.Response],
    requests: list[FetchRequest | str],
    **fetcher_kwargs,
) -> list[FetchOutcome]:
    async def run() -> list[FetchOutcome]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = ResilientFetcher(client, **fetcher_kwargs)
            return [await fetcher.fetch(request) for request in requests]

    return asyncio.run(run())


def test_fetch_retries_transient_failures_with_exponential_backoff() -> None:
    statuses = iter([503, 503, 200])
    sleep = RecordingSleep()
    retries: list[tuple[int, str, float]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), json={"items": []}, request=request)

    [outcome] = _run(
        handler,
        ["https://feeds.example.com/items"],
        sleep=sleep,
        on_retry=lambda attempt, error, delay: retries.append((attempt, type(error).__name__, delay)),
    )

    assert outcome.ok
    assert outcome.attempts == 3
    assert outcome.delays_ms == [1000.0, 2000.0]
    assert sleep.calls == [1.0, 2.0]
    assert retries == [(1, "TransientNetworkError", 1000.0), (2, "TransientNetworkError", 2000.0)]


def test_backoff_delay_is_capped_at_max_delay() -> None:
    options = FetchOptions(initial_delay_ms=1000, max_delay_ms=5000, backoff_multiplier=3)

    assert [options.backoff_delay_ms(attempt) for attempt in range(4)] == [1000, 3000, 5000, 5000]


def test_rate_limited_responses_are_retried() -> None:
    statuses = iter([429, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), request=request)

    [outcome] = _run(handler, ["https://api.example.com/x"], sleep=RecordingSleep())

    assert outcome.ok
    assert outcome.attempts == 2


def test_client_errors_are_not_retried_and_reset_failures() -> None:
    sleep = RecordingSleep()
    breakers = CircuitBreakerRegistry()
    breakers.on_failure("api.example.com")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, request=request)

    [outcome] = _run(handler, ["https://api.example.com/missing"], sleep=sleep, breakers=breakers)

    assert isinstance(outcome.error, NonRetryableStatusError)
    assert outcome.error.status_code == 404
    assert outcome.attempts == 1
    assert sleep.calls == []
    assert breakers.state("api.example.com").failures == 0


def test_timeouts_exhaust_retries_as_transient_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow origin", request=request)

    [outcome] = _run(
        handler,
        ["https://slow.example.com/feed"],
        sleep=RecordingSleep(),
        options=FetchOptions(max_retries=2),
    )

    assert isinstance(outcome.error, TransientNetworkError)
    assert outcome.attempts == 3
    assert outcome.response is None


def test_open_circuit_fails_fast_without_network_io() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(500, request=request)

    first, second = _run(
        handler,
        ["https://down.example.com/a", "https://down.example.com/b"],
        sleep=RecordingSleep(),
        options=FetchOptions(max_retries=0),
        breakers=CircuitBreakerRegistry(failure_threshold=1),
    )

    assert isinstance(first.error, TransientNetworkError)
    assert isinstance(second.error, CircuitOpenError)
    assert second.attempts == 0
    assert calls == ["https://down.example.com/a"]


def test_circuit_opening_mid_retry_stops_attempts() -> None:
    sleep = RecordingSleep()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, request=request)

    [outcome] = _run(
        handler,
        ["https://down.example.com/a"],
        sleep=sleep,
        breakers=CircuitBreakerRegistry(failure_threshold=2),
    )

    assert isinstance(outcome.error, TransientNetworkError)
    assert outcome.error.status_code == 502
    assert outcome.attempts == 2
    assert outcome.delays_ms == [1000.0]
    assert sleep.calls == [1.0]


def test_half_open_probe_success_closes_circuit() -> None:
    now = [0.0]
    breakers = CircuitBreakerRegistry(failure_threshold=1, cooldown_seconds=60.0, clock=lambda: now[0])
    breakers.on_failure("recovering.example.com")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, request=request)

    async def run() -> tuple[FetchOutcome, FetchOutcome]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = ResilientFetcher(client, breakers=breakers, sleep=RecordingSleep())
            rejected = await fetcher.fetch("https://recovering.example.com/feed")
            now[0] = 60.0
            probe = await fetcher.fetch("https://recovering.example.com/feed")
            return rejected, probe

    rejected, probe = asyncio.run(run())

    assert isinstance(rejected.error, CircuitOpenError)
    assert probe.ok
    assert breakers.state("recovering.example.com").state == "closed"


def test_fetch_batch_isolates_failures_and_preserves_order() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "bad.example.com":
            return httpx.Response(500, request=request)
        return httpx.Response(200, json={"ok": True}, request=request)

    async def run() -> list[FetchOutcome]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = ResilientFetcher(client, options=FetchOptions(max_retries=1), sleep=RecordingSleep())
            return await fetcher.fetch_batch(
                ["https://good.example.com/1", "https://bad.example.com/2", "https://good.example.com/3"]
            )

    outcomes = asyncio.run(run())

    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert outcomes[1].attempts == 2
    assert outcomes[2].raise_for_error().json() == {"ok": True}


def test_invalid_url_is_reported_without_attempts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    [outcome] = _run(handler, ["not-a-url"], sleep=RecordingSleep())

    assert isinstance(outcome.error, NonRetryableStatusError)
    assert outcome.attempts == 0


def _broken_gzip(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, headers={"content-encoding": "gzip"}, content=b"not gzip at all", request=request)


def test_undecodable_response_fails_one_request_without_aborting_batch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "bad.example.com":
            return _broken_gzip(request)
        return httpx.Response(200, json={"ok": True}, request=request)

    sleep = RecordingSleep()

    async def run() -> list[FetchOutcome]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = ResilientFetcher(client, sleep=sleep)
            return await fetcher.fetch_batch(["https://good.example.com/1", "https://bad.example.com/2"])

    good, bad = asyncio.run(run())

    assert good.ok
    assert isinstance(bad.error, UnreadableResponseError)
    assert bad.attempts == 1
    assert sleep.calls == []


def _half_open_attempt(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[
    CircuitBreakerRegistry, list[float], FetchOutcome | BaseException
]:
    now = [0.0]
    sleep = RecordingSleep()
    breakers = CircuitBreakerRegistry(failure_threshold=1, cooldown_seconds=60.0, clock=lambda: now[0])
    breakers.on_failure("flaky.example.com")
    now[0] = 60.0

    async def run() -> FetchOutcome:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = ResilientFetcher(client, breakers=breakers, sleep=sleep)
            return await fetcher.fetch("https://flaky.example.com/feed")

    try:
        result: FetchOutcome | BaseException = asyncio.run(run())
    except RuntimeError as exc:
        result = exc
    return breakers, sleep.calls, result


def test_undecodable_trial_request_reopens_circuit_instead_of_sticking_half_open() -> None:
    breakers, sleeps, outcome = _half_open_attempt(_broken_gzip)

    assert isinstance(outcome, FetchOutcome)
    assert isinstance(outcome.error, UnreadableResponseError)
    state = breakers.state("flaky.example.com")
    assert state.state == "open"
    assert state.last_failure_at == 60.0
    assert sleeps == []


def test_failed_half_open_request_keeps_network_error_and_skips_backoff() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, request=request)

    breakers, sleeps, outcome = _half_open_attempt(handler)

    assert isinstance(outcome, FetchOutcome)
    assert isinstance(outcome.error, TransientNetworkError)
    assert outcome.attempts == 1
    assert sleeps == []
    assert breakers.state("flaky.example.com").state == "open"


def test_unexpected_client_failure_frees_half_open_slot() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("transport bug")

    breakers, _, outcome = _half_open_attempt(handler)

    assert isinstance(outcome, RuntimeError)
    assert breakers.state("flaky.example.com").state == "open"


def test_fetch_batch_turns_unexpected_failures_into_outcomes() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "bug.example.com":
            raise RuntimeError("transport bug")
        return httpx.Response(200, request=request)

    async def run() -> list[FetchOutcome]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = ResilientFetcher(client, sleep=RecordingSleep())
            return await fetcher.fetch_batch(["https://bug.example.com/1", "https://ok.example.com/2"])

    crashed, ok = asyncio.run(run())

    assert type(crashed.error) is FetchError
    assert "transport bug" in str(crashed.error)
    assert ok.ok
