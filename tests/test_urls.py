import pytest

from intake.core.urls import content_hash, normalize_url, url_host


def test_normalize_url_strips_www_default_port_fragment_and_tracking_params() -> None:
    normalized = normalize_url("HTTPS://WWW.Example.com:443/Path/To/?utm_source=feed&b=2&fbclid=x&a=1#section")

    assert normalized == "https://example.com/Path/To?b=2&a=1"


def test_normalize_url_keeps_non_default_port_and_query_order() -> None:
    assert normalize_url("http://example.com:8080/jobs/?z=1&y=2&gclid=abc&ref=home") == (
        "http://example.com:8080/jobs?z=1&y=2"
    )


def test_normalize_url_keeps_params_that_only_look_like_tracking() -> None:
    assert normalize_url("https://example.com/a?reference=1&utm=2") == "https://example.com/a?reference=1&utm=2"


def test_normalize_url_equivalences_collapse_to_one_key() -> None:
    variants = [
        "https://defi.io/labs",
        "https://www.defi.io/labs/",
        "https://DEFI.io/labs#team",
        "https://defi.io:443/labs?utm_campaign=launch",
    ]

    assert {normalize_url(url) for url in variants} == {"https://defi.io/labs"}


def test_normalize_url_is_idempotent() -> None:
    once = normalize_url("https://www.example.org/grants/?q=web3&utm_medium=email")

    assert normalize_url(once) == once


@pytest.mark.parametrize("raw", ["ftp://example.com/file", "not a url", "https:///missing-host", ""])
def test_normalize_url_rejects_unusable_urls(raw: str) -> None:
    with pytest.raises(ValueError):
        normalize_url(raw)


def test_url_host_lowercases_host() -> None:
    assert url_host("https://API.Example.com/v1") == "api.example.com"


def test_content_hash_ignores_case_and_description_tail() -> None:
    description = "A" * 200
    first = content_hash("https://example.com/a", "Build Week", description + " first tail")
    second = content_hash("https://example.com/a", "build week", description.lower() + " second tail")

    assert first == second
    assert len(first) == 64
    assert content_hash("https://example.com/b", "Build Week", description) != first
