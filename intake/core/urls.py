from __future__ import annotations

import hashlib
import json
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid"}
DEFAULT_PORTS = {"http": "80", "https": "443"}
SUPPORTED_SCHEMES = {"http", "https"}
DESCRIPTION_HASH_PREFIX = 200


def normalize_url(raw_url: str) -> str:
    """Normalize a URL into the identity key used for dedupe and persistence.

    Lowercases scheme and host, drops ``www.``, default ports, fragments,
    trailing slashes and tracking query parameters. Path case and the order
    of the remaining query parameters are preserved.

    Raises ``ValueError`` when the URL has no http(s) scheme or no host.
    """
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        raise ValueError(f"unsupported or missing URL scheme: {raw_url!r}")

    host = (parsed.hostname or "").rstrip(".")
    if not host:
        raise ValueError(f"URL has no host: {raw_url!r}")
    if host.startswith("www."):
        host = host[4:]

    try:
        port = parsed.port
    except ValueError as exc:
        raise ValueError(f"URL has an invalid port: {raw_url!r}") from exc
    netloc = f"[{host}]" if ":" in host else host
    if port is not None and str(port) != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    path = parsed.path.rstrip("/")

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    query = urlencode(filtered_query_pairs, doseq=True)

    return urlunparse((scheme, netloc, path, "", query, ""))


def url_host(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def content_hash(normalized_url: str, title: str | None, description: str | None) -> str:
    payload = [
        normalized_url,
        (title or "").strip().lower(),
        (description or "").strip().lower()[:DESCRIPTION_HASH_PREFIX],
    ]
    encoded = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_KEYS
