from __future__ import annotations

import re
from typing import Any

from pydantic import ValidationError

from intake.core.urls import normalize_url
from intake.schemas.candidates import (
    ATTRIBUTE_MODELS,
    Category,
    NormalizedCandidate,
    RawCandidate,
)

CATEGORY_ALIASES: dict[str, Category] = {
    "project": "project",
    "projects": "project",
    "startup": "project",
    "funding": "funding",
    "funding_program": "funding",
    "grant": "funding",
    "grants": "funding",
    "accelerator": "funding",
    "incubator": "funding",
    "resource": "resource",
    "resources": "resource",
    "tool": "resource",
    "tools": "resource",
    "course": "resource",
    "guide": "resource",
}
URL_KEYS = ("url", "link", "website_url", "href")
TITLE_KEYS = ("title", "name")
DESCRIPTION_KEYS = ("description", "summary", "text")
PUBLISHED_KEYS = ("published_at", "created_at", "posted_at")
NESTED_ATTRIBUTE_KEYS = ("attributes", "metadata")
PLACEHOLDER_WORDS = {"example", "test", "lorem", "placeholder"}

_WORD_RE = re.compile(r"[a-z0-9]+")


class CandidateValidationError(ValueError):
    """Raised when a raw payload cannot become a normalized candidate."""

    def __init__(self, message: str, *, origin: str, url: str | None = None) -> None:
        super().__init__(message)
        self.origin = origin
        self.url = url

    def __str__(self) -> str:
        where = self.url or "<no url>"
        return f"{self.origin}: {where}: {self.args[0]}"


class CandidateNormalizer:
    def __init__(
        self,
        *,
        reject_placeholder_titles: bool = True,
        default_category: Category | None = None,
    ) -> None:
        self.reject_placeholder_titles = reject_placeholder_titles
        self.default_category = default_category

    def normalize(self, raw: RawCandidate) -> NormalizedCandidate:
        payload = raw.payload
        source_url = _first_text(payload, URL_KEYS)
        if not source_url:
            raise CandidateValidationError("missing url", origin=raw.origin)
        try:
            url = normalize_url(source_url)
        except ValueError as exc:
            raise CandidateValidationError(str(exc), origin=raw.origin, url=source_url) from exc

        title = _first_text(payload, TITLE_KEYS)
        if not title:
            raise CandidateValidationError("missing title", origin=raw.origin, url=source_url)
        if self.reject_placeholder_titles and PLACEHOLDER_WORDS & set(_WORD_RE.findall(title.lower())):
            raise CandidateValidationError(f"placeholder title {title!r}", origin=raw.origin, url=source_url)

        category = self._resolve_category(payload)
        if category is None:
            raise CandidateValidationError(
                f"unknown category {payload.get('category') or payload.get('type')!r}",
                origin=raw.origin,
                url=source_url,
            )

        try:
            attributes = ATTRIBUTE_MODELS[category].model_validate(_attribute_fields(payload, category))
            return NormalizedCandidate(
                url=url,
                source_url=source_url,
                origin=raw.origin,
                title=title,
                description=_first_text(payload, DESCRIPTION_KEYS) or "",
                category=category,
                tags=_tags(payload.get("tags")),
                attributes=attributes,
                published_at=_first_value(payload, PUBLISHED_KEYS),
            )
        except ValidationError as exc:
            raise CandidateValidationError(_summarize(exc), origin=raw.origin, url=source_url) from exc

    def _resolve_category(self, payload: dict[str, Any]) -> Category | None:
        for key in ("category", "type"):
            raw = payload.get(key)
            if isinstance(raw, str) and raw.strip().lower() in CATEGORY_ALIASES:
                return CATEGORY_ALIASES[raw.strip().lower()]
        return self.default_category


def _attribute_fields(payload: dict[str, Any], category: Category) -> dict[str, Any]:
    fields = {key: value for key, value in payload.items() if key not in NESTED_ATTRIBUTE_KEYS}
    for key in NESTED_ATTRIBUTE_KEYS:
        nested = payload.get(key)
        if isinstance(nested, dict):
            fields.update(nested)

    traction = fields.pop("traction_metrics", None)
    if isinstance(traction, dict):
        fields.setdefault("users", traction.get("users"))
        fields.setdefault("github_stars", traction.get("github_stars"))

    nested_category = fields.get("category")
    if category == "resource" and isinstance(nested_category, str) and nested_category.lower() not in CATEGORY_ALIASES:
        fields.setdefault("topic", nested_category)

    for key in ("category", "type", "kind"):
        fields.pop(key, None)
    return {key: value for key, value in fields.items() if value is not None}


def _first_text(payload: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_value(payload: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _tags(value: Any) -> frozenset[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple, set, frozenset)):
        return frozenset()
    return frozenset(item.strip().lower() for item in value if isinstance(item, str) and item.strip())


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors()[:3]:
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "invalid payload (" + "; ".join(parts) + ")"
