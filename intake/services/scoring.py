"""Category-specific qualification scoring.

Every category routes through one entry of ``RULE_TABLE``: hard
disqualifiers run first and short-circuit to a zero score, then each soft
factor adds points up to its own cap, then the universal boosts shared by
all categories are applied and the total is clamped to ``[0, 100]``.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from intake.core.config import Settings
from intake.schemas.candidates import (
    Category,
    FundingAttributes,
    NormalizedCandidate,
    ProjectAttributes,
    QualificationResult,
    ResourceAttributes,
)

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")
LONG_DESCRIPTION_CHARS = 500
RELEVANT_RESOURCE_TOPICS = {"smart-contracts", "blockchain", "fundraising", "grants"}

Points = list[tuple[int, str]]


class ScoringRules(BaseModel):
    """Absolute thresholds behind the hard disqualifiers."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    max_team_size: int = 10
    max_funding_raised: float = 500_000
    min_launch_year: int = 2024
    excluded_backers: tuple[str, ...] = ("coinbase", "sony", "microsoft", "google", "amazon")
    min_days_to_deadline: int = 7
    max_resource_price: float = 100
    max_resource_age_months: int = 12


def parse_scoring_rules(raw: str | None) -> ScoringRules:
    if not raw:
        return ScoringRules()
    try:
        decoded = json.loads(raw)
        if not isinstance(decoded, dict):
            raise ValueError("scoring rules must be a JSON object")
        return ScoringRules.model_validate(decoded)
    except (ValueError, ValidationError) as exc:
        logger.warning("ignoring invalid scoring rules override: %s", exc)
        return ScoringRules()


AnyAttributes = Union[ProjectAttributes, FundingAttributes, ResourceAttributes]
AttrsT = TypeVar("AttrsT", bound=AnyAttributes, covariant=True)
RuleAttrsT = TypeVar("RuleAttrsT", bound=AnyAttributes)


@dataclass(slots=True, frozen=True)
class _Context(Generic[AttrsT]):
    candidate: NormalizedCandidate
    attributes: AttrsT
    rules: ScoringRules
    now: datetime

    def days_since(self, value: datetime | None) -> float | None:
        if value is None:
            return None
        return (self.now - value).total_seconds() / 86400.0

    def days_until(self, value: datetime | None) -> float | None:
        if value is None:
            return None
        return (value - self.now).total_seconds() / 86400.0


@dataclass(slots=True, frozen=True)
class Factor(Generic[RuleAttrsT]):
    name: str
    cap: int
    evaluate: Callable[[_Context[RuleAttrsT]], Points]

    def apply(self, ctx: _Context[RuleAttrsT]) -> tuple[int, list[str]]:
        awarded = self.evaluate(ctx)
        total = sum(points for points, _ in awarded)
        return min(total, self.cap), [f"{reason} (+{points})" for points, reason in awarded if points]


@dataclass(slots=True, frozen=True)
class CategoryRuleSet(Generic[RuleAttrsT]):
    disqualifiers: tuple[Callable[[_Context[RuleAttrsT]], str | None], ...]
    factors: tuple[Factor[RuleAttrsT], ...]


# Project rules -----------------------------------------------------------


def _team_too_large(ctx: _Context[ProjectAttributes]) -> str | None:
    attrs = ctx.attributes
    if attrs.team_size is not None and attrs.team_size > ctx.rules.max_team_size:
        return f"team size {attrs.team_size} exceeds {ctx.rules.max_team_size}"
    return None


def _overfunded(ctx: _Context[ProjectAttributes]) -> str | None:
    attrs = ctx.attributes
    if attrs.funding_raised is not None and attrs.funding_raised > ctx.rules.max_funding_raised:
        return f"funding raised {attrs.funding_raised:,.0f} exceeds {ctx.rules.max_funding_raised:,.0f}"
    return None


def _launched_too_early(ctx: _Context[ProjectAttributes]) -> str | None:
    attrs = ctx.attributes
    if attrs.launch_date is not None and attrs.launch_date.year < ctx.rules.min_launch_year:
        return f"launched in {attrs.launch_date.year}, before {ctx.rules.min_launch_year}"
    return None


def _corporate_backed(ctx: _Context[ProjectAttributes]) -> str | None:
    words = set(_WORD_RE.findall(ctx.candidate.description.lower()))
    backers = sorted(words & {backer.lower() for backer in ctx.rules.excluded_backers})
    if backers:
        return f"corporate-backed ({', '.join(backers)})"
    return None


def _project_stage(ctx: _Context[ProjectAttributes]) -> Points:
    days = ctx.days_since(ctx.attributes.launch_date)
    if days is None:
        return [(15, "launch date unknown")]
    months = days / 30.0
    if months < 3:
        return [(30, "launched under 3 months ago")]
    if months < 6:
        return [(20, "launched under 6 months ago")]
    if months < 12:
        return [(10, "launched under 12 months ago")]
    return [(5, "launched over a year ago")]


def _project_team(ctx: _Context[ProjectAttributes]) -> Points:
    size = ctx.attributes.team_size
    if size is None:
        return [(10, "team size unknown")]
    if size <= 3:
        return [(20, "team of 3 or fewer")]
    if size <= 5:
        return [(15, "team of 5 or fewer")]
    return [(10, f"team of {ctx.rules.max_team_size} or fewer")]


def _project_funding(ctx: _Context[ProjectAttributes]) -> Points:
    raised = ctx.attributes.funding_raised
    if raised is None:
        return [(8, "funding history unknown")]
    if raised == 0:
        return [(15, "pre-funding")]
    if raised < 100_000:
        return [(10, "raised under $100k")]
    return [(5, f"raised under ${ctx.rules.max_funding_raised:,.0f}")]


def _project_validation(ctx: _Context[ProjectAttributes]) -> Points:
    attrs = ctx.attributes
    points: Points = []
    if attrs.grant_participation:
        points.append((15, "grant participant"))
    if attrs.incubator_participation:
        points.append((15, "incubator alumni"))
    if attrs.users is not None and attrs.users > 100:
        points.append((10, "100+ users"))
    if attrs.github_stars is not None and attrs.github_stars > 50:
        points.append((10, "50+ GitHub stars"))
    return points


def _project_needs(ctx: _Context[ProjectAttributes]) -> Points:
    needs = {need.strip().lower() for need in ctx.attributes.project_needs}
    points: Points = []
    if "co-founder" in needs:
        points.append((15, "seeking co-founder"))
    if "funding" in needs:
        points.append((10, "seeking funding"))
    if "developers" in needs:
        points.append((10, "seeking developers"))
    others = needs - {"co-founder", "funding", "developers"}
    if others:
        points.append((5 * len(others), f"other needs: {', '.join(sorted(others))}"))
    return points


def _project_activity(ctx: _Context[ProjectAttributes]) -> Points:
    days = ctx.days_since(ctx.attributes.last_activity)
    if days is None:
        return [(5, "activity unknown")]
    if days < 7:
        return [(10, "active this week")]
    if days < 30:
        return [(5, "active this month")]
    return []


# Funding rules -----------------------------------------------------------


def _deadline_too_close(ctx: _Context[FundingAttributes]) -> str | None:
    days = ctx.days_until(ctx.attributes.deadline)
    if days is None:
        return None
    if days < 0:
        return "deadline has passed"
    if days < ctx.rules.min_days_to_deadline:
        return f"deadline in {math.floor(days)} days, under {ctx.rules.min_days_to_deadline}"
    return None


def _funding_base(ctx: _Context[FundingAttributes]) -> Points:
    return [(20, "funding opportunity")]


def _funding_deadline(ctx: _Context[FundingAttributes]) -> Points:
    days = ctx.days_until(ctx.attributes.deadline)
    if days is None:
        return [(15, "rolling deadline")]
    if days < 30:
        return [(20, "deadline within 30 days")]
    if days < 60:
        return [(10, "deadline within 60 days")]
    return [(5, "deadline over 60 days out")]


def _funding_amount(ctx: _Context[FundingAttributes]) -> Points:
    attrs = ctx.attributes
    points: Points = []
    if attrs.min_amount is not None and attrs.min_amount <= 10_000:
        points.append((15, "low minimum of $10k or less"))
    if attrs.max_amount is not None and attrs.max_amount >= 100_000:
        points.append((10, "maximum of $100k or more"))
    return points


def _funding_terms(ctx: _Context[FundingAttributes]) -> Points:
    attrs = ctx.attributes
    if attrs.equity_required is False:
        return [(20, "no equity required")]
    if attrs.equity_percentage is not None and attrs.equity_percentage < 7:
        return [(10, "equity under 7%")]
    if attrs.equity_required is None and attrs.equity_percentage is None:
        return [(10, "equity terms unknown")]
    return []


def _funding_activity(ctx: _Context[FundingAttributes]) -> Points:
    days = ctx.days_since(ctx.attributes.last_investment_date)
    if days is None:
        return [(10, "investment activity unknown")]
    if days < 30:
        return [(20, "invested within 30 days")]
    if days < 90:
        return [(10, "invested within 90 days")]
    if days < 180:
        return [(5, "invested within 180 days")]
    return []


def _funding_benefits(ctx: _Context[FundingAttributes]) -> Points:
    benefits = {benefit.strip().lower() for benefit in ctx.attributes.benefits}
    points: Points = []
    if "mentorship" in benefits:
        points.append((5, "includes mentorship"))
    if "network" in benefits:
        points.append((5, "network access"))
    return points


# Resource rules ----------------------------------------------------------


def _too_expensive(ctx: _Context[ResourceAttributes]) -> str | None:
    attrs = ctx.attributes
    if attrs.price_type in (None, "paid") and attrs.price_amount is not None:
        if attrs.price_amount > ctx.rules.max_resource_price:
            return f"price {attrs.price_amount:,.2f} exceeds {ctx.rules.max_resource_price:,.2f}"
    return None


def _stale_resource(ctx: _Context[ResourceAttributes]) -> str | None:
    days = ctx.days_since(ctx.attributes.last_updated)
    if days is not None and days / 30.0 > ctx.rules.max_resource_age_months:
        return f"not updated in over {ctx.rules.max_resource_age_months} months"
    return None


def _resource_base(ctx: _Context[ResourceAttributes]) -> Points:
    return [(10, "resource")]


def _resource_price(ctx: _Context[ResourceAttributes]) -> Points:
    attrs = ctx.attributes
    if attrs.price_type == "free":
        return [(20, "free")]
    if attrs.price_type == "freemium":
        return [(15, "freemium")]
    if attrs.price_amount is not None:
        return [(10, f"affordable at ${attrs.price_amount:,.2f}")]
    return [(10, "pricing unknown")]


def _resource_recency(ctx: _Context[ResourceAttributes]) -> Points:
    days = ctx.days_since(ctx.attributes.last_updated)
    if days is None:
        return [(10, "update date unknown")]
    months = days / 30.0
    if months < 1:
        return [(15, "updated this month")]
    if months < 3:
        return [(10, "updated within 3 months")]
    if months < 6:
        return [(5, "updated within 6 months")]
    return []


def _resource_credibility(ctx: _Context[ResourceAttributes]) -> Points:
    attrs = ctx.attributes
    credibility = (attrs.provider_credibility or "").lower()
    points: Points = []
    if "yc" in _WORD_RE.findall(credibility) or "combinator" in credibility:
        points.append((10, "YC-backed provider"))
    if "a16z" in credibility or "andreessen" in credibility:
        points.append((10, "a16z-backed provider"))
    if attrs.success_stories:
        points.append((10, "has success stories"))
    return points


def _resource_relevance(ctx: _Context[ResourceAttributes]) -> Points:
    attrs = ctx.attributes
    points: Points = []
    if attrs.topic and attrs.topic.strip().lower() in RELEVANT_RESOURCE_TOPICS:
        points.append((10, f"relevant topic {attrs.topic.strip().lower()}"))
    if (attrs.difficulty_level or "").strip().lower() == "beginner":
        points.append((5, "beginner friendly"))
    return points


# Universal boosts --------------------------------------------------------


def _recency_boost(ctx: _Context[AnyAttributes]) -> Points:
    days = ctx.days_since(ctx.candidate.associated_date)
    if days is None or days < 0:
        return []
    if days < 1:
        return [(15, "posted within 24 hours")]
    if days < 3:
        return [(10, "posted within 3 days")]
    if days < 7:
        return [(5, "posted within a week")]
    return []


def _engagement_boost(ctx: _Context[AnyAttributes]) -> Points:
    attrs = ctx.attributes
    if isinstance(attrs, ProjectAttributes) and attrs.github_stars is not None:
        if attrs.github_stars > 500:
            return [(10, "500+ GitHub stars")]
        if attrs.github_stars > 100:
            return [(5, "100+ GitHub stars")]
    if isinstance(attrs, ResourceAttributes) and attrs.quality_score is not None:
        return [(int(attrs.quality_score // 20), f"quality score {attrs.quality_score:.0f}")]
    return []


def _completeness_boost(ctx: _Context[AnyAttributes]) -> Points:
    completeness = ctx.attributes.completeness()
    points: Points = [(math.floor(completeness * 10), f"{completeness:.0%} of key attributes present")]
    if len(ctx.candidate.description) > LONG_DESCRIPTION_CHARS:
        points.append((5, "detailed description"))
    return points


UNIVERSAL_FACTORS: tuple[Factor[AnyAttributes], ...] = (
    Factor("recency", 15, _recency_boost),
    Factor("engagement", 10, _engagement_boost),
    Factor("completeness", 15, _completeness_boost),
)

RULE_TABLE: dict[Category, CategoryRuleSet[Any]] = {
    "project": CategoryRuleSet(
        disqualifiers=(_team_too_large, _overfunded, _launched_too_early, _corporate_backed),
        factors=(
            Factor("stage", 30, _project_stage),
            Factor("team", 20, _project_team),
            Factor("funding_stage", 15, _project_funding),
            Factor("validation", 30, _project_validation),
            Factor("needs", 25, _project_needs),
            Factor("activity", 10, _project_activity),
        ),
    ),
    "funding": CategoryRuleSet(
        disqualifiers=(_deadline_too_close,),
        factors=(
            Factor("base", 20, _funding_base),
            Factor("deadline", 20, _funding_deadline),
            Factor("amount", 25, _funding_amount),
            Factor("terms", 20, _funding_terms),
            Factor("activity", 20, _funding_activity),
            Factor("benefits", 10, _funding_benefits),
        ),
    ),
    "resource": CategoryRuleSet(
        disqualifiers=(_too_expensive, _stale_resource),
        factors=(
            Factor("base", 10, _resource_base),
            Factor("price", 20, _resource_price),
            Factor("recency", 15, _resource_recency),
            Factor("credibility", 20, _resource_credibility),
            Factor("relevance", 15, _resource_relevance),
        ),
    ),
}


class QualificationScorer:
    def __init__(self, rules: ScoringRules | None = None) -> None:
        self.rules = rules or ScoringRules()

    @classmethod
    def from_settings(cls, settings: Settings) -> QualificationScorer:
        return cls(parse_scoring_rules(settings.scoring_rules_json))

    def score(self, candidate: NormalizedCandidate, *, now: datetime | None = None) -> QualificationResult:
        ctx = _Context(
            candidate=candidate,
            attributes=candidate.attributes,
            rules=self.rules,
            now=now or datetime.now(timezone.utc),
        )
        rule_set = RULE_TABLE[candidate.category]

        violations = [message for check in rule_set.disqualifiers if (message := check(ctx))]
        if violations:
            return QualificationResult(
                candidate=candidate,
                score=0,
                reasons=tuple(f"disqualified: {message}" for message in violations),
                disqualified=True,
            )

        total = 0
        reasons: list[str] = []
        for factor in (*rule_set.factors, *UNIVERSAL_FACTORS):
            points, factor_reasons = factor.apply(ctx)
            total += points
            reasons.extend(factor_reasons)

        return QualificationResult(
            candidate=candidate,
            score=max(0, min(100, total)),
            reasons=tuple(reasons),
        )

    def score_and_rank(
        self,
        batch: Iterable[NormalizedCandidate],
        *,
        now: datetime | None = None,
    ) -> list[QualificationResult]:
        current = now or datetime.now(timezone.utc)
        return rank([self.score(candidate, now=current) for candidate in batch])


def rank(results: Iterable[QualificationResult]) -> list[QualificationResult]:
    """Sort by score desc, then most recent associated date, then title."""

    def sort_key(result: QualificationResult) -> tuple[int, int, float, str]:
        associated = result.candidate.associated_date
        timestamp = associated.timestamp() if associated is not None else 0.0
        return (-result.score, 0 if associated is not None else 1, -timestamp, result.candidate.title.casefold())

    return sorted(results, key=sort_key)


def filter_qualified(results: Iterable[QualificationResult], min_threshold: int) -> list[QualificationResult]:
    return [
        result
        for result in results
        if not result.disqualified and result.score > 0 and result.score >= min_threshold
    ]


def summarize_results(results: list[QualificationResult], *, min_threshold: int = 0) -> dict[str, Any]:
    qualified = filter_qualified(results, min_threshold)
    scored = [result for result in results if not result.disqualified]
    by_category: dict[str, int] = {"project": 0, "funding": 0, "resource": 0}
    by_recommendation: dict[str, int] = {"approve": 0, "review": 0, "reject": 0}
    for result in results:
        by_recommendation[result.recommendation] += 1
    for result in qualified:
        by_category[result.candidate.category] += 1
    return {
        "total": len(results),
        "qualified": len(qualified),
        "disqualified": len(results) - len(scored),
        "average_score": round(sum(r.score for r in scored) / len(scored), 2) if scored else 0.0,
        "by_category": by_category,
        "by_recommendation": by_recommendation,
    }
