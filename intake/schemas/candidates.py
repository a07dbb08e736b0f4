from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, model_validator

from intake.core.urls import content_hash

Category = Literal["project", "funding", "resource"]
Recommendation = Literal["approve", "review", "reject"]
PriceType = Literal["free", "freemium", "paid"]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDateTime = Annotated[datetime, AfterValidator(_as_utc)]


class RawCandidate(BaseModel):
    """Opaque adapter payload tagged with its origin."""

    model_config = ConfigDict(frozen=True)

    origin: str
    fetched_at: UtcDateTime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict[str, Any] = Field(default_factory=dict)


class _Attributes(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    # Attribute names counted by the completeness bonus.
    required_fields: ClassVar[tuple[str, ...]] = ()

    def completeness(self) -> float:
        fields = type(self).required_fields
        if not fields:
            return 0.0
        present = sum(1 for name in fields if getattr(self, name) not in (None, "", ()))
        return present / len(fields)


class ProjectAttributes(_Attributes):
    kind: Literal["project"] = "project"
    launch_date: UtcDateTime | None = None
    team_size: int | None = Field(default=None, ge=0)
    funding_raised: float | None = Field(default=None, ge=0)
    grant_participation: tuple[str, ...] = ()
    incubator_participation: tuple[str, ...] = ()
    users: int | None = Field(default=None, ge=0)
    github_stars: int | None = Field(default=None, ge=0)
    project_needs: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    last_activity: UtcDateTime | None = None

    required_fields: ClassVar[tuple[str, ...]] = (
        "launch_date",
        "funding_raised",
        "team_size",
        "categories",
        "project_needs",
        "last_activity",
    )


class FundingAttributes(_Attributes):
    kind: Literal["funding"] = "funding"
    organization: str | None = None
    funding_type: str | None = None
    deadline: UtcDateTime | None = None
    min_amount: float | None = Field(default=None, ge=0)
    max_amount: float | None = Field(default=None, ge=0)
    equity_required: bool | None = None
    equity_percentage: float | None = Field(default=None, ge=0, le=100)
    last_investment_date: UtcDateTime | None = None
    benefits: tuple[str, ...] = ()
    application_url: str | None = None
    eligibility_criteria: str | None = None

    required_fields: ClassVar[tuple[str, ...]] = (
        "organization",
        "funding_type",
        "min_amount",
        "max_amount",
        "application_url",
        "eligibility_criteria",
        "last_investment_date",
    )


class ResourceAttributes(_Attributes):
    kind: Literal["resource"] = "resource"
    resource_type: str | None = None
    topic: str | None = Field(default=None, validation_alias=AliasChoices("topic", "resource_category"))
    price_type: PriceType | None = None
    price_amount: float | None = Field(default=None, ge=0)
    provider_name: str | None = None
    provider_credibility: str | None = None
    success_stories: tuple[str, ...] = ()
    difficulty_level: str | None = None
    key_benefits: tuple[str, ...] = ()
    quality_score: float | None = Field(default=None, ge=0, le=100)
    last_updated: UtcDateTime | None = None

    required_fields: ClassVar[tuple[str, ...]] = (
        "resource_type",
        "topic",
        "price_type",
        "provider_name",
        "last_updated",
        "key_benefits",
    )


CandidateAttributes = Annotated[
    Union[ProjectAttributes, FundingAttributes, ResourceAttributes],
    Field(discriminator="kind"),
]

ATTRIBUTE_MODELS: dict[str, type[_Attributes]] = {
    "project": ProjectAttributes,
    "funding": FundingAttributes,
    "resource": ResourceAttributes,
}


class NormalizedCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = Field(min_length=1)
    source_url: str
    origin: str
    title: str = Field(min_length=1)
    description: str = ""
    category: Category
    tags: frozenset[str] = frozenset()
    attributes: CandidateAttributes
    published_at: UtcDateTime | None = None

    @model_validator(mode="after")
    def _attributes_match_category(self) -> "NormalizedCandidate":
        if self.attributes.kind != self.category:
            raise ValueError(f"{self.attributes.kind} attributes on a {self.category} candidate")
        return self

    @property
    def content_hash(self) -> str:
        return content_hash(self.url, self.title, self.description)

    @property
    def associated_date(self) -> datetime | None:
        """Most relevant timestamp for recency boosts and ranking ties."""
        if self.published_at is not None:
            return self.published_at
        attributes = self.attributes
        if isinstance(attributes, ProjectAttributes):
            return attributes.last_activity or attributes.launch_date
        if isinstance(attributes, FundingAttributes):
            return attributes.last_investment_date
        return attributes.last_updated


class CorpusRecord(BaseModel):
    """A previously admitted item as exposed by the corpus lookup."""

    id: str
    url: str
    title: str = ""
    description: str = ""
    category: Category | None = None
    created_at: UtcDateTime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QualificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: NormalizedCandidate
    score: int = Field(ge=0, le=100)
    reasons: tuple[str, ...] = ()
    disqualified: bool = False

    @model_validator(mode="after")
    def _disqualified_scores_zero(self) -> "QualificationResult":
        if self.disqualified and self.score != 0:
            raise ValueError("disqualified results must carry score 0")
        return self

    @property
    def recommendation(self) -> Recommendation:
        if self.disqualified:
            return "reject"
        if self.score >= 70:
            return "approve"
        if self.score >= 40:
            return "review"
        return "reject"


class IntakeRecord(BaseModel):
    """Row handed to the sink for a qualified candidate."""

    url: str
    source_url: str
    origin: str
    title: str
    description: str
    category: Category
    tags: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)
    score: int
    reasons: list[str] = Field(default_factory=list)
    recommendation: Recommendation

    @classmethod
    def from_result(cls, result: QualificationResult) -> "IntakeRecord":
        candidate = result.candidate
        return cls(
            url=candidate.url,
            source_url=candidate.source_url,
            origin=candidate.origin,
            title=candidate.title,
            description=candidate.description,
            category=candidate.category,
            tags=sorted(candidate.tags),
            attributes=candidate.attributes.model_dump(mode="json", exclude={"kind"}),
            score=result.score,
            reasons=list(result.reasons),
            recommendation=result.recommendation,
        )
