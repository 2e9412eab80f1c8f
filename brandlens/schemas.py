"""Pydantic models for the engine's records and the HTTP surface."""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CitationClass = Literal["owned", "competitor", "thirdParty", "unknown"]
ScorecardStatus = Literal["completed", "failed"]
SentimentLabel = Literal["positive", "neutral", "negative", "mixed"]


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class BrandRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    domain: str = ""

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("brand name must not be empty")
        return v


class BrandContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_brand: BrandRef
    competitors: list[BrandRef] = []

    def tracked(self) -> list[BrandRef]:
        """Subject brand first, then competitors with duplicate names dropped."""
        seen = {self.subject_brand.name.casefold()}
        brands = [self.subject_brand]
        for comp in self.competitors:
            key = comp.name.casefold()
            if key not in seen:
                seen.add(key)
                brands.append(comp)
        return brands

    def competitor_domains(self) -> list[str]:
        return [c.domain for c in self.competitors if c.domain]


class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    model: str | None = None
    backend: Literal["openai", "anthropic"] = "openai"


class PromptRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int | None = None
    text: str
    analysis_id: str | None = None
    topic_id: str | None = None
    persona_id: str | None = None


# ---------------------------------------------------------------------------
# Scorecards
# ---------------------------------------------------------------------------


class Citation(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    text: str = ""
    classification: CitationClass = "unknown"
    source: str = "markdown"
    domain: str = ""


class BrandMetric(BaseModel):
    model_config = ConfigDict(frozen=True)

    brand_name: str
    mentioned: bool = False
    mention_count: int = 0
    first_position: int | None = None
    depth_contribution: float = 0.0
    word_count: int = 0
    is_owner: bool = False
    citations: list[Citation] = []
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    match_method: str | None = None
    sentiment: SentimentLabel = "neutral"
    sentiment_score: float = 0.0
    sentiment_drivers: list[tuple[str, str]] = []
    rank_position: int | None = None

    @model_validator(mode="after")
    def position_matches_mention(self) -> BrandMetric:
        if self.mentioned != (self.first_position is not None):
            raise ValueError("first_position must be set exactly when the brand is mentioned")
        return self


class ProviderScorecard(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str = ""
    prompt_id: int | None = None
    prompt_text: str = ""
    analysis_id: str | None = None
    topic_id: str | None = None
    persona_id: str | None = None
    raw_response: str = ""
    latency_ms: int = 0
    tokens_used: int = 0
    total_words: int = 0
    total_sentences: int = 0
    brand_metrics: list[BrandMetric] = []
    citations: list[Citation] = []
    status: ScorecardStatus = "completed"
    failure_reason: str | None = None
    failure_message: str | None = None
    visibility_score: float = 0.0
    overall_score: float = 0.0
    tested_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def completed_has_metrics(self) -> ProviderScorecard:
        if self.status == "completed" and not self.brand_metrics:
            raise ValueError("a completed scorecard needs at least one brand metric")
        if self.status == "failed" and not self.failure_reason:
            raise ValueError("a failed scorecard needs a failure reason")
        return self

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    def subject_metric(self) -> BrandMetric | None:
        for bm in self.brand_metrics:
            if bm.is_owner:
                return bm
        return None

    def metric_for(self, brand_name: str) -> BrandMetric | None:
        key = brand_name.casefold()
        for bm in self.brand_metrics:
            if bm.brand_name.casefold() == key:
                return bm
        return None


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


class ConfidenceInterval(BaseModel):
    model_config = ConfigDict(frozen=True)

    lower: float = 0.0
    upper: float = 0.0


class AggregatedMetric(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope: str
    brand_name: str = ""
    sample_size: int = 0
    visibility_score: float = 0.0
    average_position: float | None = None
    depth_of_mention: float = 0.0
    citation_share: float = 0.0
    sentiment_score: float = 0.0
    share_of_voice: float = 0.0
    visibility_ci: ConfidenceInterval = ConfidenceInterval()
    depth_ci: ConfidenceInterval = ConfidenceInterval()
    citation_share_ci: ConfidenceInterval = ConfidenceInterval()
    raw_visibility: float = 0.0
    raw_depth: float = 0.0
    raw_citation_share: float = 0.0
    total_mentions: int = 0
    total_citations: int = 0
    count_1st: int = 0
    count_2nd: int = 0
    count_3rd: int = 0
    visibility_rank: int | None = None
    last_calculated_at: datetime = Field(default_factory=_now)


class Summary(BaseModel):
    avg_visibility: float = 0.0
    avg_overall_score: float = 0.0
    mention_rate: float = 0.0
    best_provider: str = "none"
    worst_provider: str = "none"
    per_provider_average: dict[str, float] = {}


# ---------------------------------------------------------------------------
# HTTP request/response bodies
# ---------------------------------------------------------------------------


class PromptCreate(BaseModel):
    text: str
    analysis_id: str
    topic_id: str | None = None
    persona_id: str | None = None
    query_type: str = ""

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt text must not be empty")
        return v


class PromptUpdate(BaseModel):
    text: str | None = None
    status: Literal["active", "retired"] | None = None

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("prompt text must not be empty")
        return v


class PromptOut(BaseModel):
    id: int
    text: str
    analysis_id: str
    topic_id: str | None = None
    persona_id: str | None = None
    query_type: str = ""
    status: str


class PromptTestRequest(BaseModel):
    brand_context: BrandContext
    providers: list[ProviderConfig] | None = None


class AggregateResult(BaseModel):
    analysis_id: str
    metrics_written: int
    scopes: list[str]
