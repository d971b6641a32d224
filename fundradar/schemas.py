"""Pydantic request/response schemas for the FundRadar API.

Wire payloads use camelCase keys; attributes are snake_case and both spellings
are accepted on input.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ParentCategory = Literal[
    "biotech", "saas", "hardware", "food", "fintech",
    "marketplace", "deeptech", "climate", "other",
]

PARENT_CATEGORIES: tuple[str, ...] = (
    "biotech", "saas", "hardware", "food", "fintech",
    "marketplace", "deeptech", "climate", "other",
)

MATURITY_STAGES: tuple[str, ...] = ("pre-seed", "seed", "series-a", "series-b", "series-c+", "growth")

BUSINESS_TYPES: tuple[str, ...] = (
    "saas", "hardware", "biotech", "food", "fintech", "marketplace", "deeptech", "other",
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------


class NewsArticle(BaseModel):
    """A scraped news item as stored in the ``articles`` table."""
    source: str
    url: str
    title: str | None = None
    published_date: str | None = None
    authors: list[str] = []
    section: str | None = None
    tags: list[str] = []
    is_pro: bool = False
    excerpt: str | None = None


class ScrapedArticle(CamelModel):
    url: str
    title: str = ""
    excerpt: str = ""
    content: str = ""
    scraped_at: str = ""
    funding_amount: float | None = None


class ScrapeError(BaseModel):
    url: str
    error: str


class ScrapeStats(BaseModel):
    total: int
    scraped: int
    failed: int


class ScrapeResult(BaseModel):
    success: bool
    data: list[ScrapedArticle] = []
    errors: list[ScrapeError] | None = None
    stats: ScrapeStats | None = None


class ScrapeArticlesRequest(BaseModel):
    articles: list[NewsArticle] | None = None


class LightpandaRequest(CamelModel):
    url: str = ""
    wait_for: int | None = None
    only_main_content: bool | None = None


# ---------------------------------------------------------------------------
# Startups & clustering
# ---------------------------------------------------------------------------


class Startup(CamelModel):
    name: str
    website: str | None = None
    tags: str | None = None
    linkedin: str | None = None
    email: str | None = None
    blurb: str | None = None
    location: str | None = None
    maturity: str | None = None
    amount_raised: str | None = None
    business_type: str | None = None
    team: str | None = None
    market: str | None = None
    value_prop: str | None = None
    competition: str | None = None


class ClusterResult(CamelModel):
    id: int
    name: str
    description: str = ""
    keywords: list[str] = []
    article_count: int = 0
    trend_score: float = 50
    parent_category: ParentCategory = "other"


class ClusterMatch(CamelModel):
    cluster_id: int
    cluster_name: str
    score: float


class ScoreBreakdown(CamelModel):
    trend_alignment: float = 0
    market_timing: float = 0
    sector_fit: float = 0
    market_momentum: float = 0
    funding_climate: float = 0
    cluster_trend_score: float = 0


class StartupClusterMatch(CamelModel):
    startup: Startup
    clusters: list[ClusterMatch] = []
    investment_score: float = 0
    trend_correlation: float = 0
    score_breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)


class ClusteringStats(CamelModel):
    total_articles: int
    total_startups: int
    clusters_created: int
    startups_matched: int


class ClusteringResult(CamelModel):
    success: bool = True
    clusters: list[ClusterResult]
    startup_matches: list[StartupClusterMatch]
    stats: ClusteringStats


class ClusteringRequest(CamelModel):
    scraped_articles: list[ScrapedArticle] | None = None
    startups: list[Startup] | None = None
    num_clusters: int = 20
    scoring_weights: dict[str, float] | None = None


# ---------------------------------------------------------------------------
# Scoring configuration
# ---------------------------------------------------------------------------


class ScoringMetric(CamelModel):
    id: str
    name: str
    description: str = ""
    category: Literal["market", "startup", "trend"]
    enabled: bool = True
    weight: float = 0
    max_points: float = 0


class ScoringConfig(CamelModel):
    metrics: list[ScoringMetric]
    normalize_weights: bool = True


class AnalyzeRequest(CamelModel):
    days: int = 7
    num_clusters: int = 20
    scoring_config: ScoringConfig | None = None


class TierRequest(CamelModel):
    investment_score: float


# ---------------------------------------------------------------------------
# Founders
# ---------------------------------------------------------------------------


class FounderProfile(CamelModel):
    name: str
    linkedin_url: str


class EnrichedFounder(CamelModel):
    name: str
    linkedin_url: str
    past_experience: str | None = None
    current_location: str | None = None
    industry_tag: str | None = None
    notes: str | None = None
    analyzed_at: str


class ProfileError(BaseModel):
    name: str
    error: str
    stage: Literal[
        "conversation_create", "message_create", "events_stream",
        "parse_json", "timeout", "unknown",
    ]


class FounderAnalysisRequest(BaseModel):
    profiles: list[FounderProfile] | None = None


class FounderAnalysisStats(BaseModel):
    total: int
    analyzed: int
    failed: int


class FounderAnalysisResult(BaseModel):
    success: bool = True
    founders: list[EnrichedFounder] = []
    errors: list[ProfileError] | None = None
    stats: FounderAnalysisStats


# ---------------------------------------------------------------------------
# Outreach
# ---------------------------------------------------------------------------


class EmailDraftRequest(CamelModel):
    match: StartupClusterMatch
    sender_name: str = ""


class EmailDraft(BaseModel):
    subject: str
    body: str


class OutreachEmailRequest(CamelModel):
    to: str = ""
    subject: str = ""
    body: str = ""
    sender_name: str = ""
    reply_to: str = ""
    startup_name: str = ""


class AirtableExportRequest(CamelModel):
    webhook_url: str = ""
    startups: list[Startup] = []


class StartupImportResult(CamelModel):
    total_imported: int
    startups: list[Startup]


def dump(model: BaseModel) -> dict[str, Any]:
    """Serialize with wire (camelCase) keys."""
    return model.model_dump(by_alias=True)

