"""Trend clustering and startup matching: two LLM calls with deterministic post-processing.

Architecture
------------
Step A asks the model to partition the article list into named trend clusters,
each tagged with a parent category and a 0-100 trend score.

Step B asks the model to match every startup to 1-4 of those clusters and to
grade it on three parts:

- **trendAlignment** (0-40): alignment with the trending clusters
- **marketTiming** (0-30): market readiness signals
- **sectorFit** (0-30): quality of the sector match

Everything after that is local arithmetic:

- ``clusterTrendScore``: mean trend score of the matched clusters
- ``marketMomentum``: ``clusterTrendScore * 0.15``, rounded half up
- ``fundingClimate``: ``clusterTrendScore * 0.10``, rounded half up
- ``investmentScore``: weighted sum (see :mod:`fundradar.scoring`), clamped

Startups the model left out are appended with an all-zero placeholder so each
input startup appears exactly once, then the list is sorted by score.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any

from fundradar.errors import ClusteringError, ConfigurationError
from fundradar.schemas import (
    PARENT_CATEGORIES,
    ClusterMatch,
    ClusterResult,
    ClusteringResult,
    ClusteringStats,
    ScoreBreakdown,
    ScrapedArticle,
    Startup,
    StartupClusterMatch,
)
from fundradar.scoring import compute_investment_score, derive_market_metrics
from fundradar.utils import round_half_up, strip_code_fences

log = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "https://ai.gateway.lovable.dev/v1"


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LLMResponseParseError(LLMCallError):
    """The model answered, but not with valid JSON."""


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Async LLM client for an OpenAI-compatible gateway, OpenAI, or Anthropic."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "openai_compatible")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            key = self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            if not key:
                raise ConfigurationError("ANTHROPIC_API_KEY not configured")
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(api_key=key)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            if self.provider == "openai_compatible":
                key_name = "AI_GATEWAY_API_KEY"
                key = self._api_key or os.environ.get(key_name)
                url = self._base_url or os.environ.get("AI_GATEWAY_URL", DEFAULT_GATEWAY_URL)
                self.model = self.model or "google/gemini-3-flash-preview"
            else:
                key_name = "OPENAI_API_KEY"
                key = self._api_key or os.environ.get(key_name)
                url = self._base_url or os.environ.get("OPENAI_BASE_URL")
                self.model = self.model or "gpt-4o-mini"
            if not key:
                raise ConfigurationError(f"{key_name} not configured")
            kwargs: dict[str, Any] = {"api_key": key}
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call(self, system: str, user: str, temperature: float = 0.3) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=16384,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text if response.content else ""
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    temperature=temperature,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = (response.choices[0].message.content or "") if response.choices else ""
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            raise LLMCallError(f"LLM API call failed: {exc}", status_code=status) from exc

        text = strip_code_fences(text.strip())
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMResponseParseError(f"LLM returned invalid JSON: {text[:200]}") from exc


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

CLUSTER_SYSTEM_PROMPT = (
    "You are an expert at analyzing startup and tech news to identify industry trends. "
    "Always return valid JSON."
)

MATCH_SYSTEM_PROMPT = (
    "You are an expert at evaluating startup investment potential based on market trends. "
    "Always return valid JSON."
)

_PARENT_CATEGORY_GUIDE = """\
Parent categories (MUST use one of these):
- biotech: Biotechnology, healthcare, pharma, medtech, life sciences
- saas: B2B/B2C software, enterprise tools, AI/ML software
- hardware: Physical products, IoT, robotics, manufacturing
- food: FoodTech, AgriTech, alternative proteins, restaurants
- fintech: Payments, banking, insurance, crypto, investments
- marketplace: B2B/B2C marketplaces, e-commerce platforms
- deeptech: Quantum computing, space tech, advanced materials, nuclear
- climate: CleanTech, renewables, sustainability, carbon capture
- other: Other emerging sectors"""

_CLUSTER_INSTRUCTIONS = """\
Create SPECIFIC but BROAD-ENOUGH clusters so most startups can find a match, e.g.
"AI & Automation Tools" (saas), "Digital Health & Wellness" (biotech),
"Consumer & Retail Tech" (marketplace), "Sustainability Solutions" (climate).
Aim for 3-5 clusters per active parent category.

Respond with ONLY valid JSON:
{
  "clusters": [
    {
      "id": 1,
      "name": "<specific 3-5 word niche, e.g. 'AI-Powered Legal Tech'>",
      "parentCategory": "<biotech|saas|hardware|food|fintech|marketplace|deeptech|climate|other>",
      "description": "<2-3 sentences describing the niche>",
      "keywords": ["<6-8 specific keywords>"],
      "articleIndices": [1, 5, 12],
      "trendScore": <0-100 based on article volume and momentum signals>
    }
  ]
}

Rules:
- Each cluster MUST have a valid parentCategory from the list above
- Each article belongs to exactly ONE cluster (use the bracketed article numbers)
- Include 6-8 specific keywords per cluster"""

_MATCH_INSTRUCTIONS = """\
You MUST match EVERY startup to at least one cluster. Be lenient:
- Match by name keywords, tags and website domain hints
- Tech-related startups go to the relevant tech clusters
- If unclear, use the most general applicable cluster

For each startup provide:
1. 1-4 matching clusters, each with a match score between 0.3 and 1.0
2. A score breakdown:
   - trendAlignment (0-40): alignment with trending clusters
   - marketTiming (0-30): market readiness signals
   - sectorFit (0-30): sector match quality
3. trendCorrelation (0-1): overall correlation with the trends

Respond with ONLY valid JSON:
{
  "matches": [
    {
      "startupIndex": 1,
      "clusters": [{"clusterId": 1, "score": 0.75}],
      "scoreBreakdown": {"trendAlignment": 28, "marketTiming": 22, "sectorFit": 20},
      "trendCorrelation": 0.7
    }
  ]
}"""


def build_cluster_prompt(articles: list[ScrapedArticle], num_clusters: int) -> str:
    """Enumerate articles (1-based) and ask for *num_clusters* trend clusters."""
    lines = [
        f"Analyze these startup/tech news articles and identify {num_clusters} SPECIFIC "
        "trend clusters organized under parent categories.",
        "",
        "Articles:",
    ]
    lines.extend(f'[{i}] "{a.title}" - {a.excerpt}' for i, a in enumerate(articles, 1))
    lines += ["", _PARENT_CATEGORY_GUIDE, "", _CLUSTER_INSTRUCTIONS]
    return "\n".join(lines)


def _startup_line(idx: int, s: Startup) -> str:
    parts = [f"[{idx}] {s.name}"]
    if s.tags:
        parts.append(f"Tags: {s.tags}")
    if s.website:
        parts.append(s.website)
    if s.business_type:
        parts.append(f"Type: {s.business_type}")
    if s.maturity:
        parts.append(f"Stage: {s.maturity}")
    return " | ".join(parts)


def build_match_prompt(clusters: list[ClusterResult], startups: list[Startup]) -> str:
    """List clusters (hottest first) and startups (1-based) for the matching call."""
    ranked = sorted(clusters, key=lambda c: c.trend_score, reverse=True)
    lines = [
        "Match ALL startups to trend clusters. EVERY startup must be matched to at least one cluster.",
        "",
        "CLUSTERS:",
    ]
    lines.extend(
        f'Cluster {c.id}: "{c.name}" (Category: {c.parent_category}, '
        f"Trend: {c.trend_score:g}/100) - Keywords: {', '.join(c.keywords)}"
        for c in ranked
    )
    lines += ["", "STARTUPS:"]
    lines.extend(_startup_line(i, s) for i, s in enumerate(startups, 1))
    lines += [
        "",
        _MATCH_INSTRUCTIONS,
        "",
        f"EVERY startup MUST appear in matches (indices 1 to {len(startups)}).",
    ]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Response normalization
# ---------------------------------------------------------------------------


def _num(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _validate_parent_category(val: Any) -> str:
    cat = str(val or "other").strip().lower()
    if cat not in PARENT_CATEGORIES:
        log.warning("Unknown parent category %r, defaulting to other", val)
        return "other"
    return cat


def parse_clusters(raw: Any, articles: list[ScrapedArticle]) -> list[ClusterResult]:
    """Turn the model's cluster JSON into ClusterResults.

    A missing or zero trend score defaults to 50; ``articleCount`` only counts
    indices that resolve to a real article.
    """
    items = raw.get("clusters") if isinstance(raw, dict) else None
    if not isinstance(items, list):
        raise LLMResponseParseError("LLM cluster response has no 'clusters' list")

    clusters: list[ClusterResult] = []
    for pos, item in enumerate(items, 1):
        if not isinstance(item, dict):
            continue
        indices = item.get("articleIndices")
        if not isinstance(indices, list):
            indices = []
        resolved = [
            i for i in (_int_or_none(x) for x in indices)
            if i is not None and 1 <= i <= len(articles)
        ]
        keywords = item.get("keywords")
        cluster_id = _int_or_none(item.get("id"))
        clusters.append(ClusterResult(
            id=cluster_id if cluster_id is not None else pos,
            name=str(item.get("name") or f"Cluster {pos}"),
            description=str(item.get("description") or ""),
            keywords=[str(k) for k in keywords] if isinstance(keywords, list) else [],
            article_count=len(resolved),
            trend_score=min(100.0, max(0.0, _num(item.get("trendScore")) or 50.0)),
            parent_category=_validate_parent_category(item.get("parentCategory")),
        ))
    return clusters


def _raw_matches(raw: Any) -> list[dict[str, Any]]:
    items = raw.get("matches") if isinstance(raw, dict) else None
    if not isinstance(items, list):
        raise LLMResponseParseError("LLM match response has no 'matches' list")
    return [m for m in items if isinstance(m, dict)]


def _placeholder(startup: Startup) -> StartupClusterMatch:
    return StartupClusterMatch(
        startup=startup, clusters=[], investment_score=0, trend_correlation=0,
        score_breakdown=ScoreBreakdown(),
    )


def build_startup_matches(
    startups: list[Startup],
    clusters: list[ClusterResult],
    raw_matches: list[dict[str, Any]],
    weights: dict[str, float] | None = None,
) -> list[StartupClusterMatch]:
    """Score the model's matches and guarantee one entry per input startup.

    Out-of-range or repeated ``startupIndex`` values are dropped (first one
    wins); startups with no usable match get a zero-score placeholder.
    Result is sorted by investment score, highest first.
    """
    by_id = {c.id: c for c in clusters}
    seen: set[int] = set()
    results: list[StartupClusterMatch] = []

    for m in raw_matches:
        idx = _int_or_none(m.get("startupIndex"))
        if idx is None or not 1 <= idx <= len(startups) or idx in seen:
            log.warning("Ignoring match with invalid or repeated startupIndex %r", m.get("startupIndex"))
            continue
        seen.add(idx)

        entries = m.get("clusters")
        if not isinstance(entries, list):
            entries = []
        matched: list[ClusterMatch] = []
        trend_scores: list[float] = []
        for e in entries:
            if not isinstance(e, dict):
                continue
            cid = _int_or_none(e.get("clusterId"))
            if cid is None:
                continue
            cluster = by_id.get(cid)
            if cluster is not None:
                trend_scores.append(cluster.trend_score)
            matched.append(ClusterMatch(
                cluster_id=cid,
                cluster_name=cluster.name if cluster else "Unknown",
                score=_num(e.get("score")),
            ))
        matched.sort(key=lambda c: c.score, reverse=True)

        avg_trend = round_half_up(sum(trend_scores) / len(trend_scores)) if trend_scores else 0
        momentum, funding = derive_market_metrics(avg_trend)
        rb = m.get("scoreBreakdown")
        if not isinstance(rb, dict):
            rb = {}
        breakdown = ScoreBreakdown(
            trend_alignment=_num(rb.get("trendAlignment")),
            market_timing=_num(rb.get("marketTiming")),
            sector_fit=_num(rb.get("sectorFit")),
            market_momentum=momentum,
            funding_climate=funding,
            cluster_trend_score=avg_trend,
        )
        results.append(StartupClusterMatch(
            startup=startups[idx - 1],
            clusters=matched,
            investment_score=compute_investment_score(breakdown, weights),
            trend_correlation=_num(m.get("trendCorrelation")),
            score_breakdown=breakdown,
        ))

    for idx, startup in enumerate(startups, 1):
        if idx not in seen:
            results.append(_placeholder(startup))

    results.sort(key=lambda r: r.investment_score, reverse=True)
    return results


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def _gateway_error(exc: LLMCallError, *, matching: bool) -> ClusteringError:
    if isinstance(exc, LLMResponseParseError):
        msg = "Failed to parse AI matching results" if matching else "Failed to parse AI cluster analysis"
        return ClusteringError(msg, 500)
    if exc.status_code == 429:
        suffix = " during matching" if matching else ""
        return ClusteringError(f"Rate limit exceeded{suffix}. Please try again later.", 429)
    if exc.status_code == 402:
        return ClusteringError("Payment required. Please add credits to continue.", 402)
    if matching:
        return ClusteringError(f"AI startup matching failed: {exc.status_code or 'error'}", 500)
    return ClusteringError("AI analysis failed", 500)


async def identify_clusters(
    client: LLMClient, articles: list[ScrapedArticle], num_clusters: int = 20,
) -> list[ClusterResult]:
    prompt = build_cluster_prompt(articles, num_clusters)
    log.info("Calling LLM to identify %d clusters over %d articles", num_clusters, len(articles))
    try:
        raw = await client.call(CLUSTER_SYSTEM_PROMPT, prompt, temperature=0.3)
        return parse_clusters(raw, articles)
    except LLMCallError as exc:
        log.error("Cluster identification failed: %s", exc)
        raise _gateway_error(exc, matching=False) from exc


async def match_startups(
    client: LLMClient, clusters: list[ClusterResult], startups: list[Startup],
) -> list[dict[str, Any]]:
    prompt = build_match_prompt(clusters, startups)
    log.info("Calling LLM to match %d startups against %d clusters", len(startups), len(clusters))
    try:
        raw = await client.call(MATCH_SYSTEM_PROMPT, prompt, temperature=0.2)
        return _raw_matches(raw)
    except LLMCallError as exc:
        log.error("Startup matching failed: %s", exc)
        raise _gateway_error(exc, matching=True) from exc


async def cluster_startups(
    articles: list[ScrapedArticle],
    startups: list[Startup],
    client: LLMClient | None = None,
    num_clusters: int = 20,
    weights: dict[str, float] | None = None,
) -> ClusteringResult:
    """Cluster *articles* into trends and score every startup against them.

    Raises:
        ClusteringError: on any gateway or parse failure; there is no partial result.
    """
    if client is None:
        client = LLMClient()
    log.info("Using %s scoring weights", "custom" if weights else "default")

    clusters = await identify_clusters(client, articles, num_clusters)
    raw_matches = await match_startups(client, clusters, startups)
    matches = build_startup_matches(startups, clusters, raw_matches, weights)

    stats = ClusteringStats(
        total_articles=len(articles),
        total_startups=len(startups),
        clusters_created=len(clusters),
        startups_matched=sum(1 for m in matches if m.clusters),
    )
    log.info("Clustering complete: %d clusters, %d startups scored", len(clusters), len(matches))
    return ClusteringResult(clusters=clusters, startup_matches=matches, stats=stats)
