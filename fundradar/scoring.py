"""Configurable investment scoring: metric catalogue, weight normalization, tiers.

A startup's score breakdown carries six computed sub-scores, each with a
nominal maximum. With no custom weights the investment score is the plain
sum of the three LLM-assigned parts (trend alignment, market timing and
sector fit, totalling 100). With custom weights every sub-score is scaled to
its maximum, multiplied by its weight, and the weights are normalized to 100.
"""
from __future__ import annotations

from collections import defaultdict

from fundradar.schemas import ScoreBreakdown, ScoringConfig, ScoringMetric
from fundradar.utils import round_half_up

# Nominal maximum per computed sub-score (metric id -> max points)
METRIC_MAX_POINTS: dict[str, float] = {
    "trendAlignment": 40,
    "marketTiming": 30,
    "sectorFit": 30,
    "marketMomentum": 15,
    "fundingClimate": 10,
    "clusterTrendScore": 100,
}

_BREAKDOWN_FIELDS: dict[str, str] = {
    "trendAlignment": "trend_alignment",
    "marketTiming": "market_timing",
    "sectorFit": "sector_fit",
    "marketMomentum": "market_momentum",
    "fundingClimate": "funding_climate",
    "clusterTrendScore": "cluster_trend_score",
}

MARKET_MOMENTUM_FACTOR = 0.15
FUNDING_CLIMATE_FACTOR = 0.10

# ---------------------------------------------------------------------------
# Metric catalogue
# ---------------------------------------------------------------------------

# (id, name, description, category, enabled, weight)
_METRIC_SPECS: list[tuple[str, str, str, str, bool, float]] = [
    ("trendAlignment", "Trend Alignment",
     "How well the startup aligns with current market trends from news analysis",
     "market", True, 40),
    ("marketTiming", "Market Timing",
     "Market readiness signals - is the market ready for this solution?",
     "market", True, 30),
    ("marketMomentum", "Market Momentum",
     "Article volume growth rate in matched clusters (accelerating vs cooling)",
     "market", True, 15),
    ("fundingClimate", "Funding Climate",
     "Recent funding activity in the sector based on news mentions",
     "market", True, 10),
    ("competitiveDensity", "Competitive Density",
     "Number of similar startups in trend clusters (inverse - less is better)",
     "market", False, 5),
    ("sectorFit", "Sector Fit",
     "How well the startup fits within its identified sector/cluster",
     "startup", True, 30),
    ("maturityScore", "Maturity Stage",
     "Investment attractiveness based on funding stage",
     "startup", False, 10),
    ("teamStrength", "Team Strength",
     "Quality signals from team description (if provided)",
     "startup", False, 10),
    ("clusterTrendScore", "Cluster Trend Score",
     "Average trend score of matched clusters",
     "trend", True, 20),
    ("multiClusterBonus", "Multi-Cluster Bonus",
     "Bonus for matching multiple trending clusters",
     "trend", False, 5),
]


def default_metrics() -> list[ScoringMetric]:
    return [
        ScoringMetric(
            id=mid, name=name, description=desc, category=cat,
            enabled=enabled, weight=weight, max_points=weight,
        )
        for mid, name, desc, cat, enabled, weight in _METRIC_SPECS
    ]


def default_config() -> ScoringConfig:
    return ScoringConfig(metrics=default_metrics(), normalize_weights=True)


def _preset(factors: dict[str, float], enabled: dict[str, bool]) -> ScoringConfig:
    metrics = [
        m.model_copy(update={
            "enabled": enabled[m.category],
            "weight": m.weight * factors[m.category],
        })
        for m in default_metrics()
    ]
    return ScoringConfig(metrics=metrics, normalize_weights=True)


SCORING_PRESETS: dict[str, ScoringConfig] = {
    "market-focused": _preset(
        {"market": 1.0, "startup": 1.0, "trend": 1.0},
        {"market": True, "startup": False, "trend": True},
    ),
    "balanced": _preset(
        {"market": 0.5, "startup": 0.5, "trend": 1.0},
        {"market": True, "startup": True, "trend": True},
    ),
    "startup-focused": _preset(
        {"market": 0.3, "startup": 1.5, "trend": 1.0},
        {"market": True, "startup": True, "trend": True},
    ),
}


# ---------------------------------------------------------------------------
# Weight normalization
# ---------------------------------------------------------------------------


def normalize_weights(metrics: list[ScoringMetric]) -> list[ScoringMetric]:
    """Scale enabled weights so they sum to 100; disabled weights are kept as-is.

    Returns the metrics unchanged when the enabled weights sum to zero.
    """
    total = sum(m.weight for m in metrics if m.enabled)
    if total == 0:
        return metrics
    return [
        m.model_copy(update={"weight": round_half_up(m.weight / total * 100)}) if m.enabled else m
        for m in metrics
    ]


def config_to_weights(config: ScoringConfig) -> dict[str, float]:
    """Flatten a config into ``{metric_id: weight}`` for enabled metrics."""
    metrics = normalize_weights(config.metrics) if config.normalize_weights else config.metrics
    return {m.id: m.weight for m in metrics if m.enabled}


def metrics_by_category(metrics: list[ScoringMetric]) -> dict[str, list[ScoringMetric]]:
    grouped: dict[str, list[ScoringMetric]] = defaultdict(list)
    for m in metrics:
        grouped[m.category].append(m)
    return dict(grouped)


# ---------------------------------------------------------------------------
# Score arithmetic
# ---------------------------------------------------------------------------


def derive_market_metrics(avg_cluster_trend: float) -> tuple[int, int]:
    """Return ``(market_momentum, funding_climate)`` from the mean cluster trend score."""
    return (
        round_half_up(avg_cluster_trend * MARKET_MOMENTUM_FACTOR),
        round_half_up(avg_cluster_trend * FUNDING_CLIMATE_FACTOR),
    )


def clamp_score(score: float) -> float:
    return min(100, max(0, score))


def compute_investment_score(
    breakdown: ScoreBreakdown, weights: dict[str, float] | None = None,
) -> float:
    """Weighted investment score in [0, 100].

    Weights for metrics that have no computed sub-score still count towards
    the normalization total but contribute nothing.
    """
    if not weights:
        raw = breakdown.trend_alignment + breakdown.market_timing + breakdown.sector_fit
        return clamp_score(raw)

    total = sum(w or 0 for w in weights.values())
    normalize = 100 / total if total > 0 else 1
    raw = 0.0
    for metric_id, max_points in METRIC_MAX_POINTS.items():
        weight = weights.get(metric_id) or 0
        value = getattr(breakdown, _BREAKDOWN_FIELDS[metric_id])
        raw += weight * (value / max_points) * normalize
    return clamp_score(round_half_up(raw))


def investment_tier(score: float) -> str:
    """Map an investment score onto its display tier (lower bounds inclusive)."""
    if score >= 80:
        return "Hot"
    if score >= 60:
        return "Strong"
    if score >= 40:
        return "Moderate"
    if score >= 20:
        return "Low"
    return "Minimal"
