"""Aggregation: fold scorecards into smoothed, interval-scored metrics per scope.

Scopes are plain strings: ``overall``, ``platform:<provider>``,
``topic:<id>``, ``persona:<id>`` and ``prompt:<id>``.  Everything here is a
pure function of the scorecards passed in; callers recompute from the full
set on every run.

Small samples are pulled toward a prior::

    smoothed = (n * raw + w * prior) / (n + w)      when 0 < n < threshold

and every smoothed proportion carries a Wilson score interval computed with
the effective sample size (``n + w`` when smoothing applied, else ``n``).
"""
from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence

from brandlens.config import Settings, get_settings
from brandlens.schemas import AggregatedMetric, BrandMetric, ConfidenceInterval, ProviderScorecard
from brandlens.utils import clamp

log = logging.getLogger(__name__)


class AggregationInputError(Exception):
    """No completed scorecards exist for a scope that must not be empty."""
    def __init__(self, scope: str, brand_name: str | None = None):
        super().__init__(f"No completed scorecards for scope {scope!r}")
        self.scope = scope
        self.brand_name = brand_name


# ---------------------------------------------------------------------------
# Scope selection
# ---------------------------------------------------------------------------

SCOPE_FIELDS = {
    "platform": "provider",
    "topic": "topic_id",
    "persona": "persona_id",
    "prompt": "prompt_id",
}


def parse_scope(scope: str) -> tuple[str, str | None]:
    if scope == "overall":
        return "overall", None
    kind, sep, value = scope.partition(":")
    if not sep or kind not in SCOPE_FIELDS or not value:
        raise ValueError(f"Unknown scope: {scope!r}")
    return kind, value


def in_scope(scorecard: ProviderScorecard, scope: str) -> bool:
    kind, value = parse_scope(scope)
    if kind == "overall":
        return True
    return str(getattr(scorecard, SCOPE_FIELDS[kind])) == value


def scopes_for(scorecards: Iterable[ProviderScorecard]) -> list[str]:
    """``overall`` plus one scope per platform, topic and persona present."""
    found: dict[str, set[str]] = {"platform": set(), "topic": set(), "persona": set()}
    for sc in scorecards:
        for kind in found:
            value = getattr(sc, SCOPE_FIELDS[kind])
            if value is not None and value != "":
                found[kind].add(str(value))
    scopes = ["overall"]
    for kind in ("platform", "topic", "persona"):
        scopes.extend(f"{kind}:{v}" for v in sorted(found[kind]))
    return scopes


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def smooth(raw: float, n: int, threshold: int, prior: float, weight: float) -> tuple[float, float]:
    """Return ``(estimate, effective_n)`` for a proportion in [0, 1]."""
    if n <= 0:
        return 0.0, 0.0
    if n >= threshold or weight <= 0:
        return raw, float(n)
    return (n * raw + weight * prior) / (n + weight), n + weight


def wilson_interval(p: float, n: float, z: float = 1.96) -> ConfidenceInterval:
    """Wilson score interval for proportion ``p``, returned in percent."""
    if n <= 0:
        return ConfidenceInterval(lower=0.0, upper=0.0)
    p = clamp(p, 0.0, 1.0)
    z2 = z * z
    denom = 1 + z2 / n
    center = (p + z2 / (2 * n)) / denom
    half = z * math.sqrt(p * (1 - p) / n + z2 / (4 * n * n)) / denom
    return ConfidenceInterval(
        lower=round(clamp(center - half, 0.0, 1.0) * 100, 4),
        upper=round(clamp(center + half, 0.0, 1.0) * 100, 4),
    )


def _pct(value: float) -> float:
    return round(clamp(value, 0.0, 1.0) * 100, 4)


def _tracked_count(scorecards: Sequence[ProviderScorecard]) -> int:
    return max((len(sc.brand_metrics) for sc in scorecards), default=0)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def _metric(sc: ProviderScorecard, brand_name: str | None) -> BrandMetric | None:
    return sc.subject_metric() if brand_name is None else sc.metric_for(brand_name)


def aggregate(
    scorecards: Iterable[ProviderScorecard],
    scope: str = "overall",
    settings: Settings | None = None,
    brand_name: str | None = None,
    strict: bool = False,
) -> AggregatedMetric:
    """Aggregate one brand (the subject brand by default) over one scope.

    Failed scorecards are ignored.  An empty scope yields an all-zero metric
    unless ``strict`` is set, in which case :class:`AggregationInputError`
    is raised.
    """
    s = settings or get_settings()
    completed = [sc for sc in scorecards if sc.completed and in_scope(sc, scope)]

    metrics: list[BrandMetric] = []
    for sc in completed:
        bm = _metric(sc, brand_name)
        if bm is not None:
            metrics.append(bm)
    resolved_name = brand_name or (metrics[0].brand_name if metrics else "")

    if not completed:
        if strict:
            raise AggregationInputError(scope, brand_name)
        return AggregatedMetric(scope=scope, brand_name=resolved_name)

    n = len(completed)
    mentioned = [m for m in metrics if m.mentioned]

    raw_visibility = len(mentioned) / n

    total_words = sum(sc.total_words for sc in completed)
    depth_sum = sum(m.depth_contribution for m in metrics)
    raw_depth = depth_sum / total_words if total_words else 0.0

    positions = [m.first_position for m in mentioned if m.first_position is not None]
    average_position = round(sum(positions) / len(positions), 4) if positions else None

    total_citations = sum(len(sc.citations) for sc in completed)
    brand_citations = sum(len(m.citations) for m in metrics)
    raw_citation_share = brand_citations / total_citations if total_citations else 0.0

    pos = sum(1 for m in mentioned if m.sentiment == "positive")
    neg = sum(1 for m in mentioned if m.sentiment == "negative")
    mixed = sum(1 for m in mentioned if m.sentiment == "mixed")
    bearing = pos + neg + mixed
    sentiment_score = round((pos - neg) / bearing * 100, 4) if bearing else 0.0

    brand_mentions = sum(m.mention_count for m in metrics)
    all_mentions = sum(bm.mention_count for sc in completed for bm in sc.brand_metrics)
    share_of_voice = _pct(brand_mentions / all_mentions) if all_mentions else 0.0

    w = s.prior_weight
    visibility, vis_n = smooth(raw_visibility, n, s.visibility_smoothing_threshold, s.visibility_prior, w)
    depth, depth_n = smooth(raw_depth, n, s.depth_smoothing_threshold, s.depth_prior, w)
    tracked = _tracked_count(completed)
    citation_prior = 1.0 / tracked if tracked else 0.0
    citation_share, cit_n = smooth(
        raw_citation_share, total_citations, s.citation_smoothing_threshold, citation_prior, w,
    )

    ranks = [m.rank_position for m in mentioned]
    return AggregatedMetric(
        scope=scope,
        brand_name=resolved_name,
        sample_size=n,
        visibility_score=_pct(visibility),
        average_position=average_position,
        depth_of_mention=_pct(depth),
        citation_share=_pct(citation_share),
        sentiment_score=sentiment_score,
        share_of_voice=share_of_voice,
        visibility_ci=wilson_interval(visibility, vis_n, s.z_score),
        depth_ci=wilson_interval(depth, depth_n, s.z_score),
        citation_share_ci=wilson_interval(citation_share, cit_n, s.z_score),
        raw_visibility=_pct(raw_visibility),
        raw_depth=_pct(raw_depth),
        raw_citation_share=_pct(raw_citation_share),
        total_mentions=brand_mentions,
        total_citations=brand_citations,
        count_1st=ranks.count(1),
        count_2nd=ranks.count(2),
        count_3rd=ranks.count(3),
    )


def _brand_names(scorecards: Sequence[ProviderScorecard]) -> list[str]:
    """Tracked brand names, subject first, in first-seen order."""
    names: list[str] = []
    seen: set[str] = set()
    for sc in scorecards:
        for bm in sorted(sc.brand_metrics, key=lambda b: not b.is_owner):
            key = bm.brand_name.casefold()
            if key not in seen:
                seen.add(key)
                names.append(bm.brand_name)
    return names


def aggregate_brands(
    scorecards: Iterable[ProviderScorecard],
    scope: str = "overall",
    settings: Settings | None = None,
) -> list[AggregatedMetric]:
    """Aggregate every tracked brand in ``scope`` and rank them by visibility.

    Ties on visibility fall back to share of voice, then brand name.
    """
    s = settings or get_settings()
    items = [sc for sc in scorecards if sc.completed and in_scope(sc, scope)]
    results = [aggregate(items, scope, s, brand_name=name) for name in _brand_names(items)]
    ordered = sorted(results, key=lambda m: (-m.visibility_score, -m.share_of_voice, m.brand_name.casefold()))
    rank = {id(m): i for i, m in enumerate(ordered, start=1)}
    return [m.model_copy(update={"visibility_rank": rank[id(m)]}) for m in results]


def aggregate_all(
    scorecards: Iterable[ProviderScorecard],
    settings: Settings | None = None,
) -> list[AggregatedMetric]:
    """Every brand over every scope present in ``scorecards``."""
    s = settings or get_settings()
    items = list(scorecards)
    out: list[AggregatedMetric] = []
    for scope in scopes_for(items):
        out.extend(aggregate_brands(items, scope, s))
    log.info("Aggregated %d scorecards into %d metrics", len(items), len(out))
    return out
