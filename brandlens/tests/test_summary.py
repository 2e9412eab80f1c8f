from __future__ import annotations

from brandlens.schemas import BrandMetric, ProviderScorecard
from brandlens.summary import summarize


def scored(provider: str, overall: float, mentioned: bool = True) -> ProviderScorecard:
    return ProviderScorecard(
        provider=provider,
        brand_metrics=[BrandMetric(
            brand_name="MongoDB", is_owner=True, mentioned=mentioned, first_position=1 if mentioned else None,
        )],
        visibility_score=100.0 if mentioned else 0.0,
        overall_score=overall,
    )


def test_empty_batch():
    s = summarize([])
    assert (s.best_provider, s.worst_provider, s.avg_visibility) == ("none", "none", 0.0)


def test_only_failures_count_as_empty():
    failed = ProviderScorecard(provider="alpha", status="failed", failure_reason="timeout")
    assert summarize([failed]).best_provider == "none"


def test_averages_and_extremes():
    s = summarize([
        scored("alpha", 90.0),
        scored("alpha", 70.0),
        scored("beta", 0.0, mentioned=False),
        scored("gamma", 60.0),
    ])
    assert s.avg_visibility == 75.0
    assert s.avg_overall_score == 55.0
    assert s.mention_rate == 75.0
    assert s.per_provider_average == {"alpha": 80.0, "beta": 0.0, "gamma": 60.0}
    assert s.best_provider == "alpha"
    assert s.worst_provider == "beta"


def test_ties_broken_by_provider_id():
    s = summarize([scored("zeta", 50.0), scored("alpha", 50.0)])
    assert s.best_provider == "alpha"
    assert s.worst_provider == "alpha"
