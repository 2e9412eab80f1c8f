"""Roll a batch of scorecards up into a per-run summary."""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from brandlens.schemas import ProviderScorecard, Summary


def summarize(scorecards: Iterable[ProviderScorecard]) -> Summary:
    """Averages over completed scorecards plus best/worst provider.

    Providers are ranked by mean ``overall_score``; equal means are ordered by
    provider id so ``best_provider`` and ``worst_provider`` are deterministic.
    """
    completed = [sc for sc in scorecards if sc.completed]
    if not completed:
        return Summary()

    n = len(completed)
    avg_visibility = sum(sc.visibility_score for sc in completed) / n
    avg_overall = sum(sc.overall_score for sc in completed) / n
    mentioned = sum(1 for sc in completed if sc.visibility_score > 0)

    per_provider: dict[str, list[float]] = defaultdict(list)
    for sc in completed:
        per_provider[sc.provider].append(sc.overall_score)
    averages = {p: round(sum(v) / len(v), 2) for p, v in sorted(per_provider.items())}

    best = min(averages.items(), key=lambda kv: (-kv[1], kv[0]))[0]
    worst = min(averages.items(), key=lambda kv: (kv[1], kv[0]))[0]
    return Summary(
        avg_visibility=round(avg_visibility, 2),
        avg_overall_score=round(avg_overall, 2),
        mention_rate=round(mentioned / n * 100, 2),
        best_provider=best,
        worst_provider=worst,
        per_provider_average=averages,
    )
