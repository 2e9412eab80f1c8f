"""Prompt test orchestration: fan one prompt out to every provider.

Each provider call runs as its own asyncio task.  A provider failure turns
into a ``failed`` scorecard and never affects its siblings.  When a deadline
passes or ``stop_event`` is set, the orchestrator stops waiting: unfinished
providers are recorded as failed with reason ``cancelled`` while their calls
run to completion in the background (their results are logged and dropped).
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import defaultdict
from collections.abc import Sequence

from brandlens.citations import extract_citations
from brandlens.config import Settings, get_settings
from brandlens.matcher import classify_citation, count_words, match_brand, split_sentences
from brandlens.providers import ProviderCallError, ProviderClient, ProviderResponse, resolve_model
from brandlens.schemas import (
    BrandContext,
    BrandMetric,
    Citation,
    PromptRef,
    ProviderConfig,
    ProviderScorecard,
)
from brandlens.sentiment import analyze_sentiment

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Scoring one response
# ---------------------------------------------------------------------------


def compute_overall_score(metric: BrandMetric, earned_citations: int) -> float:
    """0-100 composite for the subject brand in one response."""
    if not metric.mentioned:
        return 0.0
    score = 40.0
    rank = metric.rank_position or metric.first_position or 0
    if rank == 1:
        score += 30
    elif rank == 2:
        score += 20
    elif rank == 3:
        score += 10
    elif rank <= 5:
        score += 5
    if metric.citations:
        score += 20
    if earned_citations > 0:
        score += 10
    if metric.sentiment == "positive":
        score += 10
    elif metric.sentiment == "neutral":
        score += 5
    return min(100.0, score)


def _attribute_citations(
    citations: list[Citation], brand_context: BrandContext,
) -> tuple[list[Citation], dict[str, list[Citation]]]:
    """Classify every citation and give each to at most one tracked brand."""
    subject = brand_context.subject_brand
    competitor_domains = brand_context.competitor_domains()
    classified: list[Citation] = []
    by_brand: dict[str, list[Citation]] = defaultdict(list)

    for c in citations:
        label = classify_citation(c.url, subject.domain, competitor_domains)
        cit = c.model_copy(update={"classification": label})
        classified.append(cit)
        if label == "owned":
            by_brand[subject.name].append(cit)
        elif label == "competitor":
            for comp in brand_context.competitors:
                if comp.domain and classify_citation(c.url, comp.domain) == "owned":
                    by_brand[comp.name].append(cit)
                    break
    return classified, by_brand


def build_scorecard(
    prompt: PromptRef,
    provider: ProviderConfig,
    response: ProviderResponse,
    brand_context: BrandContext,
    settings: Settings,
) -> ProviderScorecard:
    """Turn one successful provider response into a completed scorecard."""
    text = response.text
    sentences = split_sentences(text)
    citations, by_brand = _attribute_citations(
        extract_citations(response.payload, provider.provider_id, text), brand_context,
    )

    subject_name = brand_context.subject_brand.name
    raw_metrics: list[dict] = []
    for brand in brand_context.tracked():
        m = match_brand(text, brand.name, brand.domain, settings, sentences=sentences)
        sentiment = analyze_sentiment(m.sentences)
        raw_metrics.append({
            "brand_name": brand.name,
            "mentioned": m.mentioned,
            "mention_count": m.mention_count,
            "first_position": m.first_position,
            "depth_contribution": m.depth_contribution,
            "word_count": m.word_count,
            "is_owner": brand.name == subject_name,
            "citations": by_brand.get(brand.name, []),
            "confidence": m.confidence,
            "match_method": m.method,
            "sentiment": sentiment.label if m.mentioned else "neutral",
            "sentiment_score": sentiment.score,
            "sentiment_drivers": sentiment.drivers if m.mentioned else [],
        })

    ranked = sorted(
        (r for r in raw_metrics if r["mentioned"]),
        key=lambda r: (r["first_position"], not r["is_owner"]),
    )
    for rank, r in enumerate(ranked, start=1):
        r["rank_position"] = rank
    metrics = [BrandMetric(**r) for r in raw_metrics]

    subject = metrics[0]
    earned = sum(1 for c in citations if c.classification == "thirdParty")
    return ProviderScorecard(
        provider=provider.provider_id,
        model=response.model,
        prompt_id=prompt.id,
        prompt_text=prompt.text,
        analysis_id=prompt.analysis_id,
        topic_id=prompt.topic_id,
        persona_id=prompt.persona_id,
        raw_response=text,
        latency_ms=response.latency_ms,
        tokens_used=response.tokens_used,
        total_words=count_words(text),
        total_sentences=len(sentences),
        brand_metrics=metrics,
        citations=citations,
        status="completed",
        visibility_score=100.0 if subject.mentioned else 0.0,
        overall_score=compute_overall_score(subject, earned),
    )


def failed_scorecard(
    prompt: PromptRef, provider: ProviderConfig, reason: str, message: str, settings: Settings,
) -> ProviderScorecard:
    return ProviderScorecard(
        provider=provider.provider_id,
        model=resolve_model(provider, settings),
        prompt_id=prompt.id,
        prompt_text=prompt.text,
        analysis_id=prompt.analysis_id,
        topic_id=prompt.topic_id,
        persona_id=prompt.persona_id,
        status="failed",
        failure_reason=reason,
        failure_message=message[:1000],
    )


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


async def _run_provider(
    prompt: PromptRef,
    provider: ProviderConfig,
    brand_context: BrandContext,
    client: ProviderClient,
    settings: Settings,
) -> ProviderScorecard:
    try:
        response = await client.invoke(prompt.text, provider)
        return build_scorecard(prompt, provider, response, brand_context, settings)
    except ProviderCallError as exc:
        return failed_scorecard(prompt, provider, exc.reason, str(exc), settings)
    except Exception as exc:
        log.exception("Scoring %s response failed", provider.provider_id)
        return failed_scorecard(prompt, provider, "unexpected", f"{type(exc).__name__}: {exc}", settings)


def _log_late_result(provider_id: str, task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning("Abandoned %s call raised after cancellation: %s", provider_id, exc)
    else:
        log.info("Abandoned %s call finished after the prompt test gave up on it", provider_id)


async def test_prompt(
    prompt: PromptRef,
    providers: Sequence[ProviderConfig],
    brand_context: BrandContext,
    client: ProviderClient | None = None,
    settings: Settings | None = None,
    deadline: float | None = None,
    stop_event: asyncio.Event | None = None,
) -> list[ProviderScorecard]:
    """Test one prompt against every provider concurrently.

    Args:
        deadline: absolute ``time.monotonic()`` value after which unfinished
            providers are given up on.
        stop_event: set it to give up on unfinished providers immediately.

    Returns one scorecard per provider, in ``providers`` order.
    """
    s = settings or get_settings()
    client = client or ProviderClient(s)

    tasks = [asyncio.create_task(_run_provider(prompt, p, brand_context, client, s)) for p in providers]
    pending = set(tasks)

    stop_task: asyncio.Task | None = None
    if stop_event is not None:
        stop_task = asyncio.create_task(stop_event.wait())

    try:
        while pending:
            if stop_event is not None and stop_event.is_set():
                break
            timeout = None
            if deadline is not None:
                timeout = deadline - time.monotonic()
                if timeout <= 0:
                    break
            waiters = pending | ({stop_task} if stop_task else set())
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            pending -= done
            if not done:
                break
    finally:
        if stop_task is not None and not stop_task.done():
            stop_task.cancel()

    scorecards: list[ProviderScorecard] = []
    for p, task in zip(providers, tasks):
        if task.done():
            scorecards.append(task.result())
            continue
        log.warning("Giving up on %s for prompt %s", p.provider_id, prompt.id)
        task.add_done_callback(lambda t, pid=p.provider_id: _log_late_result(pid, t))
        scorecards.append(failed_scorecard(prompt, p, "cancelled", "prompt test stopped before the provider answered", s))

    completed = sum(1 for sc in scorecards if sc.completed)
    log.info("Prompt %s tested: %d/%d providers completed", prompt.id, completed, len(scorecards))
    return scorecards


async def test_prompts(
    prompts: Sequence[PromptRef],
    providers: Sequence[ProviderConfig],
    brand_context: BrandContext,
    client: ProviderClient | None = None,
    settings: Settings | None = None,
    concurrency: int | None = None,
    stop_event: asyncio.Event | None = None,
) -> list[ProviderScorecard]:
    """Test many prompts, at most ``concurrency`` at a time."""
    s = settings or get_settings()
    client = client or ProviderClient(s)
    sem = asyncio.Semaphore(max(1, concurrency or s.prompt_concurrency))

    async def _one(prompt: PromptRef) -> list[ProviderScorecard]:
        async with sem:
            if stop_event is not None and stop_event.is_set():
                return [
                    failed_scorecard(prompt, p, "cancelled", "batch stopped before this prompt ran", s)
                    for p in providers
                ]
            return await test_prompt(prompt, providers, brand_context, client, s, stop_event=stop_event)

    results = await asyncio.gather(*[_one(p) for p in prompts])
    return [sc for batch in results for sc in batch]


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def sample_prompts(
    prompts: Sequence[PromptRef], limit: int, rng: random.Random | None = None,
) -> list[PromptRef]:
    """Pick up to ``limit`` prompts spread evenly over topic x persona combinations.

    Combinations are visited in sorted order; the first ``limit % n`` of them
    get one extra slot.  Slots a small combination cannot fill are handed to
    the remaining prompts so the sample still reaches ``limit``.
    """
    if limit <= 0:
        return []
    if len(prompts) <= limit:
        return list(prompts)
    rng = rng or random.Random()

    groups: dict[tuple[str, str], list[PromptRef]] = defaultdict(list)
    for p in prompts:
        groups[(str(p.topic_id), str(p.persona_id))].append(p)

    keys = sorted(groups)
    per_combo, remainder = divmod(limit, len(keys))
    sampled: list[PromptRef] = []
    leftovers: list[PromptRef] = []
    for i, key in enumerate(keys):
        pool = list(groups[key])
        rng.shuffle(pool)
        quota = per_combo + (1 if i < remainder else 0)
        sampled.extend(pool[:quota])
        leftovers.extend(pool[quota:])

    shortfall = limit - len(sampled)
    if shortfall > 0:
        rng.shuffle(leftovers)
        sampled.extend(leftovers[:shortfall])
    log.debug("Sampled %d of %d prompts across %d combinations", len(sampled), len(prompts), len(keys))
    return sampled
