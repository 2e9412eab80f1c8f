"""Tests for prompt fan-out, scorecard building and prompt sampling."""
from __future__ import annotations

import asyncio
import random
import time
from collections import Counter

import httpx
import pytest

from brandlens import orchestrator
from brandlens.aggregator import aggregate
from brandlens.providers import ProviderResponse
from brandlens.schemas import BrandContext, BrandMetric, BrandRef, PromptRef, ProviderConfig

ALPHA_TEXT = (
    "Several engines stand out for analytics. "
    "MongoDB offers flexible aggregation pipelines, see [pricing](https://mongodb.com/pricing). "
    "ClickHouse is another option."
)
NO_MENTION_TEXT = "PostgreSQL and Redis are solid picks for most teams."

PROVIDERS = [ProviderConfig(provider_id=p) for p in ("alpha", "beta", "gamma")]


@pytest.fixture()
def brand_context() -> BrandContext:
    return BrandContext(
        subject_brand=BrandRef(name="MongoDB", domain="mongodb.com"),
        competitors=[BrandRef(name="ClickHouse", domain="clickhouse.com")],
    )


@pytest.fixture()
def prompt() -> PromptRef:
    return PromptRef(id=7, text="Best analytics database?", analysis_id="a1", topic_id="t1", persona_id="p1")


class TestTestPrompt:
    @pytest.mark.asyncio
    async def test_mixed_outcomes(self, scripted_client, make_payload, make_status_error, settings, brand_context, prompt):
        client = scripted_client({
            "alpha": [make_payload(ALPHA_TEXT)],
            "beta": [httpx.ReadTimeout("slow"), httpx.ReadTimeout("slow"), make_payload(NO_MENTION_TEXT)],
            "gamma": [make_status_error(401)],
        })
        cards = await orchestrator.test_prompt(prompt, PROVIDERS, brand_context, client, settings)

        assert [c.provider for c in cards] == ["alpha", "beta", "gamma"]
        alpha, beta, gamma = cards

        subject = alpha.subject_metric()
        assert subject.brand_name == "MongoDB"
        assert subject.mentioned and subject.first_position == 2
        assert subject.rank_position == 1
        assert subject.sentiment == "positive"
        assert [c.classification for c in subject.citations] == ["owned"]
        assert alpha.metric_for("ClickHouse").first_position == 3
        assert alpha.metric_for("ClickHouse").rank_position == 2
        assert alpha.visibility_score == 100.0
        assert alpha.overall_score == 100.0
        assert alpha.total_sentences == 3

        assert beta.completed
        assert not beta.subject_metric().mentioned
        assert beta.visibility_score == 0.0
        assert client.calls["beta"] == 3

        assert gamma.status == "failed"
        assert gamma.failure_reason == "unauthorized"
        assert client.calls["gamma"] == 1

        agg = aggregate(cards, f"prompt:{prompt.id}", settings)
        assert agg.sample_size == 2
        assert agg.raw_visibility == 50.0

    @pytest.mark.asyncio
    async def test_deadline_cancels_slow_provider(self, scripted_client, make_payload, settings, brand_context, prompt):
        async def slow():
            await asyncio.sleep(0.3)
            return make_payload(ALPHA_TEXT)

        client = scripted_client({"alpha": [make_payload(ALPHA_TEXT)], "beta": [slow]})
        cards = await orchestrator.test_prompt(
            prompt, PROVIDERS[:2], brand_context, client, settings, deadline=time.monotonic() + 0.05,
        )
        assert cards[0].completed
        assert cards[1].status == "failed"
        assert cards[1].failure_reason == "cancelled"
        await asyncio.sleep(0.4)

    @pytest.mark.asyncio
    async def test_stop_event_mid_flight(self, scripted_client, make_payload, settings, brand_context, prompt):
        async def slow():
            await asyncio.sleep(0.3)
            return make_payload(ALPHA_TEXT)

        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, stop.set)
        client = scripted_client({"alpha": [make_payload(ALPHA_TEXT)], "beta": [slow]})
        cards = await orchestrator.test_prompt(
            prompt, PROVIDERS[:2], brand_context, client, settings, stop_event=stop,
        )
        assert [c.status for c in cards] == ["completed", "failed"]
        assert cards[1].failure_reason == "cancelled"
        await asyncio.sleep(0.4)

    @pytest.mark.asyncio
    async def test_stop_event_already_set(self, scripted_client, make_payload, settings, brand_context, prompt):
        stop = asyncio.Event()
        stop.set()
        client = scripted_client({"alpha": [make_payload(ALPHA_TEXT)]})
        cards = await orchestrator.test_prompt(
            prompt, PROVIDERS[:1], brand_context, client, settings, stop_event=stop,
        )
        assert cards[0].failure_reason == "cancelled"
        await asyncio.sleep(0.01)

    @pytest.mark.asyncio
    async def test_scoring_error_becomes_failed_scorecard(
        self, scripted_client, make_payload, settings, brand_context, prompt, monkeypatch,
    ):
        def boom(*args, **kwargs):
            raise RuntimeError("bad scoring")

        monkeypatch.setattr(orchestrator, "build_scorecard", boom)
        client = scripted_client({"alpha": [make_payload(ALPHA_TEXT)]})
        cards = await orchestrator.test_prompt(prompt, PROVIDERS[:1], brand_context, client, settings)
        assert cards[0].failure_reason == "unexpected"
        assert "bad scoring" in cards[0].failure_message

    @pytest.mark.asyncio
    async def test_batch(self, scripted_client, make_payload, settings, brand_context):
        prompts = [PromptRef(id=i, text=f"question {i}", analysis_id="a1") for i in range(3)]
        client = scripted_client({
            "alpha": [make_payload(ALPHA_TEXT)] * 3,
            "beta": [make_payload(NO_MENTION_TEXT)] * 3,
        })
        cards = await orchestrator.test_prompts(
            prompts, PROVIDERS[:2], brand_context, client, settings, concurrency=2,
        )
        assert len(cards) == 6
        assert all(c.completed for c in cards)
        assert Counter(c.prompt_id for c in cards) == {0: 2, 1: 2, 2: 2}

    @pytest.mark.asyncio
    async def test_repeated_provider_id_keeps_each_config(self, scripted_client, make_payload, settings, brand_context, prompt):
        providers = [ProviderConfig(provider_id="openai", model="m1"), ProviderConfig(provider_id="openai", model="m2")]
        client = scripted_client({"openai": [make_payload(ALPHA_TEXT, model=""), make_payload(ALPHA_TEXT, model="")]})
        cards = await orchestrator.test_prompt(prompt, providers, brand_context, client, settings)
        assert [c.model for c in cards] == ["m1", "m2"]
        assert client.calls["openai"] == 2


class TestBuildScorecard:
    def test_subject_wins_position_tie(self, settings, brand_context, prompt):
        response = ProviderResponse(text="MongoDB and ClickHouse both work.", model="m")
        card = orchestrator.build_scorecard(prompt, PROVIDERS[0], response, brand_context, settings)
        assert card.subject_metric().rank_position == 1
        assert card.metric_for("ClickHouse").rank_position == 2

    def test_sentiment_drivers_kept(self, settings, brand_context, prompt):
        card = orchestrator.build_scorecard(
            prompt, PROVIDERS[0], ProviderResponse(text=ALPHA_TEXT), brand_context, settings,
        )
        label, sentence = card.subject_metric().sentiment_drivers[0]
        assert label == "positive"
        assert sentence.startswith("MongoDB offers flexible")
        assert card.metric_for("ClickHouse").sentiment_drivers == []

    def test_citation_attribution(self, settings, brand_context, prompt):
        text = (
            "ClickHouse is fast, see [docs](https://clickhouse.com/docs). "
            "A [comparison](https://en.wikipedia.org/wiki/Column-oriented_DBMS) covers MongoDB too."
        )
        card = orchestrator.build_scorecard(
            prompt, PROVIDERS[0], ProviderResponse(text=text), brand_context, settings,
        )
        assert [c.classification for c in card.citations] == ["competitor", "thirdParty"]
        assert [c.url for c in card.metric_for("ClickHouse").citations] == ["https://clickhouse.com/docs"]
        assert card.subject_metric().citations == []
        assert card.subject_metric().first_position == 2

    def test_overall_score(self):
        metric = BrandMetric(
            brand_name="MongoDB", mentioned=True, first_position=4, rank_position=4, sentiment="neutral",
        )
        assert orchestrator.compute_overall_score(metric, earned_citations=1) == 60.0
        assert orchestrator.compute_overall_score(BrandMetric(brand_name="MongoDB"), 3) == 0.0


class TestSamplePrompts:
    @pytest.fixture()
    def prompts(self) -> list[PromptRef]:
        sizes = {("t1", "p1"): 5, ("t1", "p2"): 5, ("t2", "p1"): 5, ("t2", "p2"): 1}
        out, next_id = [], 0
        for (topic, persona), size in sizes.items():
            for _ in range(size):
                out.append(PromptRef(id=next_id, text=f"q{next_id}", topic_id=topic, persona_id=persona))
                next_id += 1
        return out

    def test_balanced_and_filled(self, prompts):
        picked = orchestrator.sample_prompts(prompts, 8, random.Random(7))
        assert len(picked) == 8
        assert len({p.id for p in picked}) == 8
        combos = Counter((p.topic_id, p.persona_id) for p in picked)
        assert combos[("t2", "p2")] == 1
        assert all(combos[c] >= 2 for c in [("t1", "p1"), ("t1", "p2"), ("t2", "p1")])

    def test_deterministic_with_seed(self, prompts):
        first = orchestrator.sample_prompts(prompts, 6, random.Random(42))
        second = orchestrator.sample_prompts(prompts, 6, random.Random(42))
        assert [p.id for p in first] == [p.id for p in second]

    def test_limits(self, prompts):
        assert orchestrator.sample_prompts(prompts, 0) == []
        assert len(orchestrator.sample_prompts(prompts, 100)) == len(prompts)
