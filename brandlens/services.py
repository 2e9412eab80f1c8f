"""Shared business logic behind the BrandLens API."""
from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from brandlens import orchestrator
from brandlens.aggregator import AggregationInputError, aggregate_all, parse_scope
from brandlens.config import Settings, get_settings
from brandlens.models import AggregatedMetricRecord, Prompt, PromptTest
from brandlens.providers import ProviderClient
from brandlens.schemas import (
    AggregatedMetric,
    BrandContext,
    BrandMetric,
    Citation,
    PromptCreate,
    PromptRef,
    ProviderConfig,
    ProviderScorecard,
    Summary,
)
from brandlens.summary import summarize
from brandlens.utils import json_parse, to_json

log = logging.getLogger(__name__)


class PromptLockedError(Exception):
    """A prompt that already has test results cannot change its text."""


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def prompt_out(prompt: Prompt) -> dict:
    return {
        "id": prompt.id, "text": prompt.text, "analysis_id": prompt.analysis_id,
        "topic_id": prompt.topic_id, "persona_id": prompt.persona_id,
        "query_type": prompt.query_type, "status": prompt.status,
    }


def prompt_ref(prompt: Prompt) -> PromptRef:
    return PromptRef(
        id=prompt.id, text=prompt.text, analysis_id=prompt.analysis_id,
        topic_id=prompt.topic_id, persona_id=prompt.persona_id,
    )


def scorecard_row(sc: ProviderScorecard) -> PromptTest:
    return PromptTest(
        prompt_id=sc.prompt_id,
        analysis_id=sc.analysis_id or "",
        topic_id=sc.topic_id,
        persona_id=sc.persona_id,
        provider=sc.provider,
        model=sc.model,
        status=sc.status,
        failure_reason=sc.failure_reason,
        failure_message=sc.failure_message,
        raw_response=sc.raw_response,
        latency_ms=sc.latency_ms,
        tokens_used=sc.tokens_used,
        total_words=sc.total_words,
        total_sentences=sc.total_sentences,
        visibility_score=sc.visibility_score,
        overall_score=sc.overall_score,
        brand_metrics_json=to_json([m.model_dump(mode="json") for m in sc.brand_metrics]),
        citations_json=to_json([c.model_dump(mode="json") for c in sc.citations]),
        tested_at=sc.tested_at.replace(tzinfo=None),
    )


def row_scorecard(row: PromptTest) -> ProviderScorecard:
    return ProviderScorecard(
        provider=row.provider,
        model=row.model,
        prompt_id=row.prompt_id,
        prompt_text=row.prompt.text if row.prompt else "",
        analysis_id=row.analysis_id,
        topic_id=row.topic_id,
        persona_id=row.persona_id,
        raw_response=row.raw_response,
        latency_ms=row.latency_ms,
        tokens_used=row.tokens_used,
        total_words=row.total_words,
        total_sentences=row.total_sentences,
        brand_metrics=[BrandMetric(**m) for m in json_parse(row.brand_metrics_json, [])],
        citations=[Citation(**c) for c in json_parse(row.citations_json, [])],
        status=row.status,
        failure_reason=row.failure_reason,
        failure_message=row.failure_message,
        visibility_score=row.visibility_score,
        overall_score=row.overall_score,
        tested_at=row.tested_at,
    )


def metric_record(m: AggregatedMetric, analysis_id: str, subject_name: str) -> AggregatedMetricRecord:
    return AggregatedMetricRecord(
        analysis_id=analysis_id,
        scope=m.scope,
        brand_name=m.brand_name,
        is_subject=m.brand_name == subject_name,
        sample_size=m.sample_size,
        visibility_score=m.visibility_score,
        depth_of_mention=m.depth_of_mention,
        citation_share=m.citation_share,
        average_position=m.average_position,
        sentiment_score=m.sentiment_score,
        share_of_voice=m.share_of_voice,
        visibility_rank=m.visibility_rank,
        payload_json=to_json(m.model_dump(mode="json")),
        last_calculated_at=m.last_calculated_at.replace(tzinfo=None),
    )


def metric_out(record: AggregatedMetricRecord) -> dict[str, Any]:
    payload = json_parse(record.payload_json, {})
    payload["is_subject"] = record.is_subject
    return payload


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def create_prompt(session: Session, body: PromptCreate) -> Prompt:
    """Add a prompt (caller must commit)."""
    prompt = Prompt(
        analysis_id=body.analysis_id, text=body.text, topic_id=body.topic_id,
        persona_id=body.persona_id, query_type=body.query_type,
    )
    session.add(prompt)
    session.flush()
    return prompt


def update_prompt_text(session: Session, prompt: Prompt, text: str) -> Prompt:
    """Change a prompt's text; refused once any test ran against it."""
    tested = session.execute(
        select(PromptTest.id).where(PromptTest.prompt_id == prompt.id).limit(1)
    ).first()
    if tested is not None:
        raise PromptLockedError(f"Prompt {prompt.id} has test results and can no longer be edited")
    prompt.text = text.strip()
    return prompt


def default_providers(settings: Settings | None = None) -> list[ProviderConfig]:
    s = settings or get_settings()
    return [ProviderConfig(provider_id=pid, model=model) for pid, model in s.models.items()]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def run_prompt_test(
    session: Session,
    prompt: Prompt,
    brand_context: BrandContext,
    providers: Sequence[ProviderConfig] | None = None,
    client: ProviderClient | None = None,
    settings: Settings | None = None,
) -> list[ProviderScorecard]:
    """Test one prompt against every provider and store the scorecards.

    Scorecards are appended; earlier results are kept (caller must commit).
    """
    s = settings or get_settings()
    scorecards = await orchestrator.test_prompt(
        prompt_ref(prompt),
        list(providers or default_providers(s)),
        brand_context,
        client=client or ProviderClient(s),
        settings=s,
    )
    for sc in scorecards:
        session.add(scorecard_row(sc))
    return scorecards


def load_scorecards(session: Session, analysis_id: str, prompt_id: int | None = None) -> list[ProviderScorecard]:
    stmt = select(PromptTest).where(PromptTest.analysis_id == analysis_id)
    if prompt_id is not None:
        stmt = stmt.where(PromptTest.prompt_id == prompt_id)
    rows = session.execute(stmt.order_by(PromptTest.id)).scalars().all()
    return [row_scorecard(r) for r in rows]


_scope_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
_scope_locks_guard = threading.Lock()


def _scope_lock(analysis_id: str) -> threading.Lock:
    with _scope_locks_guard:
        return _scope_locks.setdefault(analysis_id, threading.Lock())


def recompute_aggregates(
    session: Session,
    analysis_id: str,
    settings: Settings | None = None,
    strict: bool = False,
) -> list[AggregatedMetric]:
    """Rebuild every aggregated metric of an analysis from all of its scorecards.

    Old records are deleted and replaced in one transaction.  Runs for the
    same analysis are serialized.  Commits.
    """
    s = settings or get_settings()
    with _scope_lock(analysis_id):
        scorecards = load_scorecards(session, analysis_id)
        completed = [sc for sc in scorecards if sc.completed]
        if strict and not completed:
            raise AggregationInputError(f"analysis:{analysis_id}")

        metrics = aggregate_all(scorecards, s)
        subject = ""
        for sc in completed:
            bm = sc.subject_metric()
            if bm is not None:
                subject = bm.brand_name
                break

        session.execute(delete(AggregatedMetricRecord).where(AggregatedMetricRecord.analysis_id == analysis_id))
        for m in metrics:
            session.add(metric_record(m, analysis_id, subject))
        session.commit()

    log.info(
        "Recomputed %d metrics for analysis %s from %d scorecards (%d completed)",
        len(metrics), analysis_id, len(scorecards), len(completed),
    )
    return metrics


def get_metrics(session: Session, analysis_id: str, scope: str | None = None) -> list[dict[str, Any]]:
    stmt = select(AggregatedMetricRecord).where(AggregatedMetricRecord.analysis_id == analysis_id)
    if scope:
        parse_scope(scope)
        stmt = stmt.where(AggregatedMetricRecord.scope == scope)
    rows = session.execute(
        stmt.order_by(AggregatedMetricRecord.scope, AggregatedMetricRecord.visibility_rank)
    ).scalars().all()
    return [metric_out(r) for r in rows]


def summarize_analysis(session: Session, analysis_id: str) -> Summary:
    return summarize(load_scorecards(session, analysis_id))
