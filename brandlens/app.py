from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from brandlens import services
from brandlens.aggregator import AggregationInputError
from brandlens.config import get_settings
from brandlens.db import current_db_path, init_db, session_generator
from brandlens.models import Prompt
from brandlens.schemas import (
    AggregateResult,
    PromptCreate,
    PromptOut,
    PromptTestRequest,
    PromptUpdate,
    ProviderScorecard,
    Summary,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(get_settings().database_path)
    log.info("Database ready at %s", current_db_path())
    yield


app = FastAPI(
    title="BrandLens",
    version="0.1.0",
    description=(
        "Multi-provider prompt testing and brand visibility metrics. "
        "Prompts are sent to several LLM providers, responses are scored for brand "
        "mentions and citations, and scorecards are aggregated per scope. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Prompts", "description": "Register prompts and run them against LLM providers."},
        {"name": "Metrics", "description": "Aggregated visibility metrics and run summaries."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Routes: Prompts
# ---------------------------------------------------------------------------


@app.post("/api/prompts", response_model=PromptOut, status_code=201,
          tags=["Prompts"], summary="Register a prompt for an analysis")
async def create_prompt(body: PromptCreate, session: Session = Depends(db_session)):
    prompt = services.create_prompt(session, body)
    session.commit()
    return services.prompt_out(prompt)


@app.put("/api/prompts/{prompt_id}", response_model=PromptOut,
         tags=["Prompts"], summary="Edit an untested prompt or retire a prompt")
async def update_prompt(prompt_id: int, body: PromptUpdate, session: Session = Depends(db_session)):
    prompt = _get_or_404(session, Prompt, prompt_id, "Prompt")
    if body.text is not None:
        try:
            services.update_prompt_text(session, prompt, body.text)
        except services.PromptLockedError as exc:
            raise HTTPException(409, str(exc)) from exc
    if body.status is not None:
        prompt.status = body.status
    session.commit()
    return services.prompt_out(prompt)


@app.post("/api/prompts/{prompt_id}/test", response_model=list[ProviderScorecard],
          tags=["Prompts"], summary="Test a prompt against every configured provider")
async def run_prompt(prompt_id: int, body: PromptTestRequest, session: Session = Depends(db_session)):
    prompt = _get_or_404(session, Prompt, prompt_id, "Prompt")
    if prompt.status != "active":
        raise HTTPException(409, f"Prompt {prompt_id} is {prompt.status}")
    scorecards = await services.run_prompt_test(session, prompt, body.brand_context, body.providers)
    session.commit()
    return scorecards


@app.get("/api/prompts/{prompt_id}/scorecards", response_model=list[ProviderScorecard],
         tags=["Prompts"], summary="All stored scorecards of a prompt")
async def list_scorecards(prompt_id: int, session: Session = Depends(db_session)):
    prompt = _get_or_404(session, Prompt, prompt_id, "Prompt")
    return services.load_scorecards(session, prompt.analysis_id, prompt_id=prompt.id)


# ---------------------------------------------------------------------------
# Routes: Metrics
# ---------------------------------------------------------------------------


@app.post("/api/analyses/{analysis_id}/aggregate", response_model=AggregateResult,
          tags=["Metrics"], summary="Recompute every aggregated metric of an analysis")
def aggregate_analysis(
    analysis_id: str,
    strict: bool = Query(False, description="Fail with 409 when no completed scorecards exist"),
    session: Session = Depends(db_session),
):
    try:
        metrics = services.recompute_aggregates(session, analysis_id, strict=strict)
    except AggregationInputError as exc:
        raise HTTPException(409, str(exc)) from exc
    scopes = sorted({m.scope for m in metrics})
    return AggregateResult(analysis_id=analysis_id, metrics_written=len(metrics), scopes=scopes)


@app.get("/api/analyses/{analysis_id}/metrics", tags=["Metrics"],
         summary="Stored aggregated metrics, optionally filtered by scope")
async def get_metrics(
    analysis_id: str,
    scope: str | None = Query(None, description="overall | platform:<id> | topic:<id> | persona:<id>"),
    session: Session = Depends(db_session),
):
    try:
        return services.get_metrics(session, analysis_id, scope)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc


@app.get("/api/analyses/{analysis_id}/summary", response_model=Summary,
         tags=["Metrics"], summary="Summary over every scorecard of an analysis")
async def get_summary(analysis_id: str, session: Session = Depends(db_session)):
    return services.summarize_analysis(session, analysis_id)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("brandlens.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
