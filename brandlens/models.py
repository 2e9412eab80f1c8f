from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Prompt(Base):
    __tablename__ = "prompts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    analysis_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    topic_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    persona_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    query_type: Mapped[str] = mapped_column(String(50), default="")
    status: Mapped[str] = mapped_column(String(20), default="active")  # active | retired
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    tests: Mapped[list[PromptTest]] = relationship("PromptTest", back_populates="prompt", cascade="all, delete-orphan")


class PromptTest(Base):
    """One stored ProviderScorecard. Rows are append-only."""
    __tablename__ = "prompt_tests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prompt_id: Mapped[int] = mapped_column(Integer, ForeignKey("prompts.id"), nullable=False, index=True)
    analysis_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    topic_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    persona_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(100), default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # completed | failed
    failure_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_response: Mapped[str] = mapped_column(Text, default="")
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    total_words: Mapped[int] = mapped_column(Integer, default=0)
    total_sentences: Mapped[int] = mapped_column(Integer, default=0)
    visibility_score: Mapped[float] = mapped_column(Float, default=0.0)
    overall_score: Mapped[float] = mapped_column(Float, default=0.0)
    brand_metrics_json: Mapped[str] = mapped_column(Text, default="[]")
    citations_json: Mapped[str] = mapped_column(Text, default="[]")
    tested_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    prompt: Mapped[Prompt] = relationship("Prompt", back_populates="tests")


class AggregatedMetricRecord(Base):
    """Derived rows; replaced wholesale on every aggregation run."""
    __tablename__ = "aggregated_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    analysis_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(150), nullable=False)  # overall | platform:<id> | topic:<id> | persona:<id>
    brand_name: Mapped[str] = mapped_column(String(300), default="")
    is_subject: Mapped[bool] = mapped_column(default=False)
    sample_size: Mapped[int] = mapped_column(Integer, default=0)
    visibility_score: Mapped[float] = mapped_column(Float, default=0.0)
    depth_of_mention: Mapped[float] = mapped_column(Float, default=0.0)
    citation_share: Mapped[float] = mapped_column(Float, default=0.0)
    average_position: Mapped[float | None] = mapped_column(Float, nullable=True)
    sentiment_score: Mapped[float] = mapped_column(Float, default=0.0)
    share_of_voice: Mapped[float] = mapped_column(Float, default=0.0)
    visibility_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    last_calculated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
