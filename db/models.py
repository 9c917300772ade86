from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import text

from .base import Base

TASK_CHECK = "task in ('analysis', 'reels', 'newsletter', 'linkedin', 'x')"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SrtAsset(Base):
    __tablename__ = "srt_asset"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    project_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    filename: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, default="ready")
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    # Bumped whenever the transcript or the stored profile changes; running
    # generations compare against it to detect stale work.
    revision: Mapped[int] = mapped_column(Integer, default=1)
    generation_profile: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    segments: Mapped[list["TranscriptSegmentRow"]] = relationship(
        back_populates="srt_asset",
        order_by="TranscriptSegmentRow.idx",
    )

    __table_args__ = (
        CheckConstraint("status in ('uploaded', 'ready', 'failed')", name="ck_srt_asset_status"),
    )


class TranscriptSegmentRow(Base):
    __tablename__ = "transcript_segment"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    srt_asset_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("srt_asset.id", ondelete="CASCADE"),
    )
    idx: Mapped[int] = mapped_column(Integer)
    start_ms: Mapped[int] = mapped_column(Integer)
    end_ms: Mapped[int] = mapped_column(Integer)
    text: Mapped[str] = mapped_column(Text)
    tokens_est: Mapped[int] = mapped_column(Integer, default=0)

    srt_asset: Mapped[SrtAsset] = relationship(back_populates="segments")

    __table_args__ = (
        UniqueConstraint("srt_asset_id", "idx", name="uq_transcript_segment_idx"),
    )


class PromptVersion(Base):
    __tablename__ = "prompt_version"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    task: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(Text)
    system_prompt: Mapped[str] = mapped_column(Text)
    user_prompt_template: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("task", "version", name="uq_prompt_version_task_version"),
        CheckConstraint(TASK_CHECK, name="ck_prompt_version_task"),
        Index(
            "ix_prompt_version_active_per_task",
            "task",
            unique=True,
            postgresql_where=text("is_active"),
        ),
    )


class GeneratedAsset(Base):
    __tablename__ = "generated_asset"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    srt_asset_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("srt_asset.id", ondelete="CASCADE"),
    )
    type: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(Text)
    source: Mapped[str] = mapped_column(Text, default="generation")
    payload: Mapped[dict] = mapped_column(JSONB)
    generation_profile: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        CheckConstraint(
            "type in ('analysis', 'reels', 'newsletter', 'linkedin', 'x')",
            name="ck_generated_asset_type",
        ),
        CheckConstraint("status in ('pending', 'ready', 'failed')", name="ck_generated_asset_status"),
        CheckConstraint(
            "source in ('generation', 'refine', 'block_refine', 'block_save', 'variant_select')",
            name="ck_generated_asset_source",
        ),
        UniqueConstraint("srt_asset_id", "type", "version", name="uq_generated_asset_version"),
    )


class TaskGenerationDiagnosticsRow(Base):
    __tablename__ = "task_generation_diagnostics"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    srt_asset_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("srt_asset.id", ondelete="CASCADE"),
    )
    task: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, default="completed")
    provider: Mapped[str] = mapped_column(Text)
    model: Mapped[str] = mapped_column(Text)
    quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    quality_initial: Mapped[float | None] = mapped_column(Float, nullable=True)
    quality_final: Mapped[float | None] = mapped_column(Float, nullable=True)
    quality_threshold: Mapped[float] = mapped_column(Float)
    judge_quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    publishability_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    publishability_threshold: Mapped[float] = mapped_column(Float)
    meets_quality_threshold: Mapped[bool] = mapped_column(Boolean, default=False)
    meets_publishability_threshold: Mapped[bool] = mapped_column(Boolean, default=False)
    used_heuristic_fallback: Mapped[bool] = mapped_column(Boolean, default=False)
    fallback_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refinement_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    refinement_applied: Mapped[bool] = mapped_column(Boolean, default=False)
    refine_passes_target: Mapped[int] = mapped_column(Integer, default=0)
    refine_passes_applied_count: Mapped[int] = mapped_column(Integer, default=0)
    selected_variant: Mapped[int | None] = mapped_column(Integer, nullable=True)
    inflation_guard_applied: Mapped[bool] = mapped_column(Boolean, default=False)
    inflation_guard_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    prompt_tokens: Mapped[int] = mapped_column(Integer, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    estimated_cost_usd: Mapped[float] = mapped_column(Numeric(14, 6), default=0)
    actual_cost_usd: Mapped[float | None] = mapped_column(Numeric(14, 6), nullable=True)
    # Variants, weights, judge routing, prompt version, issues and attribution.
    details: Mapped[dict] = mapped_column(JSONB, default=dict)
    variants: Mapped[list] = mapped_column(JSONB, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("srt_asset_id", "task", name="uq_task_generation_diagnostics_pair"),
        CheckConstraint(TASK_CHECK, name="ck_task_generation_diagnostics_task"),
        CheckConstraint("status in ('completed', 'blocked')", name="ck_task_generation_diagnostics_status"),
    )


class Job(Base):
    __tablename__ = "job"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    job_type: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text)
    srt_asset_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("srt_asset.id", ondelete="CASCADE"),
        nullable=True,
    )
    parent_job_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("job.id", ondelete="SET NULL"),
        nullable=True,
    )
    payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    error_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("status in ('queued', 'running', 'succeeded', 'failed')", name="ck_job_status"),
        CheckConstraint(
            "job_type in ('generate_task', 'generate_all')",
            name="ck_job_type",
        ),
    )


class AuditEvent(Base):
    __tablename__ = "audit_event"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    event_type: Mapped[str] = mapped_column(Text)
    source: Mapped[str] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        CheckConstraint("source in ('ui', 'system', 'worker')", name="ck_audit_event_source"),
    )


class AIRouteOverride(Base):
    """Operator-set route for one (kind, task); wins over the environment defaults."""

    __tablename__ = "ai_route_override"

    kind: Mapped[str] = mapped_column(Text, primary_key=True)
    task: Mapped[str] = mapped_column(Text, primary_key=True)
    provider: Mapped[str] = mapped_column(Text)
    model: Mapped[str] = mapped_column(Text)
    temperature: Mapped[float] = mapped_column(Float)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("kind in ('generation', 'judge')", name="ck_ai_route_override_kind"),
        CheckConstraint(TASK_CHECK, name="ck_ai_route_override_task"),
        CheckConstraint(
            "provider in ('heuristic', 'openai', 'openrouter')", name="ck_ai_route_override_provider"
        ),
    )


class WorkspacePreference(Base):
    __tablename__ = "workspace_preference"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    payload: Mapped[dict] = mapped_column(JSONB)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
