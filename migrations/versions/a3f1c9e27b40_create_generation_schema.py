"""create generation schema

Revision ID: a3f1c9e27b40
Revises: 
Create Date: 2026-10-19 10:00:00

Purpose:
- transcripts (srt_asset, transcript_segment) consumed by generation
- versioned prompts with one active version per task
- generated asset versions and per (srt asset, task) diagnostics
- job tracking for rq workers and an append-only audit trail
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "a3f1c9e27b40"
down_revision = None
branch_labels = None
depends_on = None

TASK_CHECK = "task in ('analysis', 'reels', 'newsletter', 'linkedin', 'x')"


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def _srt_asset_fk(nullable: bool = False) -> sa.Column:
    return sa.Column(
        "srt_asset_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("srt_asset.id", ondelete="CASCADE"),
        nullable=nullable,
    )


def upgrade() -> None:
    # required for gen_random_uuid()
    op.execute("create extension if not exists pgcrypto;")

    op.create_table(
        "srt_asset",
        _uuid_pk(),
        sa.Column("project_name", sa.Text(), nullable=True),
        sa.Column("filename", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="ready"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("generation_profile", postgresql.JSONB(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("status in ('uploaded', 'ready', 'failed')", name="ck_srt_asset_status"),
    )

    op.create_table(
        "transcript_segment",
        _uuid_pk(),
        _srt_asset_fk(),
        sa.Column("idx", sa.Integer(), nullable=False),
        sa.Column("start_ms", sa.Integer(), nullable=False),
        sa.Column("end_ms", sa.Integer(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("tokens_est", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("srt_asset_id", "idx", name="uq_transcript_segment_idx"),
    )

    op.create_table(
        "prompt_version",
        _uuid_pk(),
        sa.Column("task", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=False),
        sa.Column("user_prompt_template", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.UniqueConstraint("task", "version", name="uq_prompt_version_task_version"),
        sa.CheckConstraint(TASK_CHECK, name="ck_prompt_version_task"),
    )
    op.create_index(
        "ix_prompt_version_active_per_task",
        "prompt_version",
        ["task"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "generated_asset",
        _uuid_pk(),
        _srt_asset_fk(),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False, server_default="generation"),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("generation_profile", postgresql.JSONB(), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "type in ('analysis', 'reels', 'newsletter', 'linkedin', 'x')",
            name="ck_generated_asset_type",
        ),
        sa.CheckConstraint("status in ('pending', 'ready', 'failed')", name="ck_generated_asset_status"),
        sa.CheckConstraint(
            "source in ('generation', 'refine', 'block_refine', 'block_save', 'variant_select')",
            name="ck_generated_asset_source",
        ),
        sa.UniqueConstraint("srt_asset_id", "type", "version", name="uq_generated_asset_version"),
    )

    op.create_table(
        "task_generation_diagnostics",
        _uuid_pk(),
        _srt_asset_fk(),
        sa.Column("task", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="completed"),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column("quality_initial", sa.Float(), nullable=True),
        sa.Column("quality_final", sa.Float(), nullable=True),
        sa.Column("quality_threshold", sa.Float(), nullable=False),
        sa.Column("judge_quality_score", sa.Float(), nullable=True),
        sa.Column("publishability_score", sa.Float(), nullable=True),
        sa.Column("publishability_threshold", sa.Float(), nullable=False),
        sa.Column("meets_quality_threshold", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("meets_publishability_threshold", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_heuristic_fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fallback_reason", sa.Text(), nullable=True),
        sa.Column("refinement_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refinement_applied", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refine_passes_target", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refine_passes_applied_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("selected_variant", sa.Integer(), nullable=True),
        sa.Column("inflation_guard_applied", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("inflation_guard_reason", sa.Text(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_cost_usd", sa.Numeric(14, 6), nullable=False, server_default="0"),
        sa.Column("actual_cost_usd", sa.Numeric(14, 6), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("variants", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        _updated_at(),
        sa.UniqueConstraint("srt_asset_id", "task", name="uq_task_generation_diagnostics_pair"),
        sa.CheckConstraint(TASK_CHECK, name="ck_task_generation_diagnostics_task"),
        sa.CheckConstraint("status in ('completed', 'blocked')", name="ck_task_generation_diagnostics_status"),
    )

    op.create_table(
        "job",
        _uuid_pk(),
        sa.Column("job_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        _srt_asset_fk(nullable=True),
        sa.Column(
            "parent_job_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("job.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        sa.Column("error_payload", postgresql.JSONB(), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("status in ('queued', 'running', 'succeeded', 'failed')", name="ck_job_status"),
        sa.CheckConstraint("job_type in ('generate_task', 'generate_all')", name="ck_job_type"),
    )

    op.create_table(
        "audit_event",
        _uuid_pk(),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.CheckConstraint("source in ('ui', 'system', 'worker')", name="ck_audit_event_source"),
    )

    op.create_index(
        "ix_generated_asset_lookup", "generated_asset", ["srt_asset_id", "type", "version"], unique=False
    )
    op.create_index("ix_job_status_created_at", "job", ["status", "created_at"], unique=False)
    op.create_index("ix_audit_event_type_occurred_at", "audit_event", ["event_type", "occurred_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_event_type_occurred_at", table_name="audit_event")
    op.drop_index("ix_job_status_created_at", table_name="job")
    op.drop_index("ix_generated_asset_lookup", table_name="generated_asset")
    op.drop_table("audit_event")
    op.drop_table("job")
    op.drop_table("task_generation_diagnostics")
    op.drop_table("generated_asset")
    op.drop_index("ix_prompt_version_active_per_task", table_name="prompt_version")
    op.drop_table("prompt_version")
    op.drop_table("transcript_segment")
    op.drop_table("srt_asset")
