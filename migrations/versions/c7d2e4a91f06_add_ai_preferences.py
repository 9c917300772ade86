"""add ai preferences

Revision ID: c7d2e4a91f06
Revises: a3f1c9e27b40
Create Date: 2026-10-19 16:00:00

Purpose:
- operator route overrides per (kind, task), read before the environment defaults
- one workspace preference document holding the global generation profile
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "c7d2e4a91f06"
down_revision = "a3f1c9e27b40"
branch_labels = None
depends_on = None

TASK_CHECK = "task in ('analysis', 'reels', 'newsletter', 'linkedin', 'x')"


def upgrade() -> None:
    op.create_table(
        "ai_route_override",
        sa.Column("kind", sa.Text(), primary_key=True),
        sa.Column("task", sa.Text(), primary_key=True),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("temperature", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("kind in ('generation', 'judge')", name="ck_ai_route_override_kind"),
        sa.CheckConstraint(TASK_CHECK, name="ck_ai_route_override_task"),
        sa.CheckConstraint(
            "provider in ('heuristic', 'openai', 'openrouter')", name="ck_ai_route_override_provider"
        ),
    )
    op.create_table(
        "workspace_preference",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )


def downgrade() -> None:
    op.drop_table("workspace_preference")
    op.drop_table("ai_route_override")
