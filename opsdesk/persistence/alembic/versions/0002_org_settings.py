"""add organization settings

Revision ID: 0002_org_settings
Revises: 0001_init
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_org_settings"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Per-organization agent behaviour; a missing row means every default applies.
    op.create_table(
        "org_settings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(36),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("auto_draft_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("auto_send_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_send_risk_threshold", sa.String(), nullable=False, server_default="none"),
        sa.Column(
            "auto_send_allowed_domains",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "auto_send_allowed_recipients",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("daily_send_limit", sa.Integer(), nullable=False, server_default=sa.text("50")),
        sa.Column("daily_run_limit", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column(
            "require_approval_tools",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[\"send_email\"]'::jsonb"),
        ),
        sa.Column("min_confidence_threshold", sa.String(), nullable=False, server_default="medium"),
        sa.Column("default_tone", sa.String(), nullable=False, server_default="professional"),
        sa.Column("signature_template", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("organization_id", name="uq_org_settings_organization_id"),
        sa.CheckConstraint(
            "auto_send_risk_threshold IN ('none', 'low', 'medium')",
            name="ck_org_settings_auto_send_risk_threshold",
        ),
        sa.CheckConstraint(
            "daily_send_limit >= 0 AND daily_send_limit <= 1000", name="ck_org_settings_daily_send_limit"
        ),
        sa.CheckConstraint(
            "daily_run_limit >= 0 AND daily_run_limit <= 10000", name="ck_org_settings_daily_run_limit"
        ),
        sa.CheckConstraint(
            "min_confidence_threshold IN ('very_low', 'low', 'medium', 'high', 'very_high')",
            name="ck_org_settings_min_confidence_threshold",
        ),
        sa.CheckConstraint(
            "default_tone IN ('formal', 'casual', 'professional', 'friendly')",
            name="ck_org_settings_default_tone",
        ),
        sa.CheckConstraint(
            "signature_template IS NULL OR length(signature_template) <= 500",
            name="ck_org_settings_signature_template",
        ),
    )
    op.create_index("ix_org_settings_organization_id", "org_settings", ["organization_id"])


def downgrade() -> None:
    op.drop_index("ix_org_settings_organization_id", table_name="org_settings")
    op.drop_table("org_settings")
