"""feature flag control plane tables

Revision ID: ff_1_feature_flags
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers
revision = "ff_1_feature_flags"
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=True, server_default="free"),
        sa.Column("status", sa.String(), nullable=True, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_tenants_id", "tenants", ["id"])
    op.create_index("ix_tenants_name", "tenants", ["name"])

    op.create_table(
        "feature_flags",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("flag_key", sa.String(100), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(30), nullable=False, server_default="core"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rollout_strategy", sa.String(20), nullable=False, server_default="all_or_nothing"),
        sa.Column("rollout_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rollout_sticky", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allowed_tiers", JSONType, nullable=True),
        sa.Column("is_kill_switch", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("require_confirmation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("log_checks", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("environments", JSONType, nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("killed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "rollout_percentage >= 0 AND rollout_percentage <= 100",
            name="ck_feature_flags_rollout_percentage",
        ),
    )
    op.create_index("ix_feature_flags_id", "feature_flags", ["id"])
    op.create_index("ix_feature_flags_flag_key", "feature_flags", ["flag_key"], unique=True)
    op.create_index("ix_feature_flags_category", "feature_flags", ["category"])
    op.create_index("ix_feature_flags_archived_at", "feature_flags", ["archived_at"])

    op.create_table(
        "feature_flag_overrides",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "flag_id", sa.Uuid(),
            sa.ForeignKey("feature_flags.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("flag_id", "tenant_id", name="uq_feature_flag_override_tenant"),
    )
    op.create_index("ix_feature_flag_overrides_flag_id", "feature_flag_overrides", ["flag_id"])
    op.create_index("ix_feature_flag_overrides_tenant_id", "feature_flag_overrides", ["tenant_id"])

    op.create_table(
        "feature_flag_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("flag_id", sa.Uuid(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("change_type", sa.String(30), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("before_snapshot", JSONType, nullable=True),
        sa.Column("after_snapshot", JSONType, nullable=True),
        sa.UniqueConstraint("flag_id", "sequence", name="uq_feature_flag_history_sequence"),
    )
    op.create_index("ix_feature_flag_history_flag_id", "feature_flag_history", ["flag_id"])
    op.create_index("ix_feature_flag_history_created_at", "feature_flag_history", ["created_at"])

    op.create_table(
        "feature_flag_evaluations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("flag_key", sa.String(100), nullable=False),
        sa.Column("decision", sa.Boolean(), nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("evaluated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_feature_flag_evaluations_tenant_id", "feature_flag_evaluations", ["tenant_id"])
    op.create_index("ix_feature_flag_evaluations_flag_key", "feature_flag_evaluations", ["flag_key"])


def downgrade() -> None:
    op.drop_table("feature_flag_evaluations")
    op.drop_table("feature_flag_history")
    op.drop_table("feature_flag_overrides")
    op.drop_table("feature_flags")
    op.drop_table("tenants")
