"""Feature flag tables.

- feature_flags: canonical definitions, flag_key unique and never updated
- feature_flag_overrides: per-(flag, tenant) manual enable/disable
- feature_flag_history: append-only audit ledger, gap-free sequence per flag
- feature_flag_evaluations: sampled evaluation log (flags with log_checks)
"""

import uuid
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    CheckConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from flagops.db.base_class import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class FeatureFlag(Base):
    __tablename__ = "feature_flags"
    __table_args__ = (
        CheckConstraint(
            "rollout_percentage >= 0 AND rollout_percentage <= 100",
            name="ck_feature_flags_rollout_percentage",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    flag_key = Column(String(100), unique=True, nullable=False, index=True)   # e.g. "ai_scheduling_v2"
    display_name = Column(String(255), nullable=False)
    description = Column(Text, default="")
    category = Column(String(30), nullable=False, default="core", index=True)

    enabled = Column(Boolean, nullable=False, default=False)                   # global master switch

    rollout_strategy = Column(String(20), nullable=False, default="all_or_nothing")
    rollout_percentage = Column(Integer, nullable=False, default=0)            # 0-100
    rollout_sticky = Column(Boolean, nullable=False, default=True)
    allowed_tiers = Column(JSONType, default=list)                             # ["pro", "enterprise"]

    is_kill_switch = Column(Boolean, nullable=False, default=False)
    require_confirmation = Column(Boolean, nullable=False, default=False)
    log_checks = Column(Boolean, nullable=False, default=False)

    environments = Column(JSONType, default=list)                              # ["production", "staging"]

    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    killed_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True, index=True)


class FeatureFlagOverride(Base):
    __tablename__ = "feature_flag_overrides"
    __table_args__ = (
        UniqueConstraint("flag_id", "tenant_id", name="uq_feature_flag_override_tenant"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    flag_id = Column(Uuid, ForeignKey("feature_flags.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    enabled = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class FeatureFlagHistory(Base):
    __tablename__ = "feature_flag_history"
    __table_args__ = (
        UniqueConstraint("flag_id", "sequence", name="uq_feature_flag_history_sequence"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # No FK: the ledger outlives the flag row it describes.
    flag_id = Column(Uuid, nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    change_type = Column(String(30), nullable=False)
    reason = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    before_snapshot = Column(JSONType, nullable=True)
    after_snapshot = Column(JSONType, nullable=True)


class FeatureFlagEvaluationLog(Base):
    __tablename__ = "feature_flag_evaluations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    flag_key = Column(String(100), nullable=False, index=True)
    decision = Column(Boolean, nullable=False)
    source = Column(String(30), nullable=False)
    evaluated_at = Column(DateTime(timezone=True), nullable=False)
