"""Feature Flag schemas.

The record types (``FeatureFlag``, ``TenantOverride``, ``HistoryEntry``) are
frozen snapshots: a mutation builds a new snapshot and swaps it in whole, so a
reader never sees a half-applied change.
"""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

FLAG_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
FLAG_KEY_MAX_LENGTH = 100


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back out.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class FlagCategory(str, Enum):
    CORE = "core"
    BETA = "beta"
    EXPERIMENT = "experiment"
    TIER_GATE = "tier_gate"
    KILL_SWITCH = "kill_switch"
    OPS = "ops"


class RolloutStrategy(str, Enum):
    ALL_OR_NOTHING = "all_or_nothing"  # on for everyone once enabled
    PERCENTAGE = "percentage"          # on for rollout_percentage % of tenants
    TIER = "tier"                      # on for tenants whose tier is in allowed_tiers
    SPECIFIC = "specific"              # only overrides turn it on


class FlagStatus(str, Enum):
    ACTIVE = "active"
    KILLED = "killed"
    ARCHIVED = "archived"


class ChangeType(str, Enum):
    CREATED = "created"
    ENABLED = "enabled"
    DISABLED = "disabled"
    UPDATED = "updated"
    ROLLOUT_UPDATED = "rollout_updated"
    KILLED = "killed"
    ARCHIVED = "archived"
    OVERRIDE_ADDED = "override_added"
    OVERRIDE_REMOVED = "override_removed"


# ═══════════════════════════════════════════
#  Records
# ═══════════════════════════════════════════

class FeatureFlag(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    flag_key: str
    display_name: str
    description: str = ""
    category: FlagCategory = FlagCategory.CORE
    enabled: bool = False
    rollout_strategy: RolloutStrategy = RolloutStrategy.ALL_OR_NOTHING
    rollout_percentage: int = 0
    rollout_sticky: bool = True
    allowed_tiers: FrozenSet[str] = frozenset()
    is_kill_switch: bool = False
    require_confirmation: bool = False
    log_checks: bool = False
    environments: FrozenSet[str] = frozenset({"production", "staging"})
    created_by: str
    created_at: datetime
    updated_at: datetime
    killed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    normalize_utc = field_validator("created_at", "updated_at", "killed_at", "archived_at")(_as_utc)

    @field_validator("allowed_tiers", "environments", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return () if value is None else value

    @field_serializer("allowed_tiers", "environments")
    def _sorted(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)

    @property
    def status(self) -> FlagStatus:
        if self.archived_at is not None:
            return FlagStatus.ARCHIVED
        if self.killed_at is not None:
            return FlagStatus.KILLED
        return FlagStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status != FlagStatus.ACTIVE


class TenantOverride(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    flag_id: UUID
    tenant_id: str
    enabled: bool
    reason: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    normalize_utc = field_validator("created_at", "updated_at")(_as_utc)


class HistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    flag_id: UUID
    sequence: int
    change_type: ChangeType
    reason: Optional[str] = None
    created_by: str
    created_at: datetime
    before_snapshot: Optional[Dict[str, Any]] = None
    after_snapshot: Optional[Dict[str, Any]] = None

    normalize_utc = field_validator("created_at")(_as_utc)


class TenantContext(BaseModel):
    """Who is asking: the subject of a targeting decision."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    environment: str
    tier: Optional[str] = None
    # set when the tenant directory could not be read; targeting falls back
    unresolved: bool = False


# ═══════════════════════════════════════════
#  Admin inputs
# ═══════════════════════════════════════════

class FeatureFlagCreate(BaseModel):
    flag_key: str
    display_name: str
    description: str = ""
    category: FlagCategory = FlagCategory.CORE
    enabled: bool = False
    rollout_strategy: RolloutStrategy = RolloutStrategy.ALL_OR_NOTHING
    rollout_percentage: int = 0
    rollout_sticky: bool = True
    allowed_tiers: List[str] = Field(default_factory=list)
    is_kill_switch: bool = False
    require_confirmation: bool = False
    log_checks: bool = False
    environments: Optional[List[str]] = None  # None -> settings.FLAG_DEFAULT_ENVIRONMENTS


class FeatureFlagUpdate(BaseModel):
    """PATCH body. enabled / rollout_percentage have their own operations."""
    model_config = ConfigDict(extra="forbid")

    flag_key: Optional[str] = None  # present only so a change attempt can be rejected
    display_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[FlagCategory] = None
    rollout_strategy: Optional[RolloutStrategy] = None
    rollout_sticky: Optional[bool] = None
    allowed_tiers: Optional[List[str]] = None
    is_kill_switch: Optional[bool] = None
    require_confirmation: Optional[bool] = None
    log_checks: Optional[bool] = None
    environments: Optional[List[str]] = None
    reason: Optional[str] = None


class FlagToggle(BaseModel):
    enabled: bool
    confirmed: bool = False
    reason: Optional[str] = None


class FlagRolloutUpdate(BaseModel):
    percentage: int
    reason: Optional[str] = None


class FlagKill(BaseModel):
    reason: str


class FlagArchive(BaseModel):
    reason: Optional[str] = None


class OverrideCreate(BaseModel):
    tenant_id: str
    enabled: bool
    reason: Optional[str] = None


# ═══════════════════════════════════════════
#  Read models
# ═══════════════════════════════════════════

class FeatureFlagSummary(FeatureFlag):
    override_count: int = 0


class FeatureFlagDetail(FeatureFlag):
    overrides: List[TenantOverride] = Field(default_factory=list)


class FeatureFlagStats(BaseModel):
    total: int
    enabled: int
    in_rollout: int
    recently_changed: int
    killed: int
    archived: int


class TenantFlagStatus(BaseModel):
    tenant_id: str
    tenant_name: str
    tier: Optional[str] = None
    enabled: bool
    source: str
    has_override: bool


class FeatureFlagEvaluation(BaseModel):
    key: str
    enabled: bool
    source: str
