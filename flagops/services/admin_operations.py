"""
Feature Flag 管理操作（Admin Operations）

Every mutation runs inside one ``backend.transaction()``:
validate → mutate flags / overrides → append exactly one history entry →
commit. If anything raises (history append included) nothing is applied.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from prometheus_client import Counter

from flagops.config import settings
from flagops.core.exceptions import (
    ConfirmationRequiredError,
    ConflictError,
    ImmutableFieldError,
    NotFoundError,
    ValidationError,
)
from flagops.crud.base import FlagBackend, FlagTransaction, TenantDirectory
from flagops.schemas.feature_flag import (
    FLAG_KEY_MAX_LENGTH,
    FLAG_KEY_PATTERN,
    ChangeType,
    FeatureFlag,
    FeatureFlagCreate,
    FeatureFlagUpdate,
    FlagStatus,
    HistoryEntry,
    TenantOverride,
)

logger = logging.getLogger("flagops.admin")

FLAG_ADMIN_OPERATIONS = Counter(
    "flag_admin_operations_total",
    "Feature flag admin mutations committed",
    ["operation"],
)

DISPLAY_NAME_MAX_LENGTH = 255


# ═══════════════════════════════════════════
#  Validation
# ═══════════════════════════════════════════

def validate_flag_key(flag_key: str) -> None:
    if not flag_key or len(flag_key) > FLAG_KEY_MAX_LENGTH or not FLAG_KEY_PATTERN.match(flag_key):
        raise ValidationError(
            f"Invalid flag_key '{flag_key}': must match ^[a-z][a-z0-9_]*$ "
            f"and be at most {FLAG_KEY_MAX_LENGTH} characters",
            field_name="flag_key",
        )


def validate_percentage(percentage: int) -> None:
    if isinstance(percentage, bool) or not isinstance(percentage, int) or not 0 <= percentage <= 100:
        raise ValidationError(
            f"Rollout percentage must be an integer between 0 and 100, got {percentage!r}",
            field_name="rollout_percentage",
        )


def validate_display_name(display_name: Optional[str]) -> None:
    if display_name is None or not display_name.strip():
        raise ValidationError("display_name is required", field_name="display_name")
    if len(display_name) > DISPLAY_NAME_MAX_LENGTH:
        raise ValidationError(
            f"display_name must be at most {DISPLAY_NAME_MAX_LENGTH} characters",
            field_name="display_name",
        )


def validate_environments(environments: Iterable[str]) -> None:
    if not environments or any(not (e or "").strip() for e in environments):
        raise ValidationError(
            "A flag must be active in at least one environment", field_name="environments"
        )


def _snapshot(model: Optional[Any]) -> Optional[Dict[str, Any]]:
    return model.model_dump(mode="json") if model is not None else None


class FlagAdminService:
    """The mutation surface over an injected ``FlagBackend``."""

    def __init__(
        self,
        backend: FlagBackend,
        tenants: TenantDirectory,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.backend = backend
        self.tenants = tenants
        self._clock = clock

    # ─── reads ───

    def get_flag(self, flag_id: UUID) -> FeatureFlag:
        flag = self.backend.flags.get(flag_id)
        if flag is None:
            raise NotFoundError("Feature flag", str(flag_id))
        return flag

    def get_flag_by_key(self, flag_key: str) -> FeatureFlag:
        flag = self.backend.flags.get_by_key(flag_key)
        if flag is None:
            raise NotFoundError("Feature flag", flag_key)
        return flag

    def list_overrides(self, flag_id: UUID) -> List[TenantOverride]:
        """Newest first."""
        self.get_flag(flag_id)
        return self.backend.overrides.list_by_flag(flag_id)

    def list_history(self, flag_id: UUID) -> List[HistoryEntry]:
        """Newest first. Still readable after the flag row is gone."""
        entries = self.backend.history.list_by_flag(flag_id)
        if not entries:
            self.get_flag(flag_id)
        return entries

    # ─── mutations ───

    def create_flag(self, flag_in: FeatureFlagCreate, actor: str) -> FeatureFlag:
        validate_flag_key(flag_in.flag_key)
        validate_display_name(flag_in.display_name)
        validate_percentage(flag_in.rollout_percentage)
        environments = (
            flag_in.environments
            if flag_in.environments is not None
            else settings.FLAG_DEFAULT_ENVIRONMENTS
        )
        validate_environments(environments)

        now = self._clock()
        flag = FeatureFlag(
            id=uuid.uuid4(),
            flag_key=flag_in.flag_key,
            display_name=flag_in.display_name.strip(),
            description=flag_in.description or "",
            category=flag_in.category,
            enabled=flag_in.enabled,
            rollout_strategy=flag_in.rollout_strategy,
            rollout_percentage=flag_in.rollout_percentage,
            rollout_sticky=flag_in.rollout_sticky,
            allowed_tiers=frozenset(flag_in.allowed_tiers),
            is_kill_switch=flag_in.is_kill_switch,
            require_confirmation=flag_in.require_confirmation,
            log_checks=flag_in.log_checks,
            environments=frozenset(environments),
            created_by=actor,
            created_at=now,
            updated_at=now,
        )

        with self.backend.transaction(f"key:{flag.flag_key}") as tx:
            if tx.flags.get_by_key(flag.flag_key) is not None:
                raise ConflictError(f"Flag key '{flag.flag_key}' already exists")
            tx.flags.add(flag)
            self._record(tx, flag.id, ChangeType.CREATED, actor, None, None, _snapshot(flag))

        self._committed("create", flag, actor)
        return flag

    def update_flag(self, flag_id: UUID, flag_in: FeatureFlagUpdate, actor: str) -> FeatureFlag:
        changes = flag_in.model_dump(exclude_unset=True)
        reason = changes.pop("reason", None)
        # Explicit nulls mean "leave as is".
        changes = {k: v for k, v in changes.items() if v is not None}

        with self.backend.transaction(str(flag_id)) as tx:
            flag = self._load_mutable(tx, flag_id)

            new_key = changes.pop("flag_key", None)
            if new_key is not None and new_key != flag.flag_key:
                raise ImmutableFieldError("flag_key")

            if "display_name" in changes:
                validate_display_name(changes["display_name"])
                changes["display_name"] = changes["display_name"].strip()
            if "environments" in changes:
                validate_environments(changes["environments"])
                changes["environments"] = frozenset(changes["environments"])
            if "allowed_tiers" in changes:
                changes["allowed_tiers"] = frozenset(changes["allowed_tiers"])

            changed = {k: v for k, v in changes.items() if getattr(flag, k) != v}
            if not changed:
                return flag

            updated = flag.model_copy(update={**changed, "updated_at": self._clock()})
            before = {k: v for k, v in _snapshot(flag).items() if k in changed}
            after = {k: v for k, v in _snapshot(updated).items() if k in changed}
            tx.flags.replace(updated)
            self._record(tx, flag_id, ChangeType.UPDATED, actor, reason, before, after)

        self._committed("update", updated, actor, fields=sorted(changed))
        return updated

    def toggle_flag(
        self,
        flag_id: UUID,
        enabled: bool,
        confirmed: bool,
        actor: str,
        reason: Optional[str] = None,
    ) -> FeatureFlag:
        with self.backend.transaction(str(flag_id)) as tx:
            flag = self._load_mutable(tx, flag_id)
            if flag.require_confirmation and not confirmed:
                raise ConfirmationRequiredError(flag.flag_key)

            updated = flag.model_copy(update={"enabled": enabled, "updated_at": self._clock()})
            tx.flags.replace(updated)
            self._record(
                tx,
                flag_id,
                ChangeType.ENABLED if enabled else ChangeType.DISABLED,
                actor,
                reason,
                {"enabled": flag.enabled},
                {"enabled": enabled},
            )

        self._committed("enable" if enabled else "disable", updated, actor)
        return updated

    def update_rollout(
        self,
        flag_id: UUID,
        percentage: int,
        actor: str,
        reason: Optional[str] = None,
    ) -> FeatureFlag:
        validate_percentage(percentage)

        with self.backend.transaction(str(flag_id)) as tx:
            flag = self._load_mutable(tx, flag_id)
            updated = flag.model_copy(
                update={"rollout_percentage": percentage, "updated_at": self._clock()}
            )
            tx.flags.replace(updated)
            self._record(
                tx,
                flag_id,
                ChangeType.ROLLOUT_UPDATED,
                actor,
                reason,
                {"rollout_percentage": flag.rollout_percentage},
                {"rollout_percentage": percentage},
            )

        self._committed("rollout", updated, actor, percentage=percentage)
        return updated

    def kill_flag(self, flag_id: UUID, reason: str, actor: str) -> FeatureFlag:
        """Force the flag OFF for every tenant. Overrides are voided, not kept."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to kill a flag", field_name="reason")

        with self.backend.transaction(str(flag_id)) as tx:
            flag = self._load(tx, flag_id)
            if not flag.is_kill_switch:
                raise ConflictError(f"Flag '{flag.flag_key}' is not a kill switch")
            self._ensure_active(flag)

            now = self._clock()
            voided = tx.overrides.delete_all(flag_id)
            updated = flag.model_copy(update={"enabled": False, "killed_at": now, "updated_at": now})
            tx.flags.replace(updated)

            before = _snapshot(flag)
            before["overrides"] = [_snapshot(o) for o in voided]
            self._record(tx, flag_id, ChangeType.KILLED, actor, reason, before, _snapshot(updated))

        logger.warning(
            "Kill switch fired: flag=%s actor=%s reason=%s voided_overrides=%d",
            flag.flag_key, actor, reason, len(voided),
            extra={"flag_key": flag.flag_key, "operation": "kill"},
        )
        FLAG_ADMIN_OPERATIONS.labels(operation="kill").inc()
        return updated

    def archive_flag(self, flag_id: UUID, actor: str, reason: Optional[str] = None) -> FeatureFlag:
        with self.backend.transaction(str(flag_id)) as tx:
            flag = self._load(tx, flag_id)
            if flag.archived_at is not None:
                raise ConflictError(f"Flag '{flag.flag_key}' is already archived")

            now = self._clock()
            updated = flag.model_copy(update={"archived_at": now, "updated_at": now})
            tx.flags.replace(updated)
            self._record(
                tx,
                flag_id,
                ChangeType.ARCHIVED,
                actor,
                reason,
                {"status": flag.status.value},
                {"status": FlagStatus.ARCHIVED.value},
            )

        self._committed("archive", updated, actor)
        return updated

    def add_override(
        self,
        flag_id: UUID,
        tenant_id: str,
        enabled: bool,
        reason: Optional[str],
        actor: str,
    ) -> TenantOverride:
        if not tenant_id or not tenant_id.strip():
            raise ValidationError("tenant_id is required", field_name="tenant_id")
        if self.tenants.get(tenant_id) is None:
            raise NotFoundError("Tenant", tenant_id)

        with self.backend.transaction(str(flag_id)) as tx:
            flag = self._load_mutable(tx, flag_id)

            now = self._clock()
            existing = tx.overrides.get(flag_id, tenant_id)
            if existing is None:
                override = TenantOverride(
                    flag_id=flag_id,
                    tenant_id=tenant_id,
                    enabled=enabled,
                    reason=reason,
                    created_by=actor,
                    created_at=now,
                )
            else:
                override = existing.model_copy(
                    update={"enabled": enabled, "reason": reason, "created_by": actor, "updated_at": now}
                )
            tx.overrides.upsert(override)
            self._record(
                tx, flag_id, ChangeType.OVERRIDE_ADDED, actor, reason,
                _snapshot(existing), _snapshot(override),
            )

        self._committed("override_add", flag, actor, tenant_id=tenant_id, enabled=enabled)
        return override

    def remove_override(self, flag_id: UUID, tenant_id: str, actor: str) -> TenantOverride:
        with self.backend.transaction(str(flag_id)) as tx:
            flag = self._load_mutable(tx, flag_id)
            existing = tx.overrides.get(flag_id, tenant_id)
            if existing is None:
                raise NotFoundError("Override", f"{flag.flag_key}/{tenant_id}")
            tx.overrides.delete(flag_id, tenant_id)
            self._record(
                tx, flag_id, ChangeType.OVERRIDE_REMOVED, actor, None, _snapshot(existing), None
            )

        self._committed("override_remove", flag, actor, tenant_id=tenant_id)
        return existing

    def delete_flag(self, flag_id: UUID, actor: str) -> None:
        """Hard delete, refused once the flag has any audit history."""
        with self.backend.transaction(str(flag_id)) as tx:
            flag = self._load(tx, flag_id)
            if tx.history.count(flag_id) > 0:
                raise ConflictError(
                    f"Flag '{flag.flag_key}' has audit history and cannot be deleted; archive it instead"
                )
            tx.flags.delete(flag_id)

        self._committed("delete", flag, actor)

    # ─── helpers ───

    @staticmethod
    def _load(tx: FlagTransaction, flag_id: UUID) -> FeatureFlag:
        flag = tx.flags.get(flag_id)
        if flag is None:
            raise NotFoundError("Feature flag", str(flag_id))
        return flag

    def _load_mutable(self, tx: FlagTransaction, flag_id: UUID) -> FeatureFlag:
        flag = self._load(tx, flag_id)
        self._ensure_active(flag)
        return flag

    @staticmethod
    def _ensure_active(flag: FeatureFlag) -> None:
        if flag.is_terminal:
            raise ConflictError(f"Flag '{flag.flag_key}' is {flag.status.value}")

    def _record(
        self,
        tx: FlagTransaction,
        flag_id: UUID,
        change_type: ChangeType,
        actor: str,
        reason: Optional[str],
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
    ) -> HistoryEntry:
        entry = HistoryEntry(
            id=uuid.uuid4(),
            flag_id=flag_id,
            sequence=tx.history.count(flag_id) + 1,
            change_type=change_type,
            reason=reason,
            created_by=actor,
            created_at=self._clock(),
            before_snapshot=before,
            after_snapshot=after,
        )
        tx.history.append(entry)
        return entry

    @staticmethod
    def _committed(operation: str, flag: FeatureFlag, actor: str, **details: Any) -> None:
        detail_text = " ".join(f"{k}={v}" for k, v in details.items())
        logger.info(
            "Flag %s: flag=%s actor=%s %s", operation, flag.flag_key, actor, detail_text,
            extra={"flag_key": flag.flag_key, "operation": operation},
        )
        FLAG_ADMIN_OPERATIONS.labels(operation=operation).inc()
