"""Feature flag queries and tenant evaluation."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from uuid import UUID

from flagops.config import settings
from flagops.core.exceptions import NotFoundError, ValidationError
from flagops.crud.base import FlagBackend, TenantDirectory
from flagops.schemas.feature_flag import (
    FeatureFlag,
    FeatureFlagDetail,
    FeatureFlagStats,
    FeatureFlagSummary,
    FlagCategory,
    RolloutStrategy,
    TenantContext,
    TenantFlagStatus,
)
from flagops.services.resolution import Resolution, ResolutionEngine

logger = logging.getLogger("flagops.resolution")

STATUS_FILTERS = ("enabled", "disabled", "rollout", "archived", "killed")
TENANT_FILTERS = ("enabled", "disabled", "overridden")
RECENT_CHANGE_WINDOW = timedelta(days=7)


def _in_rollout(flag: FeatureFlag) -> bool:
    return (
        not flag.is_terminal
        and flag.enabled
        and flag.rollout_strategy == RolloutStrategy.PERCENTAGE
        and flag.rollout_percentage < 100
    )


def _matches_status(flag: FeatureFlag, status: str) -> bool:
    if status == "archived":
        return flag.archived_at is not None
    if status == "killed":
        return flag.killed_at is not None and flag.archived_at is None
    if flag.is_terminal:
        return False
    if status == "enabled":
        return flag.enabled
    if status == "disabled":
        return not flag.enabled
    return _in_rollout(flag)


def _matches_search(flag: FeatureFlag, search: str) -> bool:
    needle = search.lower()
    return (
        needle in flag.flag_key.lower()
        or needle in flag.display_name.lower()
        or needle in (flag.description or "").lower()
    )


class FlagQueryService:
    """Read side: admin listings plus per-tenant evaluation through the engine."""

    def __init__(
        self,
        backend: FlagBackend,
        tenants: TenantDirectory,
        engine: ResolutionEngine,
        environment: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.backend = backend
        self.tenants = tenants
        self.engine = engine
        self.environment = environment or settings.APP_ENV
        self._clock = clock

    # ═══════════════════════════════════════════
    #  Admin listings
    # ═══════════════════════════════════════════

    def list_flags(
        self,
        status: Optional[str] = None,
        category: Optional[FlagCategory] = None,
        search: Optional[str] = None,
    ) -> List[FeatureFlagSummary]:
        if status is not None and status not in STATUS_FILTERS:
            raise ValidationError(
                f"Unknown status filter '{status}', expected one of {', '.join(STATUS_FILTERS)}",
                field_name="status",
            )

        flags = self.backend.flags.list()
        if status:
            flags = [f for f in flags if _matches_status(f, status)]
        if category:
            flags = [f for f in flags if f.category == category]
        if search:
            flags = [f for f in flags if _matches_search(f, search)]
        flags.sort(key=lambda f: f.created_at, reverse=True)

        return [
            FeatureFlagSummary.model_validate(
                {**f.model_dump(), "override_count": len(self.backend.overrides.list_by_flag(f.id))}
            )
            for f in flags
        ]

    def flag_stats(self, now: Optional[datetime] = None) -> FeatureFlagStats:
        now = now or self._clock()
        flags = self.backend.flags.list()
        active = [f for f in flags if not f.is_terminal]
        return FeatureFlagStats(
            total=len(flags),
            enabled=sum(1 for f in active if f.enabled),
            in_rollout=sum(1 for f in flags if _in_rollout(f)),
            recently_changed=sum(1 for f in flags if now - f.updated_at <= RECENT_CHANGE_WINDOW),
            killed=sum(1 for f in flags if f.killed_at is not None and f.archived_at is None),
            archived=sum(1 for f in flags if f.archived_at is not None),
        )

    def get_flag_detail(self, flag_id: UUID) -> FeatureFlagDetail:
        flag = self.backend.flags.get(flag_id)
        if flag is None:
            raise NotFoundError("Feature flag", str(flag_id))
        overrides = self.backend.overrides.list_by_flag(flag_id)
        return FeatureFlagDetail.model_validate({**flag.model_dump(), "overrides": overrides})

    def tenant_statuses(
        self,
        flag_id: UUID,
        environment: Optional[str] = None,
        status_filter: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[TenantFlagStatus]:
        """How the flag resolves for every tenant in the directory."""
        if status_filter is not None and status_filter not in TENANT_FILTERS:
            raise ValidationError(
                f"Unknown tenant filter '{status_filter}'", field_name="filter"
            )
        flag = self.backend.flags.get(flag_id)
        if flag is None:
            raise NotFoundError("Feature flag", str(flag_id))

        overrides = {o.tenant_id: o for o in self.backend.overrides.list_by_flag(flag_id)}
        environment = environment or self.environment

        rows = []
        for tenant in self.tenants.list():
            if search and search.lower() not in tenant.name.lower() and search.lower() not in tenant.id.lower():
                continue
            context = TenantContext(tenant_id=tenant.id, environment=environment, tier=tenant.tier)
            override = overrides.get(tenant.id)
            resolution = self.engine.resolve(flag, override, context)
            rows.append(
                TenantFlagStatus(
                    tenant_id=tenant.id,
                    tenant_name=tenant.name,
                    tier=tenant.tier,
                    enabled=resolution.decision,
                    source=resolution.source.value,
                    has_override=override is not None,
                )
            )

        if status_filter == "enabled":
            rows = [r for r in rows if r.enabled]
        elif status_filter == "disabled":
            rows = [r for r in rows if not r.enabled]
        elif status_filter == "overridden":
            rows = [r for r in rows if r.has_override]
        return rows

    # ═══════════════════════════════════════════
    #  Tenant evaluation
    # ═══════════════════════════════════════════

    def context_for(self, tenant_id: str, environment: Optional[str] = None) -> TenantContext:
        """Unknown tenants are evaluated with no tier.

        If the directory itself fails the context is marked ``unresolved`` and
        the engine serves safe defaults instead of guessing a tier.
        """
        environment = environment or self.environment
        try:
            tenant = self.tenants.get(tenant_id)
        except Exception:
            logger.warning(
                "Tenant lookup failed for '%s'; serving safe defaults", tenant_id, exc_info=True,
            )
            return TenantContext(tenant_id=tenant_id, environment=environment, unresolved=True)
        return TenantContext(
            tenant_id=tenant_id,
            environment=environment,
            tier=tenant.tier if tenant is not None else None,
        )

    def evaluate(self, flag_key: str, context: TenantContext) -> Resolution:
        flag = self.backend.flags.get_by_key(flag_key)
        if flag is None:
            raise NotFoundError("Feature flag", flag_key)
        return self._resolve(flag, context)

    def evaluate_all(self, context: TenantContext) -> Dict[str, bool]:
        """``{flag_key: decision}`` for every flag that is not archived."""
        result = {}
        for flag in self.backend.flags.list():
            if flag.archived_at is not None:
                continue
            result[flag.flag_key] = self._resolve(flag, context).decision
        return result

    def _resolve(self, flag: FeatureFlag, context: TenantContext) -> Resolution:
        try:
            override = self.backend.overrides.get(flag.id, context.tenant_id)
        except Exception:
            logger.warning(
                "Override lookup failed for flag '%s' tenant '%s'; serving safe default",
                flag.flag_key, context.tenant_id, exc_info=True,
            )
            return self.engine.fallback(flag, context)
        return self.engine.resolve(flag, override, context)


