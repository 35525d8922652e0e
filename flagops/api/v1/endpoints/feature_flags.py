"""Feature Flag admin API.

Endpoints:
- GET    /flags                              → list flags (status / category / search)
- GET    /flags/stats                        → dashboard counters
- POST   /flags                              → create flag
- GET    /flags/{id}                         → flag with its overrides
- PATCH  /flags/{id}                         → edit descriptive / targeting fields
- DELETE /flags/{id}                         → hard delete (only without history)
- POST   /flags/{id}/toggle                  → enable / disable
- POST   /flags/{id}/rollout                 → set rollout percentage
- POST   /flags/{id}/kill                    → emergency kill (kill switches only)
- POST   /flags/{id}/archive                 → archive
- GET    /flags/{id}/overrides               → tenant overrides, newest first
- POST   /flags/{id}/overrides               → add / replace a tenant override
- DELETE /flags/{id}/overrides/{tenant_id}   → remove a tenant override
- GET    /flags/{id}/history                 → audit trail, newest first
- GET    /flags/{id}/tenants                 → how the flag resolves per tenant
"""

from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from flagops.api import deps
from flagops.schemas.feature_flag import (
    FeatureFlag,
    FeatureFlagCreate,
    FeatureFlagDetail,
    FeatureFlagStats,
    FeatureFlagSummary,
    FeatureFlagUpdate,
    FlagArchive,
    FlagCategory,
    FlagKill,
    FlagRolloutUpdate,
    FlagToggle,
    HistoryEntry,
    OverrideCreate,
    TenantFlagStatus,
    TenantOverride,
)
from flagops.services.admin_operations import FlagAdminService
from flagops.services.feature_flags import FlagQueryService

router = APIRouter()


@router.get("", response_model=List[FeatureFlagSummary])
def list_feature_flags(
    status: Optional[str] = Query(None, description="enabled / disabled / rollout / archived / killed"),
    category: Optional[FlagCategory] = None,
    search: Optional[str] = None,
    query: FlagQueryService = Depends(deps.get_query_service),
) -> Any:
    return query.list_flags(status=status, category=category, search=search)


@router.get("/stats", response_model=FeatureFlagStats)
def feature_flag_stats(
    query: FlagQueryService = Depends(deps.get_query_service),
) -> Any:
    return query.flag_stats()


@router.post("", response_model=FeatureFlag, status_code=201)
def create_feature_flag(
    body: FeatureFlagCreate,
    admin: FlagAdminService = Depends(deps.get_admin_service),
    actor: str = Depends(deps.get_actor),
) -> Any:
    return admin.create_flag(body, actor)


@router.get("/{flag_id}", response_model=FeatureFlagDetail)
def get_feature_flag(
    flag_id: UUID,
    query: FlagQueryService = Depends(deps.get_query_service),
) -> Any:
    return query.get_flag_detail(flag_id)


@router.patch("/{flag_id}", response_model=FeatureFlag)
def update_feature_flag(
    flag_id: UUID,
    body: FeatureFlagUpdate,
    admin: FlagAdminService = Depends(deps.get_admin_service),
    actor: str = Depends(deps.get_actor),
) -> Any:
    return admin.update_flag(flag_id, body, actor)


@router.delete("/{flag_id}")
def delete_feature_flag(
    flag_id: UUID,
    admin: FlagAdminService = Depends(deps.get_admin_service),
    actor: str = Depends(deps.get_actor),
) -> Any:
    admin.delete_flag(flag_id, actor)
    return {"ok": True}


@router.post("/{flag_id}/toggle", response_model=FeatureFlag)
def toggle_feature_flag(
    flag_id: UUID,
    body: FlagToggle,
    admin: FlagAdminService = Depends(deps.get_admin_service),
    actor: str = Depends(deps.get_actor),
) -> Any:
    return admin.toggle_flag(flag_id, body.enabled, body.confirmed, actor, reason=body.reason)


@router.post("/{flag_id}/rollout", response_model=FeatureFlag)
def update_feature_flag_rollout(
    flag_id: UUID,
    body: FlagRolloutUpdate,
    admin: FlagAdminService = Depends(deps.get_admin_service),
    actor: str = Depends(deps.get_actor),
) -> Any:
    return admin.update_rollout(flag_id, body.percentage, actor, reason=body.reason)


@router.post("/{flag_id}/kill", response_model=FeatureFlag)
def kill_feature_flag(
    flag_id: UUID,
    body: FlagKill,
    admin: FlagAdminService = Depends(deps.get_admin_service),
    actor: str = Depends(deps.get_actor),
) -> Any:
    return admin.kill_flag(flag_id, body.reason, actor)


@router.post("/{flag_id}/archive", response_model=FeatureFlag)
def archive_feature_flag(
    flag_id: UUID,
    body: Optional[FlagArchive] = None,
    admin: FlagAdminService = Depends(deps.get_admin_service),
    actor: str = Depends(deps.get_actor),
) -> Any:
    return admin.archive_flag(flag_id, actor, reason=body.reason if body else None)


@router.post("/{flag_id}/overrides", response_model=TenantOverride)
def add_feature_flag_override(
    flag_id: UUID,
    body: OverrideCreate,
    admin: FlagAdminService = Depends(deps.get_admin_service),
    actor: str = Depends(deps.get_actor),
) -> Any:
    return admin.add_override(flag_id, body.tenant_id, body.enabled, body.reason, actor)


@router.get("/{flag_id}/overrides", response_model=List[TenantOverride])
def list_feature_flag_overrides(
    flag_id: UUID,
    admin: FlagAdminService = Depends(deps.get_admin_service),
) -> Any:
    return admin.list_overrides(flag_id)


@router.delete("/{flag_id}/overrides/{tenant_id}", response_model=TenantOverride)
def remove_feature_flag_override(
    flag_id: UUID,
    tenant_id: str,
    admin: FlagAdminService = Depends(deps.get_admin_service),
    actor: str = Depends(deps.get_actor),
) -> Any:
    return admin.remove_override(flag_id, tenant_id, actor)


@router.get("/{flag_id}/history", response_model=List[HistoryEntry])
def feature_flag_history(
    flag_id: UUID,
    admin: FlagAdminService = Depends(deps.get_admin_service),
) -> Any:
    return admin.list_history(flag_id)


@router.get("/{flag_id}/tenants", response_model=List[TenantFlagStatus])
def feature_flag_tenants(
    flag_id: UUID,
    environment: Optional[str] = None,
    filter: Optional[str] = Query(None, description="enabled / disabled / overridden"),
    search: Optional[str] = None,
    query: FlagQueryService = Depends(deps.get_query_service),
) -> Any:
    return query.tenant_statuses(flag_id, environment=environment, status_filter=filter, search=search)
