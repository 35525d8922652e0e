"""Tenant-facing evaluation: which features are on for this tenant."""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from flagops.api import deps
from flagops.schemas.feature_flag import FeatureFlagEvaluation
from flagops.services.feature_flags import FlagQueryService

router = APIRouter()


@router.get("/{tenant_id}", response_model=Dict[str, bool])
def tenant_features(
    tenant_id: str,
    query: FlagQueryService = Depends(deps.get_query_service),
) -> Any:
    """``{flag_key: enabled}`` for every non-archived flag, in the deployment environment."""
    return query.evaluate_all(query.context_for(tenant_id))


@router.get("/{tenant_id}/{flag_key}", response_model=FeatureFlagEvaluation)
def evaluate_feature_flag(
    tenant_id: str,
    flag_key: str,
    query: FlagQueryService = Depends(deps.get_query_service),
) -> Any:
    resolution = query.evaluate(flag_key, query.context_for(tenant_id))
    return FeatureFlagEvaluation(key=flag_key, enabled=resolution.decision, source=resolution.source.value)
