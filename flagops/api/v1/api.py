from fastapi import APIRouter

from flagops.api.v1.endpoints import evaluation, feature_flags

api_router = APIRouter()
api_router.include_router(feature_flags.router, prefix="/flags", tags=["feature-flags"])
api_router.include_router(evaluation.router, prefix="/feature-flags", tags=["evaluation"])
