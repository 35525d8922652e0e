from flagops.db.base_class import Base
from flagops.models.tenant import Tenant
from flagops.models.feature_flag import (
    FeatureFlag,
    FeatureFlagOverride,
    FeatureFlagHistory,
    FeatureFlagEvaluationLog,
)
