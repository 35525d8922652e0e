"""Feature flag resolution: given a flag, an optional override and a tenant
context, decide ON/OFF and say why.

Priority:
0. Terminal lifecycle (archived, killed) -> OFF, overrides included
1. Environment scoping
2. Tenant override
3. Global master switch
4. Rollout strategy dispatch
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Tuple

from prometheus_client import Counter

from flagops.config import settings
from flagops.core.exceptions import ConfigurationError
from flagops.schemas.feature_flag import (
    FeatureFlag,
    FlagCategory,
    RolloutStrategy,
    TenantContext,
    TenantOverride,
)
from flagops.services.bucketing import BucketerSelector
from flagops.services.evaluation_log import EvaluationLogQueue, EvaluationRecord

logger = logging.getLogger("flagops.resolution")

FLAG_EVALUATIONS = Counter(
    "flag_evaluations_total",
    "Feature flag resolutions by decision source",
    ["source"],
)


class ResolutionSource(str, Enum):
    ARCHIVED = "archived"
    KILLED = "killed"
    ENVIRONMENT_EXCLUDED = "environment_excluded"
    OVERRIDE = "override"
    DISABLED = "disabled"
    STRATEGY = "strategy"
    PERCENTAGE_ROLLOUT = "percentage_rollout"
    TIER = "tier"
    SPECIFIC_NO_OVERRIDE = "specific_no_override"
    SAFE_DEFAULT = "safe_default"


@dataclass(frozen=True)
class Resolution:
    decision: bool
    source: ResolutionSource


class SafeDefaultPolicy:
    """What to answer when resolution itself fails.

    kill_switch-category flags fail closed. Everything else falls back to the
    last decision served for that tenant, or to ``fail_open`` when none is known.
    """

    def __init__(self, fail_open: bool = True, max_entries: int = 10_000):
        self.fail_open = fail_open
        self.max_entries = max_entries
        self._last_known: "OrderedDict[Tuple[str, str], bool]" = OrderedDict()
        self._lock = threading.Lock()

    def remember(self, flag_key: str, tenant_id: str, decision: bool) -> None:
        key = (flag_key, tenant_id)
        with self._lock:
            self._last_known[key] = decision
            self._last_known.move_to_end(key)
            while len(self._last_known) > self.max_entries:
                self._last_known.popitem(last=False)

    def last_known(self, flag_key: str, tenant_id: str) -> Optional[bool]:
        with self._lock:
            return self._last_known.get((flag_key, tenant_id))

    def default_for(self, flag: FeatureFlag, context: TenantContext) -> bool:
        if flag.category == FlagCategory.KILL_SWITCH:
            return False
        known = self.last_known(flag.flag_key, context.tenant_id)
        if known is not None:
            return known
        return self.fail_open


class ResolutionEngine:
    def __init__(
        self,
        bucketers: Optional[BucketerSelector] = None,
        evaluation_log: Optional[EvaluationLogQueue] = None,
        safe_default: Optional[SafeDefaultPolicy] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.bucketers = bucketers or BucketerSelector()
        self.evaluation_log = evaluation_log
        self.safe_default = safe_default or SafeDefaultPolicy(
            fail_open=settings.FLAG_FAIL_OPEN,
            max_entries=settings.FLAG_LAST_KNOWN_GOOD_SIZE,
        )
        self._clock = clock

    def decide(
        self,
        flag: FeatureFlag,
        override: Optional[TenantOverride],
        context: TenantContext,
    ) -> Resolution:
        """Strict decision function. Raises ConfigurationError on an unknown strategy."""
        if flag.archived_at is not None:
            return Resolution(False, ResolutionSource.ARCHIVED)
        if flag.killed_at is not None:
            return Resolution(False, ResolutionSource.KILLED)

        if context.environment not in flag.environments:
            return Resolution(False, ResolutionSource.ENVIRONMENT_EXCLUDED)

        if override is not None:
            if override.flag_id == flag.id and override.tenant_id == context.tenant_id:
                return Resolution(override.enabled, ResolutionSource.OVERRIDE)
            logger.debug(
                "Ignoring override for %s/%s while resolving %s/%s",
                override.flag_id, override.tenant_id, flag.id, context.tenant_id,
            )

        if not flag.enabled:
            return Resolution(False, ResolutionSource.DISABLED)

        strategy = flag.rollout_strategy
        if strategy == RolloutStrategy.ALL_OR_NOTHING:
            return Resolution(True, ResolutionSource.STRATEGY)
        if strategy == RolloutStrategy.PERCENTAGE:
            bucket = self.bucketers.for_flag(flag).bucket(context.tenant_id, flag.flag_key)
            return Resolution(bucket < flag.rollout_percentage, ResolutionSource.PERCENTAGE_ROLLOUT)
        if strategy == RolloutStrategy.TIER:
            return Resolution(context.tier in flag.allowed_tiers, ResolutionSource.TIER)
        if strategy == RolloutStrategy.SPECIFIC:
            return Resolution(False, ResolutionSource.SPECIFIC_NO_OVERRIDE)

        raise ConfigurationError(
            f"Flag '{flag.flag_key}' has unknown rollout strategy {strategy!r}"
        )

    def resolve(
        self,
        flag: FeatureFlag,
        override: Optional[TenantOverride],
        context: TenantContext,
    ) -> Resolution:
        """Never raises: failures resolve to the safe default."""
        if context.unresolved and not flag.is_terminal:
            return self.fallback(flag, context)
        try:
            resolution = self.decide(flag, override, context)
        except Exception:
            logger.exception(
                "Resolution failed for flag '%s' tenant '%s'; serving safe default",
                getattr(flag, "flag_key", "?"), context.tenant_id,
            )
            return self.fallback(flag, context)

        self.safe_default.remember(flag.flag_key, context.tenant_id, resolution.decision)
        FLAG_EVALUATIONS.labels(source=resolution.source.value).inc()
        if flag.log_checks:
            self._log_check(flag, context, resolution)
        return resolution

    def fallback(self, flag: FeatureFlag, context: TenantContext) -> Resolution:
        try:
            decision = self.safe_default.default_for(flag, context)
        except Exception:
            logger.exception("Safe default lookup failed for tenant '%s'", context.tenant_id)
            decision = False
        FLAG_EVALUATIONS.labels(source=ResolutionSource.SAFE_DEFAULT.value).inc()
        return Resolution(decision, ResolutionSource.SAFE_DEFAULT)

    def _log_check(self, flag: FeatureFlag, context: TenantContext, resolution: Resolution) -> None:
        if self.evaluation_log is None:
            return
        try:
            self.evaluation_log.submit(
                EvaluationRecord(
                    tenant_id=context.tenant_id,
                    flag_key=flag.flag_key,
                    decision=resolution.decision,
                    source=resolution.source.value,
                    evaluated_at=self._clock(),
                )
            )
        except Exception:
            logger.warning("Could not enqueue evaluation log for '%s'", flag.flag_key, exc_info=True)
