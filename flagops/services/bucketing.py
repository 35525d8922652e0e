"""Rollout bucketing: map (tenant, flag) to a percentile bucket 0-99."""
import hashlib
import random
import threading
from abc import ABC, abstractmethod
from typing import Optional

from flagops.config import settings
from flagops.schemas.feature_flag import FeatureFlag


class Bucketer(ABC):
    @abstractmethod
    def bucket(self, tenant_id: str, flag_key: str) -> int:
        """Return an integer in [0, 99]."""


class StickyBucketer(Bucketer):
    """Deterministic 0-99 bucket based on tenant_id + flag_key.

    Same tenant+flag always lands in the same bucket, across calls and process
    restarts, so raising the rollout percentage only ever adds tenants.
    """

    def __init__(self, salt: str = ""):
        self.salt = salt

    def bucket(self, tenant_id: str, flag_key: str) -> int:
        if self.salt:
            raw = f"{self.salt}:{tenant_id}:{flag_key}"
        else:
            raw = f"{tenant_id}:{flag_key}"
        h = hashlib.sha256(raw.encode()).hexdigest()
        return int(h[:8], 16) % 100


class VolatileBucketer(Bucketer):
    """Re-rolls on every evaluation. For sampling, not for staged rollouts."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

    def bucket(self, tenant_id: str, flag_key: str) -> int:
        with self._lock:
            return self._rng.randrange(100)


class BucketerSelector:
    """Picks the bucketer a flag asks for via rollout_sticky."""

    def __init__(self, sticky: Optional[Bucketer] = None, volatile: Optional[Bucketer] = None):
        self.sticky = sticky or StickyBucketer(salt=settings.FLAG_BUCKET_SALT)
        self.volatile = volatile or VolatileBucketer()

    def for_flag(self, flag: FeatureFlag) -> Bucketer:
        return self.sticky if flag.rollout_sticky else self.volatile
