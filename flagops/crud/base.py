"""
Storage contracts for the flag system.

FlagStore / OverrideStore / HistoryLog are injected into the resolution and
admin services; ``FlagBackend.transaction()`` groups them into one atomic unit
of work scoped to a single lock key (a flag id, or ``key:<flag_key>`` when
creating).
"""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import List, Optional
from uuid import UUID

from flagops.schemas.feature_flag import FeatureFlag, HistoryEntry, TenantOverride
from flagops.schemas.tenant import Tenant


class FlagStore(ABC):
    @abstractmethod
    def get(self, flag_id: UUID) -> Optional[FeatureFlag]: ...

    @abstractmethod
    def get_by_key(self, flag_key: str) -> Optional[FeatureFlag]: ...

    @abstractmethod
    def list(self) -> List[FeatureFlag]: ...

    @abstractmethod
    def add(self, flag: FeatureFlag) -> None: ...

    @abstractmethod
    def replace(self, flag: FeatureFlag) -> None:
        """Swap the stored snapshot for ``flag`` (matched on id)."""

    @abstractmethod
    def delete(self, flag_id: UUID) -> None: ...


class OverrideStore(ABC):
    @abstractmethod
    def get(self, flag_id: UUID, tenant_id: str) -> Optional[TenantOverride]: ...

    @abstractmethod
    def list_by_flag(self, flag_id: UUID) -> List[TenantOverride]: ...

    @abstractmethod
    def list_by_tenant(self, tenant_id: str) -> List[TenantOverride]: ...

    @abstractmethod
    def upsert(self, override: TenantOverride) -> None: ...

    @abstractmethod
    def delete(self, flag_id: UUID, tenant_id: str) -> bool: ...

    @abstractmethod
    def delete_all(self, flag_id: UUID) -> List[TenantOverride]:
        """Remove every override of a flag and return what was removed."""


class HistoryLog(ABC):
    """Append-only. There is deliberately no update or delete."""

    @abstractmethod
    def append(self, entry: HistoryEntry) -> None: ...

    @abstractmethod
    def list_by_flag(self, flag_id: UUID) -> List[HistoryEntry]:
        """Newest first."""

    @abstractmethod
    def count(self, flag_id: UUID) -> int: ...


class TenantDirectory(ABC):
    @abstractmethod
    def get(self, tenant_id: str) -> Optional[Tenant]: ...

    @abstractmethod
    def list(self) -> List[Tenant]: ...


class FlagTransaction:
    """The stores as seen from inside one admin transaction."""

    def __init__(self, flags: FlagStore, overrides: OverrideStore, history: HistoryLog):
        self.flags = flags
        self.overrides = overrides
        self.history = history


class FlagBackend(ABC):
    """Read views for the evaluation path plus transactional writes."""

    flags: FlagStore
    overrides: OverrideStore
    history: HistoryLog

    @abstractmethod
    def transaction(self, lock_key: str) -> AbstractContextManager:
        """Context manager yielding a FlagTransaction.

        Commits on normal exit, rolls back every staged change if the block
        raises. Transactions with different lock keys never wait on each other.
        """
