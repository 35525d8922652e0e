"""
In-memory flag backend.

Committed state lives in three dicts that are never mutated in place: a
commit builds new dicts and swaps the references, so a reader holding the old
reference keeps a consistent view. Admin transactions stage their writes and
apply them at commit; if the block raises, the staging area is discarded.
"""
import hashlib
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
from uuid import UUID

from flagops.core.exceptions import ConflictError
from flagops.crud.base import (
    FlagBackend,
    FlagStore,
    FlagTransaction,
    HistoryLog,
    OverrideStore,
    TenantDirectory,
)
from flagops.schemas.feature_flag import FeatureFlag, HistoryEntry, TenantOverride
from flagops.schemas.tenant import Tenant

OverrideKey = Tuple[UUID, str]

LOCK_STRIPES = 64


class _Staging:
    def __init__(self) -> None:
        self.flags: Dict[UUID, Optional[FeatureFlag]] = {}  # None marks a delete
        self.overrides: Dict[OverrideKey, Optional[TenantOverride]] = {}
        self.history: List[HistoryEntry] = []


class InMemoryFlagStore(FlagStore):
    def __init__(self, backend: "InMemoryFlagBackend", staging: Optional[_Staging] = None):
        self._backend = backend
        self._staging = staging

    def get(self, flag_id: UUID) -> Optional[FeatureFlag]:
        if self._staging is not None and flag_id in self._staging.flags:
            return self._staging.flags[flag_id]
        return self._backend._flags.get(flag_id)

    def get_by_key(self, flag_key: str) -> Optional[FeatureFlag]:
        if self._staging is not None:
            for flag in self._staging.flags.values():
                if flag is not None and flag.flag_key == flag_key:
                    return flag
        flag_id = self._backend._keys.get(flag_key)
        if flag_id is None:
            return None
        return self.get(flag_id)

    def list(self) -> List[FeatureFlag]:
        merged = dict(self._backend._flags)
        if self._staging is not None:
            merged.update(self._staging.flags)
        return [f for f in merged.values() if f is not None]

    def add(self, flag: FeatureFlag) -> None:
        self._write(flag.id, flag)

    def replace(self, flag: FeatureFlag) -> None:
        self._write(flag.id, flag)

    def delete(self, flag_id: UUID) -> None:
        self._write(flag_id, None)

    def _write(self, flag_id: UUID, flag: Optional[FeatureFlag]) -> None:
        if self._staging is not None:
            self._staging.flags[flag_id] = flag
            return
        staging = _Staging()
        staging.flags[flag_id] = flag
        self._backend._commit(staging)


class InMemoryOverrideStore(OverrideStore):
    def __init__(self, backend: "InMemoryFlagBackend", staging: Optional[_Staging] = None):
        self._backend = backend
        self._staging = staging

    def _merged(self) -> Dict[OverrideKey, Optional[TenantOverride]]:
        merged = dict(self._backend._overrides)
        if self._staging is not None:
            merged.update(self._staging.overrides)
        return merged

    def get(self, flag_id: UUID, tenant_id: str) -> Optional[TenantOverride]:
        key = (flag_id, tenant_id)
        if self._staging is not None and key in self._staging.overrides:
            return self._staging.overrides[key]
        return self._backend._overrides.get(key)

    def list_by_flag(self, flag_id: UUID) -> List[TenantOverride]:
        found = [o for (fid, _), o in self._merged().items() if fid == flag_id and o is not None]
        return sorted(found, key=lambda o: o.created_at, reverse=True)

    def list_by_tenant(self, tenant_id: str) -> List[TenantOverride]:
        return [o for (_, tid), o in self._merged().items() if tid == tenant_id and o is not None]

    def upsert(self, override: TenantOverride) -> None:
        self._write((override.flag_id, override.tenant_id), override)

    def delete(self, flag_id: UUID, tenant_id: str) -> bool:
        if self.get(flag_id, tenant_id) is None:
            return False
        self._write((flag_id, tenant_id), None)
        return True

    def delete_all(self, flag_id: UUID) -> List[TenantOverride]:
        removed = self.list_by_flag(flag_id)
        for o in removed:
            self._write((o.flag_id, o.tenant_id), None)
        return removed

    def _write(self, key: OverrideKey, override: Optional[TenantOverride]) -> None:
        if self._staging is not None:
            self._staging.overrides[key] = override
            return
        staging = _Staging()
        staging.overrides[key] = override
        self._backend._commit(staging)


class InMemoryHistoryLog(HistoryLog):
    def __init__(self, backend: "InMemoryFlagBackend", staging: Optional[_Staging] = None):
        self._backend = backend
        self._staging = staging

    def _entries(self, flag_id: UUID) -> List[HistoryEntry]:
        entries = list(self._backend._history.get(flag_id, ()))
        if self._staging is not None:
            entries.extend(e for e in self._staging.history if e.flag_id == flag_id)
        return entries

    def append(self, entry: HistoryEntry) -> None:
        if self._staging is not None:
            self._staging.history.append(entry)
            return
        staging = _Staging()
        staging.history.append(entry)
        self._backend._commit(staging)

    def list_by_flag(self, flag_id: UUID) -> List[HistoryEntry]:
        return sorted(self._entries(flag_id), key=lambda e: e.sequence, reverse=True)

    def count(self, flag_id: UUID) -> int:
        return len(self._entries(flag_id))


class InMemoryFlagBackend(FlagBackend):
    def __init__(self) -> None:
        self._flags: Dict[UUID, FeatureFlag] = {}
        self._keys: Dict[str, UUID] = {}
        self._overrides: Dict[OverrideKey, TenantOverride] = {}
        self._history: Dict[UUID, Tuple[HistoryEntry, ...]] = {}
        self._commit_lock = threading.Lock()
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

        self.flags = InMemoryFlagStore(self)
        self.overrides = InMemoryOverrideStore(self)
        self.history = InMemoryHistoryLog(self)

    def _lock_for(self, lock_key: str) -> threading.Lock:
        # Transactions never nest, so two keys sharing a stripe only serialise.
        digest = hashlib.blake2b(lock_key.encode(), digest_size=4).digest()
        return self._locks[int.from_bytes(digest, "big") % LOCK_STRIPES]

    @contextmanager
    def transaction(self, lock_key: str) -> Iterator[FlagTransaction]:
        with self._lock_for(lock_key):
            staging = _Staging()
            yield FlagTransaction(
                flags=InMemoryFlagStore(self, staging),
                overrides=InMemoryOverrideStore(self, staging),
                history=InMemoryHistoryLog(self, staging),
            )
            self._commit(staging)

    def _commit(self, staging: _Staging) -> None:
        with self._commit_lock:
            flags = dict(self._flags)
            keys = dict(self._keys)
            for flag_id, flag in staging.flags.items():
                previous = flags.get(flag_id)
                if flag is None:
                    if previous is not None:
                        del flags[flag_id]
                        keys.pop(previous.flag_key, None)
                    continue
                owner = keys.get(flag.flag_key)
                if owner is not None and owner != flag_id:
                    raise ConflictError(f"Flag key '{flag.flag_key}' already exists")
                flags[flag_id] = flag
                keys[flag.flag_key] = flag_id

            overrides = dict(self._overrides)
            for key, override in staging.overrides.items():
                if override is None:
                    overrides.pop(key, None)
                else:
                    overrides[key] = override

            history = dict(self._history)
            for entry in staging.history:
                history[entry.flag_id] = history.get(entry.flag_id, ()) + (entry,)

            # Deleted flags take their overrides with them; history stays.
            removed = {fid for fid, f in staging.flags.items() if f is None}
            if removed:
                overrides = {k: v for k, v in overrides.items() if k[0] not in removed}

            self._flags, self._keys = flags, keys
            self._overrides = overrides
            self._history = history


class InMemoryTenantDirectory(TenantDirectory):
    def __init__(self, tenants: Iterable[Tenant] = ()):
        self._tenants: Dict[str, Tenant] = {t.id: t for t in tenants}

    def add(self, tenant: Tenant) -> None:
        self._tenants = {**self._tenants, tenant.id: tenant}

    def get(self, tenant_id: str) -> Optional[Tenant]:
        return self._tenants.get(tenant_id)

    def list(self) -> List[Tenant]:
        return sorted(self._tenants.values(), key=lambda t: t.name)
