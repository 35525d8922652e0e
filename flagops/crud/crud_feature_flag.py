"""
SQLAlchemy flag backend.

Read views open a short session per call. ``transaction()`` holds one session
for the whole admin operation: the flag row is locked ``FOR UPDATE`` (a no-op
on SQLite), every write is flushed so later reads in the same operation see
it, and the session commits once on exit or rolls back if the block raises.
"""
import logging
from contextlib import contextmanager, nullcontext
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from flagops.core.exceptions import ConflictError, StorageError
from flagops.crud.base import (
    FlagBackend,
    FlagStore,
    FlagTransaction,
    HistoryLog,
    OverrideStore,
)
from flagops.models.feature_flag import FeatureFlag as FlagRow
from flagops.models.feature_flag import FeatureFlagHistory as HistoryRow
from flagops.models.feature_flag import FeatureFlagOverride as OverrideRow
from flagops.schemas.feature_flag import FeatureFlag, HistoryEntry, TenantOverride

logger = logging.getLogger("flagops.db")

SessionScope = Callable[[], ContextManager[Session]]


def _flag_columns(flag: FeatureFlag) -> Dict[str, Any]:
    data = flag.model_dump()
    data["category"] = flag.category.value
    data["rollout_strategy"] = flag.rollout_strategy.value
    return data


@contextmanager
def _translate_errors(db: Session) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Integrity violation: %s", exc.orig)
        raise ConflictError("Write conflicts with existing data") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Database error: %s", exc)
        raise StorageError("Feature flag storage is unavailable") from exc


class SqlAlchemyFlagStore(FlagStore):
    def __init__(self, scope: SessionScope):
        self._scope = scope

    def get(self, flag_id: UUID) -> Optional[FeatureFlag]:
        with self._scope() as db:
            row = db.get(FlagRow, flag_id)
            return FeatureFlag.model_validate(row) if row is not None else None

    def get_by_key(self, flag_key: str) -> Optional[FeatureFlag]:
        with self._scope() as db:
            row = db.query(FlagRow).filter(FlagRow.flag_key == flag_key).first()
            return FeatureFlag.model_validate(row) if row is not None else None

    def list(self) -> List[FeatureFlag]:
        with self._scope() as db:
            rows = db.query(FlagRow).order_by(FlagRow.flag_key).all()
            return [FeatureFlag.model_validate(r) for r in rows]

    def add(self, flag: FeatureFlag) -> None:
        with self._scope() as db:
            db.add(FlagRow(**_flag_columns(flag)))
            db.flush()

    def replace(self, flag: FeatureFlag) -> None:
        with self._scope() as db:
            row = db.get(FlagRow, flag.id)
            if row is None:
                db.add(FlagRow(**_flag_columns(flag)))
            else:
                for field, value in _flag_columns(flag).items():
                    setattr(row, field, value)
            db.flush()

    def delete(self, flag_id: UUID) -> None:
        with self._scope() as db:
            # SQLite does not enforce ON DELETE CASCADE unless asked to.
            db.query(OverrideRow).filter(OverrideRow.flag_id == flag_id).delete()
            db.query(FlagRow).filter(FlagRow.id == flag_id).delete()
            db.flush()


class SqlAlchemyOverrideStore(OverrideStore):
    def __init__(self, scope: SessionScope):
        self._scope = scope

    def get(self, flag_id: UUID, tenant_id: str) -> Optional[TenantOverride]:
        with self._scope() as db:
            row = self._row(db, flag_id, tenant_id)
            return TenantOverride.model_validate(row) if row is not None else None

    def list_by_flag(self, flag_id: UUID) -> List[TenantOverride]:
        with self._scope() as db:
            rows = (
                db.query(OverrideRow)
                .filter(OverrideRow.flag_id == flag_id)
                .order_by(OverrideRow.created_at.desc())
                .all()
            )
            return [TenantOverride.model_validate(r) for r in rows]

    def list_by_tenant(self, tenant_id: str) -> List[TenantOverride]:
        with self._scope() as db:
            rows = db.query(OverrideRow).filter(OverrideRow.tenant_id == tenant_id).all()
            return [TenantOverride.model_validate(r) for r in rows]

    def upsert(self, override: TenantOverride) -> None:
        with self._scope() as db:
            row = self._row(db, override.flag_id, override.tenant_id)
            if row is None:
                db.add(OverrideRow(**override.model_dump()))
            else:
                for field, value in override.model_dump().items():
                    setattr(row, field, value)
            db.flush()

    def delete(self, flag_id: UUID, tenant_id: str) -> bool:
        with self._scope() as db:
            row = self._row(db, flag_id, tenant_id)
            if row is None:
                return False
            db.delete(row)
            db.flush()
            return True

    def delete_all(self, flag_id: UUID) -> List[TenantOverride]:
        with self._scope() as db:
            rows = db.query(OverrideRow).filter(OverrideRow.flag_id == flag_id).all()
            removed = [TenantOverride.model_validate(r) for r in rows]
            for row in rows:
                db.delete(row)
            db.flush()
            return removed

    @staticmethod
    def _row(db: Session, flag_id: UUID, tenant_id: str) -> Optional[OverrideRow]:
        return (
            db.query(OverrideRow)
            .filter(OverrideRow.flag_id == flag_id, OverrideRow.tenant_id == tenant_id)
            .first()
        )


class SqlAlchemyHistoryLog(HistoryLog):
    def __init__(self, scope: SessionScope):
        self._scope = scope

    def append(self, entry: HistoryEntry) -> None:
        with self._scope() as db:
            data = entry.model_dump()
            data["change_type"] = entry.change_type.value
            db.add(HistoryRow(**data))
            db.flush()

    def list_by_flag(self, flag_id: UUID) -> List[HistoryEntry]:
        with self._scope() as db:
            rows = (
                db.query(HistoryRow)
                .filter(HistoryRow.flag_id == flag_id)
                .order_by(HistoryRow.sequence.desc())
                .all()
            )
            return [HistoryEntry.model_validate(r) for r in rows]

    def count(self, flag_id: UUID) -> int:
        with self._scope() as db:
            return db.query(func.count(HistoryRow.id)).filter(HistoryRow.flag_id == flag_id).scalar() or 0


class SqlAlchemyFlagBackend(FlagBackend):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        self.flags = SqlAlchemyFlagStore(self._session)
        self.overrides = SqlAlchemyOverrideStore(self._session)
        self.history = SqlAlchemyHistoryLog(self._session)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """One short session for a read (or a single autocommitted write)."""
        db = self._session_factory()
        try:
            with _translate_errors(db):
                yield db
                db.commit()
        finally:
            db.close()

    @contextmanager
    def transaction(self, lock_key: str) -> Iterator[FlagTransaction]:
        db = self._session_factory()
        try:
            with _translate_errors(db):
                self._lock_row(db, lock_key)
                scope = lambda: nullcontext(db)  # noqa: E731
                try:
                    yield FlagTransaction(
                        flags=SqlAlchemyFlagStore(scope),
                        overrides=SqlAlchemyOverrideStore(scope),
                        history=SqlAlchemyHistoryLog(scope),
                    )
                except Exception:
                    db.rollback()
                    raise
                db.commit()
        finally:
            db.close()

    @staticmethod
    def _lock_row(db: Session, lock_key: str) -> None:
        # "key:<flag_key>" (create) has no row yet; the unique index on
        # flag_key settles races there.
        try:
            flag_id = UUID(lock_key)
        except ValueError:
            return
        db.query(FlagRow.id).filter(FlagRow.id == flag_id).with_for_update().first()
