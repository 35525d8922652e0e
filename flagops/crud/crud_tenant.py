from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flagops.core.exceptions import StorageError
from flagops.crud.base import TenantDirectory
from flagops.models.tenant import Tenant
from flagops.schemas.tenant import Tenant as TenantSchema
from flagops.schemas.tenant import TenantCreate


def get(db: Session, tenant_id: str) -> Optional[Tenant]:
    return db.query(Tenant).filter(Tenant.id == tenant_id).first()


def get_multi(db: Session, skip: int = 0, limit: int = 1000) -> List[Tenant]:
    return db.query(Tenant).order_by(Tenant.name).offset(skip).limit(limit).all()


def create(db: Session, *, obj_in: TenantCreate) -> Tenant:
    db_obj = Tenant(
        id=obj_in.id,
        name=obj_in.name,
        tier=obj_in.tier or "free",
        status=obj_in.status or "active",
    )
    db.add(db_obj)
    db.commit()
    db.refresh(db_obj)
    return db_obj


class SqlAlchemyTenantDirectory(TenantDirectory):
    """Read-only view of the tenants table for targeting and reporting."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get(self, tenant_id: str) -> Optional[TenantSchema]:
        db = self._session_factory()
        try:
            row = get(db, tenant_id)
            return TenantSchema.model_validate(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StorageError("Tenant directory is unavailable") from exc
        finally:
            db.close()

    def list(self) -> List[TenantSchema]:
        db = self._session_factory()
        try:
            return [TenantSchema.model_validate(r) for r in get_multi(db, limit=100_000)]
        except SQLAlchemyError as exc:
            raise StorageError("Tenant directory is unavailable") from exc
        finally:
            db.close()
