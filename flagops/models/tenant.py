from sqlalchemy import Column, String, DateTime, func
from flagops.db.base_class import Base


class Tenant(Base):
    id = Column(String(64), primary_key=True, index=True)
    name = Column(String, index=True, nullable=False)
    tier = Column(String, default="free")  # free, pro, enterprise
    status = Column(String, default="active")  # active, suspended
    created_at = Column(DateTime(timezone=True), server_default=func.now())
