from typing import Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict


# Shared properties
class TenantBase(BaseModel):
    name: Optional[str] = None
    tier: Optional[str] = None  # free, pro, enterprise
    status: Optional[str] = None  # active, suspended


# Properties to receive on creation
class TenantCreate(TenantBase):
    id: str
    name: str
    tier: str = "free"
    status: str = "active"


class Tenant(TenantBase):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    name: str
    created_at: Optional[datetime] = None
