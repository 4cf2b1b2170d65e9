"""
Tenant and account Pydantic schemas
"""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, EmailStr, Field

class TenantCreate(BaseModel):
    """Schema for provisioning a tenant"""
    username: str = Field(..., min_length=3, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]+$")
    email: EmailStr
    role: Literal["user", "superadmin"] = "user"

class TenantStatusUpdate(BaseModel):
    account_status: Literal["pending_verification", "active", "suspended"]

class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=10, max_length=128)

class TenantResponse(BaseModel):
    id: int
    username: str
    email: str
    role: str
    account_status: str
    created_at: datetime
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True
