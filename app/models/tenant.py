"""
Tenant (account) model
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship

from app.core.db import Base

class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(64), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=True)  # owned by the external auth layer
    role = Column(String(20), nullable=False, default="user")  # user, superadmin
    account_status = Column(String(30), nullable=False, default="pending_verification")  # pending_verification, active, suspended
    api_token_hash = Column(String(64), unique=True, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    # Relationships
    event = relationship("Event", back_populates="tenant", uselist=False, cascade="all, delete-orphan")
    requests = relationship("SongRequest", back_populates="tenant", cascade="all, delete-orphan")
    provider_token = relationship("ProviderToken", back_populates="tenant", uselist=False, cascade="all, delete-orphan")

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and self.account_status == "active"
