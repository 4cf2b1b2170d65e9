"""
Event and access credential models
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship

from app.core.db import Base

EVENT_STATUSES = ("offline", "standby", "live")

class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    # unique: one authoritative event row per tenant
    tenant_id = Column(Integer, ForeignKey("tenants.id"), unique=True, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="offline")
    version = Column(Integer, nullable=False, default=0)
    config = Column(JSON, nullable=False, default=dict)
    active_admin_session = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant", back_populates="event")
    credentials = relationship("AccessCredential", back_populates="event", cascade="all, delete-orphan")

class AccessCredential(Base):
    __tablename__ = "event_access_credentials"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    kind = Column(String(10), nullable=False)  # pin, bypass
    secret_digest = Column(String(64), nullable=False, index=True)
    uses_remaining = Column(Integer, nullable=True)  # None means unlimited
    active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_used_at = Column(DateTime, nullable=True)

    # Relationships
    event = relationship("Event", back_populates="credentials")

    def is_usable(self, now: datetime) -> bool:
        if not self.active or self.expires_at <= now:
            return False
        return self.uses_remaining is None or self.uses_remaining > 0
