"""
Song request model
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from app.core.db import Base

REQUEST_STATUSES = ("pending", "approved", "rejected", "queued", "played")

class SongRequest(Base):
    __tablename__ = "song_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    track_uri = Column(String(100), nullable=False)
    track_name = Column(String(255), nullable=False)
    artist_name = Column(String(255), nullable=False)
    album_name = Column(String(255), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    explicit = Column(Boolean, default=False)
    requester_nickname = Column(String(100), nullable=True)
    requester_ip_hash = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    approved_by = Column(String(100), nullable=True)
    added_to_provider_queue = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    queued_at = Column(DateTime, nullable=True)
    played_at = Column(DateTime, nullable=True)

    # Relationships
    tenant = relationship("Tenant", back_populates="requests")

    __table_args__ = (
        Index("ix_song_requests_tenant_status", "tenant_id", "status"),
        Index("ix_song_requests_tenant_track", "tenant_id", "track_uri"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "track_uri": self.track_uri,
            "track_name": self.track_name,
            "artist_name": self.artist_name,
            "album_name": self.album_name,
            "duration_ms": self.duration_ms,
            "explicit": bool(self.explicit),
            "requester_nickname": self.requester_nickname or "Anonymous",
            "status": self.status,
            "added_to_provider_queue": bool(self.added_to_provider_queue),
            "created_at": self.created_at,
            "approved_at": self.approved_at,
            "played_at": self.played_at,
        }
