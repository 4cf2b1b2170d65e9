"""
Domain event log backing the polling fallback
"""

from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime, JSON, ForeignKey

from app.core.db import Base

class EventLogEntry(Base):
    __tablename__ = "event_log"

    # Autoincrement id doubles as the monotonic version consumers order by
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    private = Column(Boolean, nullable=False, default=False)
    timestamp_ms = Column(BigInteger, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
