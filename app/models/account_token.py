"""
Single-use account tokens (email verification, password reset)
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from app.core.db import Base

ACCOUNT_TOKEN_PURPOSES = ("email_verification", "password_reset")

class AccountToken(Base):
    __tablename__ = "account_tokens"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    purpose = Column(String(30), nullable=False)
    token_digest = Column(String(64), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
