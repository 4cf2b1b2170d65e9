"""
Security utilities and authentication
"""

import hashlib
import hmac
import secrets

from fastapi import HTTPException, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.db import get_db
from app.models import Tenant

security = HTTPBearer()

def verify_admin_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify operator (superadmin) token"""
    if not hmac.compare_digest(credentials.credentials, settings.ADMIN_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
    return credentials.credentials

def get_current_tenant(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> Tenant:
    """Resolve the tenant that owns the presented admin API token"""
    tenant = db.query(Tenant).filter(
        Tenant.api_token_hash == digest_secret(credentials.credentials),
        Tenant.deleted_at.is_(None)
    ).first()
    if not tenant:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
    if tenant.account_status != "active":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is not active"
        )
    return tenant

def digest_secret(value: str) -> str:
    """Keyed digest used to store tokens, PINs and bypass tokens"""
    return hmac.new(settings.SECRET_KEY.encode(), value.encode(), hashlib.sha256).hexdigest()

def generate_api_token() -> str:
    return f"pq_{secrets.token_urlsafe(32)}"

def hash_ip(ip: str) -> str:
    """Hash a client IP so raw addresses are never stored"""
    return hashlib.sha256((ip + settings.IP_SALT).encode()).hexdigest()

def get_client_ip(request) -> str:
    """Extract client IP from request"""
    peer = request.client.host if request.client else "127.0.0.1"
    # Forwarding headers are only believed when the direct peer is a known proxy
    if peer not in settings.TRUSTED_PROXIES and "*" not in settings.TRUSTED_PROXIES:
        return peer

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    # Check for real IP header
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return peer
