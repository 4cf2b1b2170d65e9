"""
Tenant provisioning, single-use account tokens and email verification
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core import errors
from app.models import AccountToken, ACCOUNT_TOKEN_PURPOSES, Tenant
from app.services.event_service import EventService
from app.services.repositories import TenantRepo
from app.utils.security import digest_secret, generate_api_token

logger = logging.getLogger(__name__)

VERIFICATION_HOURS_VALID = 24


class AccountService:
    """Operator-side account management"""

    def __init__(self, event_service: EventService):
        self.event_service = event_service

    def create_tenant(
        self,
        db: Session,
        username: str,
        email: str,
        role: str = "user"
    ) -> Tuple[Tenant, str, str]:
        """Create a tenant pending verification.

        Returns the tenant, its admin API token and an email verification
        token. Both plaintext tokens are only available here.
        """
        username = username.lower()
        existing = db.query(Tenant).filter(
            or_(Tenant.username == username, Tenant.email == email.lower())
        ).first()
        if existing:
            raise errors.ConflictError("Username or email is already registered")

        api_token = generate_api_token()
        tenant = Tenant(
            username=username,
            email=email.lower(),
            role=role,
            account_status="pending_verification",
            api_token_hash=digest_secret(api_token),
        )
        db.add(tenant)
        db.commit()
        db.refresh(tenant)

        verification_token = self.issue_account_token(db, tenant, "email_verification")
        logger.info(f"Created tenant {tenant.username} ({tenant.role})")
        return tenant, api_token, verification_token

    def issue_account_token(
        self,
        db: Session,
        tenant: Tenant,
        purpose: str,
        hours_valid: int = VERIFICATION_HOURS_VALID
    ) -> str:
        if purpose not in ACCOUNT_TOKEN_PURPOSES:
            raise errors.ValidationError(f"Unknown token purpose '{purpose}'")
        token = secrets.token_urlsafe(32)
        db.add(AccountToken(
            tenant_id=tenant.id,
            purpose=purpose,
            token_digest=digest_secret(token),
            expires_at=datetime.utcnow() + timedelta(hours=hours_valid),
        ))
        db.commit()
        return token

    def verify_email(self, db: Session, token: str) -> Tuple[Tenant, bool]:
        """Consume a verification token; returns (tenant, already_verified)"""
        record = db.query(AccountToken).filter(
            AccountToken.token_digest == digest_secret(token),
            AccountToken.purpose == "email_verification"
        ).first()
        if not record:
            raise errors.ValidationError("Invalid verification token")

        tenant = TenantRepo.get_by_id(db, record.tenant_id)
        if not tenant:
            raise errors.ValidationError("Invalid verification token")

        if record.used_at is not None:
            if tenant.account_status == "active":
                return tenant, True
            raise errors.ValidationError("Verification token has already been used")

        if record.expires_at <= datetime.utcnow():
            raise errors.ValidationError("Verification token has expired. Please request a new verification email.")

        record.used_at = datetime.utcnow()
        if tenant.account_status == "pending_verification":
            tenant.account_status = "active"
        db.commit()
        db.refresh(tenant)

        self.event_service.get_or_create_event(db, tenant)
        logger.info(f"Email verified for {tenant.username}")
        return tenant, False

    def list_tenants(self, db: Session, include_deleted: bool = False) -> List[Tenant]:
        query = db.query(Tenant)
        if not include_deleted:
            query = query.filter(Tenant.deleted_at.is_(None))
        return query.order_by(Tenant.created_at.asc()).all()

    def set_status(self, db: Session, tenant_id: int, account_status: str) -> Tenant:
        tenant = TenantRepo.get_by_id(db, tenant_id)
        if not tenant:
            raise errors.NotFoundError("Tenant")
        tenant.account_status = account_status
        db.commit()
        db.refresh(tenant)
        logger.info(f"Tenant {tenant.username} is now {account_status}")
        return tenant

    def soft_delete(self, db: Session, tenant_id: int) -> Tenant:
        """Mark deleted and revoke the API token; rows are kept"""
        tenant = TenantRepo.get_by_id(db, tenant_id)
        if not tenant:
            raise errors.NotFoundError("Tenant")
        tenant.deleted_at = datetime.utcnow()
        tenant.api_token_hash = None
        db.commit()
        db.refresh(tenant)
        logger.info(f"Tenant {tenant.username} soft-deleted")
        return tenant
