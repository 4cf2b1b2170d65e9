"""
Operator routes - tenant management and account verification
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_account_service, get_reconciler
from app.core.db import get_db
from app.schemas.tenant import TenantCreate, TenantResponse, TenantStatusUpdate, VerifyEmailRequest
from app.services.account_service import AccountService
from app.services.reconciliation import PlaybackReconciler
from app.utils.responses import success_response
from app.utils.security import verify_admin_token

router = APIRouter()

def _tenant_data(tenant) -> dict:
    return TenantResponse.model_validate(tenant).model_dump()

@router.post("/superadmin/tenants", status_code=201)
async def create_tenant(
    body: TenantCreate,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token),
    account_service: AccountService = Depends(get_account_service)
):
    """Provision a tenant; the API and verification tokens are shown once"""
    tenant, api_token, verification_token = account_service.create_tenant(
        db, body.username, body.email, body.role
    )
    return success_response(
        message="Tenant created",
        data={**_tenant_data(tenant), "api_token": api_token, "verification_token": verification_token},
        status_code=201
    )

@router.get("/superadmin/tenants")
async def list_tenants(
    include_deleted: bool = Query(False),
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token),
    account_service: AccountService = Depends(get_account_service)
):
    tenants = account_service.list_tenants(db, include_deleted=include_deleted)
    return success_response(
        message=f"Found {len(tenants)} tenants",
        data=[_tenant_data(tenant) for tenant in tenants]
    )

@router.put("/superadmin/tenants/{tenant_id}/status")
async def set_tenant_status(
    tenant_id: int,
    body: TenantStatusUpdate,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token),
    account_service: AccountService = Depends(get_account_service),
    reconciler: PlaybackReconciler = Depends(get_reconciler)
):
    tenant = account_service.set_status(db, tenant_id, body.account_status)
    if tenant.account_status != "active":
        await reconciler.stop(tenant.id)
    return success_response(message=f"Tenant is now {tenant.account_status}", data=_tenant_data(tenant))

@router.delete("/superadmin/tenants/{tenant_id}")
async def delete_tenant(
    tenant_id: int,
    db: Session = Depends(get_db),
    token: str = Depends(verify_admin_token),
    account_service: AccountService = Depends(get_account_service),
    reconciler: PlaybackReconciler = Depends(get_reconciler)
):
    """Soft delete; the tenant's data is kept"""
    await reconciler.stop(tenant_id)
    tenant = account_service.soft_delete(db, tenant_id)
    return success_response(message="Tenant deleted", data=_tenant_data(tenant))

@router.post("/auth/verify-email")
async def verify_email(
    body: VerifyEmailRequest,
    db: Session = Depends(get_db),
    account_service: AccountService = Depends(get_account_service)
):
    """Consume an email verification token and activate the account"""
    tenant, already_verified = account_service.verify_email(db, body.token)
    return success_response(
        message="Email already verified" if already_verified else "Email verified successfully! Your account is now active.",
        data={"username": tenant.username, "email": tenant.email, "already_verified": already_verified}
    )
