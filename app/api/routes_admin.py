"""
Admin API routes - requires a tenant API token
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import (
    get_event_service,
    get_notifier,
    get_reconciler,
    get_registry,
    get_relay,
    get_request_service,
)
from app.api.ws import WebSocketRelay
from app.core import errors
from app.core.db import get_db
from app.models import Event, Tenant
from app.schemas.event import BypassTokenCreate, DisplayMessage, EventConfig, EventResponse, EventUpdate, IssuedCredential, PageToggle
from app.schemas.provider import PlaybackControl, RelayAuthRequest
from app.schemas.song_request import ApproveOptions, RequestStatus
from app.services.event_service import EventService
from app.services.notifications import NotificationService
from app.services.reconciliation import PlaybackReconciler
from app.services.request_service import RequestService
from app.services.token_service import ProviderRegistry
from app.utils.responses import pagination_meta, poll_page, success_response
from app.utils.security import get_current_tenant

router = APIRouter()

def _event_data(event: Event) -> dict:
    return EventResponse(
        id=event.id,
        status=event.status,
        version=event.version,
        config=EventConfig.model_validate(event.config or {}),
        active_admin_session=event.active_admin_session is not None,
        updated_at=event.updated_at,
    ).model_dump()

# -------- requests --------

@router.get("/requests")
async def list_requests(
    status: Optional[RequestStatus] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    request_service: RequestService = Depends(get_request_service)
):
    """List song requests with counts by status"""
    items, total, stats = request_service.list_requests(
        db, tenant, status=status, offset=(page - 1) * per_page, limit=per_page
    )
    return success_response(
        message=f"Found {total} requests",
        data={
            "requests": [item.to_dict() for item in items],
            "stats": stats,
            "pagination": pagination_meta(page, per_page, total),
        }
    )

@router.post("/requests/{request_id}/approve")
async def approve_request(
    request_id: str,
    options: Optional[ApproveOptions] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    request_service: RequestService = Depends(get_request_service),
    registry: ProviderRegistry = Depends(get_registry)
):
    """Approve a pending request and, by default, add it to the Spotify queue"""
    options = options or ApproveOptions()
    client = registry.client_for(db, tenant.id) if options.enqueue else None
    result = await request_service.review(db, tenant, request_id, "approve", client=client)

    message = "Request approved"
    if result.queued:
        message = "Request approved and added to Spotify queue"
    elif result.queue_error:
        message = f"Request approved, but not queued: {result.queue_error}"

    return success_response(
        message=message,
        data={**result.request.to_dict(), "queued": result.queued, "queue_error": result.queue_error}
    )

@router.post("/requests/{request_id}/reject")
async def reject_request(
    request_id: str,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    request_service: RequestService = Depends(get_request_service)
):
    """Reject a pending request"""
    result = await request_service.review(db, tenant, request_id, "reject")
    return success_response(message="Request rejected", data=result.request.to_dict())

@router.post("/requests/{request_id}/replay")
async def replay_request(
    request_id: str,
    control: Optional[PlaybackControl] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    request_service: RequestService = Depends(get_request_service),
    registry: ProviderRegistry = Depends(get_registry)
):
    """Add a request's track to the Spotify queue again"""
    control = control or PlaybackControl()
    song_request = await request_service.enqueue_to_provider(
        db, tenant, request_id, registry.client_for(db, tenant.id), device_id=control.device_id
    )
    return success_response(message="Track added to Spotify queue", data=song_request.to_dict())

@router.post("/requests/{request_id}/mark-played")
async def mark_request_played(
    request_id: str,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    request_service: RequestService = Depends(get_request_service)
):
    song_request = request_service.mark_played(db, tenant, request_id)
    return success_response(message="Request marked as played", data=song_request.to_dict())

@router.delete("/requests/{request_id}")
async def delete_request(
    request_id: str,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    request_service: RequestService = Depends(get_request_service)
):
    deleted = await request_service.delete(db, tenant, request_id)
    return success_response(message="Request deleted", data=deleted)

@router.post("/requests/cleanup")
async def cleanup_played_requests(
    older_than_minutes: Optional[int] = Query(None, ge=0, le=24 * 60),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    request_service: RequestService = Depends(get_request_service)
):
    """Delete played requests older than the retention window"""
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
    deleted = request_service.cleanup_played(db, tenant, older_than=older_than)
    return success_response(
        message=f"Cleaned up {len(deleted)} played requests",
        data={"deleted_count": len(deleted), "deleted": deleted}
    )

@router.delete("/requests")
async def purge_pending_requests(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    request_service: RequestService = Depends(get_request_service)
):
    """Drop every pending request"""
    purged = request_service.purge_pending(db, tenant)
    return success_response(message=f"Purged {purged} pending requests", data={"purged": purged})

# -------- event --------

@router.get("/event")
async def get_event(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    """Current event state; creates an offline event on first use"""
    event = event_service.get_or_create_event(db, tenant)
    return success_response(message="Event retrieved", data=_event_data(event))

@router.patch("/event")
async def update_event(
    update: EventUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    """Update status and/or settings against an expected version"""
    patch = update.model_dump(exclude_unset=True, exclude={"expected_version"})
    event = await event_service.update_event(db, tenant, patch, update.expected_version)
    return success_response(message="Event updated", data=_event_data(event))

@router.put("/event/pages/{page}")
async def toggle_page(
    page: str,
    toggle: PageToggle,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    """Enable or disable the requests or display page"""
    event = await event_service.set_page_enabled(db, tenant, page, toggle.enabled, toggle.expected_version)
    return success_response(
        message=f"{page.capitalize()} page {'enabled' if toggle.enabled else 'disabled'}",
        data=_event_data(event)
    )

@router.post("/event/end")
async def end_event(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    """Take the event offline and clear pending requests"""
    result = await event_service.end_event(db, tenant)
    return success_response(
        message="Event ended",
        data={**_event_data(result["event"]), "purged_pending": result["purged_pending"]}
    )

@router.post("/event/message")
async def post_message(
    message: DisplayMessage,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    """Show a timed message on the display page"""
    data = await event_service.post_message(db, tenant, message.message_text, message.message_duration)
    return success_response(message="Message updated", data=data)

@router.delete("/event/message")
async def clear_message(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    event = await event_service.clear_message(db, tenant)
    return success_response(message="Message cleared", data=_event_data(event))

@router.get("/event/poll")
async def poll_admin_events(
    since: int = Query(0, ge=0),
    since_version: Optional[int] = Query(None, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service),
    notifier: NotificationService = Depends(get_notifier)
):
    """Polling fallback including private admin events"""
    event = event_service.get_or_create_event(db, tenant)
    events = notifier.poll(db, event.id, since_ms=since, since_version=since_version, include_private=True, limit=limit)
    return success_response(message="Events retrieved", data=poll_page(events, since, since_version))

# -------- admin session --------

@router.post("/session/login")
async def start_session(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service),
    registry: ProviderRegistry = Depends(get_registry),
    reconciler: PlaybackReconciler = Depends(get_reconciler)
):
    """Mark an admin as present and resume playback reconciliation"""
    event, session_id = await event_service.start_admin_session(db, tenant)
    if registry.is_connected(db, tenant.id):
        reconciler.start(tenant.id)
    return success_response(
        message="Admin session started",
        data={**_event_data(event), "session_id": session_id}
    )

@router.post("/session/logout")
async def end_session(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    """End the admin session; the event goes offline"""
    result = await event_service.end_admin_session(db, tenant)
    return success_response(
        message="Admin session ended",
        data={**_event_data(result["event"]), "purged_pending": result["purged_pending"]}
    )

# -------- access credentials --------

@router.post("/event/pin", status_code=201)
async def issue_pin(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    """Issue a new PIN; the previous PIN stops working immediately"""
    issued = event_service.issue_pin(db, tenant)
    return success_response(message="PIN issued", data=IssuedCredential(**issued).model_dump(), status_code=201)

@router.post("/event/bypass-token", status_code=201)
async def issue_bypass_token(
    options: Optional[BypassTokenCreate] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    """Issue a shareable bypass link"""
    options = options or BypassTokenCreate()
    issued = event_service.issue_bypass_token(
        db, tenant, uses_remaining=options.uses_remaining, hours_valid=options.hours_valid
    )
    return success_response(message="Bypass token issued", data=IssuedCredential(**issued).model_dump(), status_code=201)

@router.get("/event/credentials")
async def list_credentials(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    credentials = event_service.list_credentials(db, tenant)
    return success_response(message=f"Found {len(credentials)} credentials", data=credentials)

@router.delete("/event/credentials/{credential_id}")
async def revoke_credential(
    credential_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    event_service: EventService = Depends(get_event_service)
):
    credential = event_service.revoke_credential(db, tenant, credential_id)
    return success_response(message="Credential revoked", data={"id": credential.id, "active": credential.active})

# -------- relay --------

@router.post("/relay/auth")
async def authorize_relay_channel(
    body: RelayAuthRequest,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    relay: WebSocketRelay = Depends(get_relay),
    notifier: NotificationService = Depends(get_notifier)
):
    """Sign a private-channel subscription for this tenant's own channel"""
    if body.channel_name != notifier.private_channel(tenant.id):
        raise errors.ForbiddenError("Not allowed to subscribe to this channel")
    return relay.authorize_private_channel(body.socket_id, body.channel_name)
