"""
Guest API routes - song submission, search and event access
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.api.deps import get_event_service, get_registry, get_request_service
from app.core import errors
from app.core.db import get_db
from app.schemas.event import AccessGranted, BypassVerifyRequest, PinVerifyRequest
from app.schemas.song_request import RequestSubmit
from app.services.event_service import EventService
from app.services.repositories import EventRepo, TenantRepo
from app.services.request_service import RequestService
from app.services.token_service import ProviderRegistry
from app.utils.responses import success_response
from app.utils.security import get_client_ip, hash_ip

router = APIRouter()

def _active_tenant(db: Session, username: str):
    tenant = TenantRepo.get_by_username(db, username)
    if not tenant or not tenant.is_active:
        raise errors.NotFoundError("Event")
    return tenant

@router.post("/public/{username}/requests", status_code=201)
async def submit_request(
    username: str,
    submission: RequestSubmit,
    request: Request,
    db: Session = Depends(get_db),
    request_service: RequestService = Depends(get_request_service),
    registry: ProviderRegistry = Depends(get_registry)
):
    """Submit a song request"""
    tenant = _active_tenant(db, username)
    event = EventRepo.get_for_tenant(db, tenant.id)
    if not event:
        raise errors.ForbiddenError("Requests are not open right now")

    song_request = await request_service.submit(
        db,
        tenant,
        event,
        submission.reference,
        submission.requester_nickname,
        hash_ip(get_client_ip(request)),
        registry.client_for(db, tenant.id),
    )

    # Guests always see pending, whether or not the event auto-approves
    return success_response(
        message="Your request has been submitted successfully!",
        data={
            "id": song_request.id,
            "track": {
                "name": song_request.track_name,
                "artist": song_request.artist_name,
                "album": song_request.album_name,
                "duration_ms": song_request.duration_ms,
            },
            "status": "pending",
        },
        status_code=201
    )

@router.get("/public/{username}/search")
async def search_tracks(
    username: str,
    q: str = Query(..., min_length=2, max_length=200),
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db),
    event_service: EventService = Depends(get_event_service),
    registry: ProviderRegistry = Depends(get_registry)
):
    """Search tracks on the event's Spotify account"""
    tenant = _active_tenant(db, username)
    event_service.require_requests_open(db, tenant)

    tracks = await registry.client_for(db, tenant.id).search_tracks(q, limit=limit)
    return success_response(
        message=f"Found {len(tracks)} tracks",
        data=[track.model_dump() for track in tracks]
    )

@router.post("/public/{username}/verify-pin")
async def verify_pin(
    username: str,
    body: PinVerifyRequest,
    db: Session = Depends(get_db),
    event_service: EventService = Depends(get_event_service)
):
    """Exchange a PIN for event access"""
    granted = event_service.verify_access(db, username, pin=body.pin)
    return success_response(message="Access granted", data=AccessGranted(**granted).model_dump())

@router.post("/public/{username}/verify-bypass")
async def verify_bypass(
    username: str,
    body: BypassVerifyRequest,
    db: Session = Depends(get_db),
    event_service: EventService = Depends(get_event_service)
):
    """Exchange a bypass token from a share link for event access"""
    granted = event_service.verify_access(db, username, bypass_token=body.bypass_token)
    return success_response(message="Access granted", data=AccessGranted(**granted).model_dump())
