"""
Public API routes - no authentication required
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.api.deps import get_event_service, get_notifier, get_registry, get_request_service
from app.core import errors
from app.core.db import get_db
from app.schemas.event import PublicEventResponse
from app.services.event_service import EventService
from app.services.notifications import NotificationService
from app.services.qr_service import QRService
from app.services.repositories import EventRepo, TenantRepo
from app.services.request_service import RequestService
from app.services.spotify_client import currently_playing
from app.services.token_service import ProviderRegistry
from app.utils.responses import poll_page, success_response

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok"}

@router.get("/public/{username}/event")
async def get_public_event(
    username: str,
    db: Session = Depends(get_db),
    event_service: EventService = Depends(get_event_service)
):
    """Event status, enabled pages and display config"""
    descriptor = event_service.public_descriptor(db, username)
    return success_response(message="Event retrieved", data=PublicEventResponse(**descriptor).model_dump())

@router.get("/public/{username}/now-playing")
async def get_now_playing(
    username: str,
    db: Session = Depends(get_db),
    event_service: EventService = Depends(get_event_service),
    request_service: RequestService = Depends(get_request_service),
    registry: ProviderRegistry = Depends(get_registry)
):
    """Current track and upcoming approved requests for the display page.

    Provider trouble degrades to an empty now-playing block instead of an error.
    """
    descriptor = event_service.public_descriptor(db, username)
    snapshot = {"status": descriptor["status"], "now_playing": None, "upcoming": []}
    if descriptor["status"] == "offline" or not descriptor["pages_enabled"]["display"]:
        return success_response(message="Display is not available", data=snapshot)

    tenant = TenantRepo.get_by_username(db, username)
    snapshot["upcoming"] = [r.to_dict() for r in request_service.upcoming(db, tenant)]

    if registry.is_connected(db, tenant.id):
        try:
            playback = await registry.client_for(db, tenant.id).get_current_playback()
            track = currently_playing(playback)
            if track:
                snapshot["now_playing"] = {
                    "track": track.model_dump(),
                    "is_playing": bool(playback.get("is_playing")),
                    "progress_ms": playback.get("progress_ms"),
                }
        except errors.ProviderError as e:
            logger.info(f"Now playing unavailable for {username}: {e}")

    return success_response(message="Now playing retrieved", data=snapshot)

@router.get("/public/{username}/qr.png")
async def get_qr_code(
    username: str,
    db: Session = Depends(get_db),
    event_service: EventService = Depends(get_event_service)
):
    """QR code image linking to the request page"""
    descriptor = event_service.public_descriptor(db, username)
    if not descriptor["show_qr_code"]:
        raise errors.NotFoundError("QR code")

    qr_bytes = QRService.generate_request_qr(descriptor["username"])

    return Response(
        content=qr_bytes,
        media_type="image/png",
        headers={"Content-Disposition": f"inline; filename=qr_{descriptor['username']}.png"}
    )

@router.get("/events/{event_id}/poll")
async def poll_events(
    event_id: int,
    since: int = Query(0, ge=0, description="Only events after this timestamp (ms)"),
    since_version: Optional[int] = Query(None, ge=0, description="Version of the last event seen at `since`"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier)
):
    """Polling fallback for clients that cannot hold a relay connection"""
    if not EventRepo.get_by_id(db, event_id):
        raise errors.NotFoundError("Event")

    events = notifier.poll(db, event_id, since_ms=since, since_version=since_version, limit=limit)
    return success_response(message="Events retrieved", data=poll_page(events, since, since_version))
