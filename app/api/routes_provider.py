"""
Spotify connection and playback control routes
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_reconciler, get_registry
from app.core import errors
from app.core.db import get_db
from app.models import Tenant
from app.schemas.provider import PlaybackControl, TransferPlayback, VolumeUpdate
from app.services.reconciliation import PlaybackReconciler
from app.services.spotify_client import currently_playing
from app.services.token_service import ProviderRegistry
from app.utils.responses import success_response
from app.utils.security import get_current_tenant

logger = logging.getLogger(__name__)

router = APIRouter()

# -------- connection --------

@router.get("/connect")
async def connect_spotify(
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    """Start the PKCE authorization flow"""
    if not registry.client_id:
        raise errors.ValidationError("Spotify is not configured on this server")
    authorization = registry.authorization_url(tenant.id)
    return success_response(message="Redirect to Spotify to authorize", data=authorization)

@router.get("/callback")
async def spotify_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    reconciler: PlaybackReconciler = Depends(get_reconciler)
):
    """OAuth redirect target; the state identifies the tenant that started the flow"""
    if error:
        raise errors.ValidationError(f"Spotify authorization failed: {error}")
    if not code or not state:
        raise errors.ValidationError("Missing authorization code or state")

    record = await registry.complete_authorization(db, state, code)
    reconciler.start(record.tenant_id)
    return success_response(
        message="Spotify connected",
        data={"connected": True, "expires_at": record.expires_at, "scope": record.scope}
    )

@router.get("/status")
async def spotify_status(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry),
    reconciler: PlaybackReconciler = Depends(get_reconciler)
):
    """Connection, token and backoff state"""
    return success_response(
        message="Spotify status retrieved",
        data={
            "connected": registry.is_connected(db, tenant.id),
            "token_valid": registry.is_connected_and_valid(db, tenant.id),
            "connection": registry.monitor_for(tenant.id).snapshot(),
            "reconciling": reconciler.is_running(tenant.id),
        }
    )

@router.post("/disconnect")
async def disconnect_spotify(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry),
    reconciler: PlaybackReconciler = Depends(get_reconciler)
):
    await reconciler.stop(tenant.id)
    removed = registry.disconnect(db, tenant.id)
    return success_response(message="Spotify disconnected", data={"removed": removed})

@router.post("/reset")
async def reset_spotify_connection(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry),
    reconciler: PlaybackReconciler = Depends(get_reconciler)
):
    """Clear backoff and disconnected state after fixing the problem upstream"""
    registry.reset_connection_state(tenant.id)
    if registry.is_connected(db, tenant.id):
        reconciler.start(tenant.id)
    return success_response(
        message="Connection state reset",
        data=registry.monitor_for(tenant.id).snapshot()
    )

# -------- playback --------

@router.get("/playback")
async def get_playback(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    playback = await registry.client_for(db, tenant.id).get_current_playback()
    track = currently_playing(playback)
    return success_response(
        message="Playback retrieved" if playback else "Nothing is playing",
        data={
            "is_playing": bool(playback and playback.get("is_playing")),
            "progress_ms": playback.get("progress_ms") if playback else None,
            "shuffle_state": playback.get("shuffle_state") if playback else None,
            "repeat_state": playback.get("repeat_state") if playback else None,
            "device": playback.get("device") if playback else None,
            "track": track.model_dump() if track else None,
        }
    )

@router.get("/queue")
async def get_queue(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    queue = await registry.client_for(db, tenant.id).get_queue()
    return success_response(message="Queue retrieved", data=queue)

@router.get("/devices")
async def get_devices(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    devices = await registry.client_for(db, tenant.id).get_devices()
    return success_response(message=f"Found {len(devices)} devices", data=devices)

@router.post("/transfer")
async def transfer_playback(
    body: TransferPlayback,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    await registry.client_for(db, tenant.id).transfer_playback(body.device_id, play=body.play)
    return success_response(message="Playback transferred", data={"device_id": body.device_id})

@router.post("/pause")
async def pause_playback(
    control: Optional[PlaybackControl] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    await registry.client_for(db, tenant.id).pause(control.device_id if control else None)
    return success_response(message="Playback paused")

@router.post("/resume")
async def resume_playback(
    control: Optional[PlaybackControl] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    await registry.client_for(db, tenant.id).resume(control.device_id if control else None)
    return success_response(message="Playback resumed")

@router.post("/next")
async def skip_next(
    control: Optional[PlaybackControl] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    await registry.client_for(db, tenant.id).skip_next(control.device_id if control else None)
    return success_response(message="Skipped to next track")

@router.post("/previous")
async def skip_previous(
    control: Optional[PlaybackControl] = None,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    await registry.client_for(db, tenant.id).skip_previous(control.device_id if control else None)
    return success_response(message="Went back to previous track")

@router.put("/volume")
async def set_volume(
    body: VolumeUpdate,
    device_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
    registry: ProviderRegistry = Depends(get_registry)
):
    await registry.client_for(db, tenant.id).set_volume(body.volume_percent, device_id)
    return success_response(message=f"Volume set to {body.volume_percent}%", data={"volume_percent": body.volume_percent})
