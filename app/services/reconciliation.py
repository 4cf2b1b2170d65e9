"""
Background playback reconciliation, one asyncio task per connected tenant
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core import errors
from app.core.config import settings
from app.core.db import SessionLocal
from app.schemas.event import EventConfig
from app.schemas.song_request import TrackInfo
from app.services.notifications import NotificationService
from app.services.repositories import EventRepo, TenantRepo
from app.services.request_service import RequestService
from app.services.spotify_client import currently_playing
from app.services.token_service import ProviderRegistry

logger = logging.getLogger(__name__)

SKIPPED = "skipped"
IDLE = "idle"
RECONCILED = "reconciled"
FAILED = "failed"
UNAUTHORIZED = "unauthorized"


@dataclass
class TickResult:
    tenant_id: int
    outcome: str
    interval: float
    track: Optional[TrackInfo] = None
    marked_played: List[str] = field(default_factory=list)
    cleaned_up: int = 0
    error: Optional[str] = None


class PlaybackReconciler:
    """Polls each tenant's playback and marks matching requests played.

    A tick never raises for provider trouble: transient failures are already
    fed into the tenant's ConnectionMonitor by the client, and the next tick
    is skipped while backoff is active. Losing authorization ends the tenant's
    loop and notifies the admin; it is restarted when the tenant reconnects.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        request_service: RequestService,
        notifier: NotificationService,
        session_factory: Callable[[], Session] = SessionLocal,
        default_interval: Optional[float] = None
    ):
        self.registry = registry
        self.request_service = request_service
        self.notifier = notifier
        self.session_factory = session_factory
        self.default_interval = default_interval or settings.RECONCILE_INTERVAL_SECONDS
        self._tasks: Dict[int, asyncio.Task] = {}
        self._last_track: Dict[int, Optional[str]] = {}

    async def tick(self, tenant_id: int) -> TickResult:
        db = self.session_factory()
        try:
            return await self._tick(db, tenant_id)
        finally:
            db.close()

    async def _tick(self, db: Session, tenant_id: int) -> TickResult:
        tenant = TenantRepo.get_by_id(db, tenant_id)
        if not tenant or not tenant.is_active:
            return TickResult(tenant_id, UNAUTHORIZED, self.default_interval, error="Tenant is not active")

        event = EventRepo.get_for_tenant(db, tenant_id)
        interval = self.default_interval
        if event:
            interval = EventConfig.model_validate(event.config or {}).display_refresh_interval

        monitor = self.registry.monitor_for(tenant_id)
        if not monitor.should_attempt():
            return TickResult(tenant_id, SKIPPED, interval, error=monitor.message())

        client = self.registry.client_for(db, tenant_id)
        try:
            playback = await client.get_current_playback()
        except errors.ProviderUnauthorizedError as e:
            logger.warning(f"Reconciliation for tenant {tenant_id} stopped: {e}")
            if event:
                await self.notifier.token_expired(db, event, e.message)
            return TickResult(tenant_id, UNAUTHORIZED, interval, error=e.message)
        except errors.ProviderError as e:
            return TickResult(tenant_id, FAILED, interval, error=e.message)

        cleaned = len(self.request_service.cleanup_played(db, tenant))

        track = currently_playing(playback)
        if track is None:
            if self._last_track.get(tenant_id) is not None and event:
                self._last_track[tenant_id] = None
                await self.notifier.playback_update(db, event, {"is_playing": False, "track": None})
            return TickResult(tenant_id, IDLE, interval, cleaned_up=cleaned)

        marked = self.request_service.reconcile_against_playback(db, tenant, track)
        marked_ids = [song_request.id for song_request in marked]

        if event and (marked_ids or self._last_track.get(tenant_id) != track.uri):
            self._last_track[tenant_id] = track.uri
            device = playback.get("device") or {}
            await self.notifier.playback_update(db, event, {
                "is_playing": bool(playback.get("is_playing")),
                "progress_ms": playback.get("progress_ms"),
                "device_name": device.get("name"),
                "track": track.model_dump(),
                "marked_played": marked_ids,
            })

        return TickResult(tenant_id, RECONCILED, interval, track=track, marked_played=marked_ids, cleaned_up=cleaned)

    async def _run(self, tenant_id: int):
        logger.info(f"Reconciliation loop started for tenant {tenant_id}")
        try:
            while True:
                interval = self.default_interval
                try:
                    result = await self.tick(tenant_id)
                    interval = result.interval
                    if result.outcome == UNAUTHORIZED:
                        break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Reconciliation tick failed for tenant {tenant_id}: {e}")
                await asyncio.sleep(interval)
        finally:
            if self._tasks.get(tenant_id) is asyncio.current_task():
                del self._tasks[tenant_id]
            logger.info(f"Reconciliation loop stopped for tenant {tenant_id}")

    def start(self, tenant_id: int) -> bool:
        """Start the tenant's loop unless one is already running"""
        task = self._tasks.get(tenant_id)
        if task and not task.done():
            return False
        self._tasks[tenant_id] = asyncio.create_task(self._run(tenant_id))
        return True

    async def stop(self, tenant_id: int) -> bool:
        task = self._tasks.pop(tenant_id, None)
        self._last_track.pop(tenant_id, None)
        if not task:
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return True

    def start_connected(self, db: Session) -> int:
        """Start loops for every tenant with stored provider tokens"""
        started = 0
        for tenant_id in self.registry.connected_tenant_ids(db):
            if self.start(tenant_id):
                started += 1
        logger.info(f"Started {started} reconciliation loop(s)")
        return started

    def is_running(self, tenant_id: int) -> bool:
        task = self._tasks.get(tenant_id)
        return bool(task and not task.done())

    async def shutdown(self):
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
