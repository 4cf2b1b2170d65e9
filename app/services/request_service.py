"""
Song request lifecycle: submission, review, queue admission, reconciliation
against playback, and cleanup.

Status moves pending -> approved/rejected -> queued -> played. Replaying a
request pushes it to the provider queue again without touching its status.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import errors
from app.core.config import settings
from app.models import Event, SongRequest, Tenant
from app.schemas.event import EventConfig
from app.schemas.song_request import TrackInfo
from app.services import notifications
from app.services.notifications import NotificationService
from app.services.rate_limiter import SubmissionGuard, submitter_key
from app.services.repositories import EventRepo, RequestRepo
from app.services.spotify_client import SpotifyClient, parse_track_reference

logger = logging.getLogger(__name__)

AUTO_APPROVER = "Auto-Approval System"


@dataclass
class ReviewResult:
    request: SongRequest
    queued: bool = False
    queue_error: Optional[str] = None


def tracks_match(song_request: SongRequest, track: TrackInfo) -> bool:
    """Same URI, or same title and artist ignoring case"""
    if track.uri and song_request.track_uri == track.uri:
        return True
    return (
        (song_request.track_name or "").strip().lower() == track.name.strip().lower()
        and (song_request.artist_name or "").strip().lower() == track.artist_name.strip().lower()
    )


class RequestService:
    """Tenant-scoped request operations"""

    def __init__(self, notifier: NotificationService, guard: SubmissionGuard):
        self.notifier = notifier
        self.guard = guard

    async def _notify(self, db: Session, tenant: Tenant, action: str, song_request: SongRequest):
        event = EventRepo.get_for_tenant(db, tenant.id)
        if event:
            await self.notifier.request_changed(db, event, action, song_request)

    def _get(self, db: Session, tenant: Tenant, request_id: str) -> SongRequest:
        song_request = RequestRepo.get(db, tenant.id, request_id)
        if not song_request:
            raise errors.NotFoundError("Request")
        return song_request

    async def submit(
        self,
        db: Session,
        tenant: Tenant,
        event: Event,
        track_ref: str,
        nickname: Optional[str],
        ip_hash: str,
        client: SpotifyClient
    ) -> SongRequest:
        """Admit a guest request.

        Checks run cheapest first: reference format, event gating, the
        submission guard, provider lookup, then duplicate suppression. A
        guard slot is spent even if a later check rejects the request.
        """
        track_uri = parse_track_reference(track_ref)

        config = EventConfig.model_validate(event.config or {})
        if event.tenant_id != tenant.id or event.status != "live" or not config.pages_enabled.requests:
            raise errors.ForbiddenError("Requests are not open right now")

        self.guard.check(submitter_key(tenant.id, ip_hash), limit=config.request_limit)

        track = await client.get_track(track_uri.split(":")[-1])
        if config.decline_explicit and track.explicit:
            raise errors.ValidationError("Explicit tracks are not accepted at this event")

        stored_uri = track.uri or track_uri
        now = datetime.utcnow()
        since = now - timedelta(minutes=settings.DUPLICATE_WINDOW_MINUTES)
        if RequestRepo.find_recent_duplicate(db, tenant.id, stored_uri, since):
            raise errors.DuplicateRequestError(
                "This track has already been requested recently. Please choose a different song."
            )

        auto_approve = config.auto_approve
        song_request = RequestRepo.create(
            db,
            tenant.id,
            track_uri=stored_uri,
            track_name=track.name,
            artist_name=track.artist_name,
            album_name=track.album,
            duration_ms=track.duration_ms,
            explicit=track.explicit,
            requester_nickname=(nickname or "").strip() or None,
            requester_ip_hash=ip_hash,
            status="approved" if auto_approve else "pending",
            approved_by=AUTO_APPROVER if auto_approve else None,
            approved_at=now if auto_approve else None,
            created_at=now,
        )
        logger.info(f"Request {song_request.id} for {tenant.username}: {track.name} by {track.artist_name} ({song_request.status})")

        await self.notifier.request_changed(db, event, notifications.REQUEST_SUBMITTED, song_request)

        if auto_approve:
            await self.notifier.request_changed(db, event, notifications.REQUEST_APPROVED, song_request)
            try:
                await self.enqueue_to_provider(db, tenant, song_request.id, client)
            except errors.ProviderError as e:
                logger.warning(f"Auto-approved request {song_request.id} not queued: {e}")

        return song_request

    async def review(
        self,
        db: Session,
        tenant: Tenant,
        request_id: str,
        decision: str,
        approved_by: Optional[str] = None,
        client: Optional[SpotifyClient] = None
    ) -> ReviewResult:
        """Approve or reject a pending request.

        Repeating the decision already taken is a no-op. Approving with a
        client also tries to queue the track; a provider failure there is
        reported in the result and leaves the request approved.
        """
        if decision not in ("approve", "reject"):
            raise errors.ValidationError("Decision must be 'approve' or 'reject'")

        song_request = self._get(db, tenant, request_id)
        approving = decision == "approve"
        settled = ("approved", "queued", "played") if approving else ("rejected",)

        if song_request.status in settled:
            return ReviewResult(song_request, queued=bool(song_request.added_to_provider_queue))
        if song_request.status != "pending":
            raise errors.ConflictError(f"Request is already {song_request.status}")

        now = datetime.utcnow()
        if approving:
            song_request.status = "approved"
            song_request.approved_at = now
            song_request.approved_by = approved_by or tenant.username
        else:
            song_request.status = "rejected"
            song_request.rejected_at = now
        db.commit()
        db.refresh(song_request)
        logger.info(f"Request {song_request.id} for {tenant.username} {song_request.status}")

        await self._notify(
            db, tenant,
            notifications.REQUEST_APPROVED if approving else notifications.REQUEST_REJECTED,
            song_request
        )

        result = ReviewResult(song_request)
        if approving and client is not None:
            try:
                result.request = await self.enqueue_to_provider(db, tenant, song_request.id, client)
                result.queued = True
            except errors.ProviderError as e:
                logger.warning(f"Approved request {song_request.id} not queued: {e}")
                result.queue_error = e.message
        return result

    async def enqueue_to_provider(
        self,
        db: Session,
        tenant: Tenant,
        request_id: str,
        client: SpotifyClient,
        device_id: Optional[str] = None
    ) -> SongRequest:
        """Push the track to the provider's play queue, whatever the request's status.

        Only an approved request changes status (to queued). Provider errors
        propagate with nothing changed locally.
        """
        song_request = self._get(db, tenant, request_id)
        await client.add_to_queue(song_request.track_uri, device_id)

        song_request.added_to_provider_queue = True
        if song_request.status == "approved":
            song_request.status = "queued"
            song_request.queued_at = datetime.utcnow()
        db.commit()
        db.refresh(song_request)
        logger.info(f"Queued {song_request.track_uri} for {tenant.username} (request {song_request.id}, {song_request.status})")
        return song_request

    def reconcile_against_playback(
        self,
        db: Session,
        tenant: Tenant,
        playing: Optional[TrackInfo]
    ) -> List[SongRequest]:
        """Mark every approved or queued request for the playing track as played"""
        if playing is None:
            return []

        now = datetime.utcnow()
        marked = []
        for song_request in RequestRepo.with_status(db, tenant.id, ("approved", "queued")):
            if not tracks_match(song_request, playing):
                continue
            try:
                song_request.status = "played"
                song_request.played_at = now
                db.commit()
                marked.append(song_request)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to mark request {song_request.id} played: {e}")

        if marked:
            logger.info(f"Marked {len(marked)} request(s) played for {tenant.username}: {playing.name}")
        return marked

    def cleanup_played(
        self,
        db: Session,
        tenant: Tenant,
        older_than: Optional[timedelta] = None,
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Delete played requests past the retention window; returns what was deleted"""
        retention = older_than if older_than is not None else timedelta(minutes=settings.PLAYED_RETENTION_MINUTES)
        cutoff = (now or datetime.utcnow()) - retention

        deleted = []
        for song_request in RequestRepo.played_before(db, tenant.id, cutoff):
            snapshot = song_request.to_dict()
            try:
                db.delete(song_request)
                db.commit()
                deleted.append(snapshot)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to delete played request {snapshot['id']}: {e}")

        if deleted:
            logger.info(f"Cleaned up {len(deleted)} played request(s) for {tenant.username}")
        return deleted

    def purge_pending(self, db: Session, tenant: Tenant) -> int:
        purged = RequestRepo.delete_with_status(db, tenant.id, "pending")
        logger.info(f"Purged {purged} pending request(s) for {tenant.username}")
        return purged

    def mark_played(self, db: Session, tenant: Tenant, request_id: str) -> SongRequest:
        song_request = self._get(db, tenant, request_id)
        if song_request.status == "played":
            return song_request
        if song_request.status not in ("approved", "queued"):
            raise errors.ConflictError(f"Only approved or queued requests can be marked played (request is {song_request.status})")
        song_request.status = "played"
        song_request.played_at = datetime.utcnow()
        db.commit()
        db.refresh(song_request)
        logger.info(f"Request {song_request.id} manually marked played")
        return song_request

    async def delete(self, db: Session, tenant: Tenant, request_id: str) -> Dict[str, Any]:
        song_request = self._get(db, tenant, request_id)
        snapshot = song_request.to_dict()
        event = EventRepo.get_for_tenant(db, tenant.id)
        if event:
            await self.notifier.request_changed(db, event, notifications.REQUEST_DELETED, song_request)
        db.delete(song_request)
        db.commit()
        logger.info(f"Deleted request {snapshot['id']} for {tenant.username}")
        return snapshot

    def list_requests(
        self,
        db: Session,
        tenant: Tenant,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[SongRequest], int, Dict[str, int]]:
        """One page of requests, the filtered total, and counts by status"""
        if status is not None and status not in ("pending", "approved", "rejected", "queued", "played"):
            raise errors.ValidationError(f"Unknown status '{status}'")
        items, total = RequestRepo.list(db, tenant.id, status, offset, limit)
        return items, total, RequestRepo.count_by_status(db, tenant.id)

    def upcoming(self, db: Session, tenant: Tenant, limit: int = 10) -> List[SongRequest]:
        """Approved and queued requests in the order they were approved"""
        rows = RequestRepo.with_status(db, tenant.id, ("approved", "queued"))
        rows.sort(key=lambda r: r.approved_at or r.created_at)
        return rows[:limit]
