"""
Notification fan-out: domain events to the real-time relay and the poll log
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import Event, EventLogEntry, SongRequest

logger = logging.getLogger(__name__)

STATE_UPDATE = "state_update"
REQUEST_SUBMITTED = "request_submitted"
REQUEST_APPROVED = "request_approved"
REQUEST_REJECTED = "request_rejected"
REQUEST_DELETED = "request_deleted"
PLAYBACK_UPDATE = "playback_update"
PAGE_CONTROL_TOGGLE = "page_control_toggle"
ADMIN_LOGIN = "admin_login"
ADMIN_LOGOUT = "admin_logout"
TOKEN_EXPIRED = "token_expired"
MESSAGE_UPDATE = "message_update"
MESSAGE_CLEARED = "message_cleared"

class NotificationService:
    """Publishes domain events without ever failing the caller.

    Each event is appended to the event log first (the polling fallback reads
    it) and then pushed to the relay. Failures in either step are logged and
    swallowed; the state change that triggered the event has already been
    committed by the time publish runs.
    """

    def __init__(self, relay):
        self.relay = relay

    @staticmethod
    def public_channel(event_id: int) -> str:
        return f"event-{event_id}"

    @staticmethod
    def private_channel(tenant_id: int) -> str:
        return f"private-tenant-{tenant_id}"

    async def publish(
        self,
        db: Session,
        event: Event,
        action: str,
        data: Dict[str, Any],
        private: bool = False
    ) -> Dict[str, Any]:
        """Record and broadcast one domain event; returns the envelope sent"""
        payload = jsonable_encoder(data)
        timestamp_ms = int(time.time() * 1000)
        event_id = event.id
        tenant_id = event.tenant_id

        envelope = {
            "id": uuid.uuid4().hex,
            "action": action,
            "timestamp": timestamp_ms,
            "version": None,
            "event_id": event_id,
            "data": payload,
        }

        try:
            entry = EventLogEntry(
                event_id=event_id,
                action=action,
                payload=payload,
                private=private,
                timestamp_ms=timestamp_ms
            )
            db.add(entry)
            db.commit()
            envelope["id"] = f"{event_id}-{entry.id}"
            envelope["version"] = entry.id
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record {action} for event {event_id}: {e}")

        channel = self.private_channel(tenant_id) if private else self.public_channel(event_id)
        try:
            await self.relay.publish(channel, action, envelope)
        except Exception as e:
            logger.error(f"Relay publish of {action} on {channel} failed: {e}")

        return envelope

    def poll(
        self,
        db: Session,
        event_id: int,
        since_ms: int = 0,
        since_version: Optional[int] = None,
        include_private: bool = False,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Events after the (`since_ms`, `since_version`) cursor, oldest first.

        Several events can share a millisecond, so the cursor is the pair of
        the last seen timestamp and version; a bare timestamp would skip the
        rest of a same-millisecond group cut off by `limit`. Without a version
        only events strictly after `since_ms` are returned.
        """
        after = EventLogEntry.timestamp_ms > since_ms
        if since_version is not None:
            after = or_(after, and_(EventLogEntry.timestamp_ms == since_ms, EventLogEntry.id > since_version))
        query = db.query(EventLogEntry).filter(EventLogEntry.event_id == event_id, after)
        if not include_private:
            query = query.filter(EventLogEntry.private.is_(False))
        entries = query.order_by(EventLogEntry.timestamp_ms.asc(), EventLogEntry.id.asc()).limit(limit).all()
        return [
            {
                "id": f"{entry.event_id}-{entry.id}",
                "action": entry.action,
                "timestamp": entry.timestamp_ms,
                "version": entry.id,
                "event_id": entry.event_id,
                "data": entry.payload,
            }
            for entry in entries
        ]

    # -------- typed helpers --------

    async def state_update(self, db: Session, event: Event, username: Optional[str] = None):
        config = event.config or {}
        return await self.publish(db, event, STATE_UPDATE, {
            "status": event.status,
            "version": event.version,
            "pages_enabled": config.get("pages_enabled", {"requests": False, "display": False}),
            "config": {
                key: config.get(key)
                for key in ("event_title", "welcome_message", "secondary_message", "tertiary_message")
            },
            "username": username,
        })

    async def page_toggled(self, db: Session, event: Event, page: str, enabled: bool):
        return await self.publish(db, event, PAGE_CONTROL_TOGGLE, {
            "page": page,
            "enabled": enabled,
            "version": event.version,
        })

    async def request_changed(self, db: Session, event: Event, action: str, song_request: SongRequest):
        return await self.publish(db, event, action, {
            "request_id": song_request.id,
            "track_name": song_request.track_name,
            "artist_name": song_request.artist_name,
            "album_name": song_request.album_name,
            "track_uri": song_request.track_uri,
            "requester_nickname": song_request.requester_nickname or "Anonymous",
            "status": song_request.status,
        })

    async def playback_update(self, db: Session, event: Event, playback: Dict[str, Any]):
        return await self.publish(db, event, PLAYBACK_UPDATE, playback)

    async def admin_session(self, db: Session, event: Event, action: str, username: str):
        return await self.publish(db, event, action, {"username": username}, private=True)

    async def token_expired(self, db: Session, event: Event, reason: str):
        return await self.publish(db, event, TOKEN_EXPIRED, {"reason": reason}, private=True)

    async def message_update(self, db: Session, event: Event, message: Dict[str, Any]):
        return await self.publish(db, event, MESSAGE_UPDATE, message)

    async def message_cleared(self, db: Session, event: Event):
        return await self.publish(db, event, MESSAGE_CLEARED, {"cleared_at": int(time.time() * 1000)})
