"""
Repository layer over the relational store.

Every song-request query takes the tenant id and filters on it; callers never
look a request up by id alone.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import Event, SongRequest, Tenant


# -------- Tenant repository --------

class TenantRepo:
    @staticmethod
    def get_by_username(db: Session, username: str) -> Optional[Tenant]:
        return db.query(Tenant).filter(
            Tenant.username == username.lower(),
            Tenant.deleted_at.is_(None)
        ).first()

    @staticmethod
    def get_by_id(db: Session, tenant_id: int) -> Optional[Tenant]:
        return db.query(Tenant).filter(
            Tenant.id == tenant_id,
            Tenant.deleted_at.is_(None)
        ).first()


# -------- Event repository --------

class EventRepo:
    @staticmethod
    def get_for_tenant(db: Session, tenant_id: int) -> Optional[Event]:
        return db.query(Event).filter(Event.tenant_id == tenant_id).first()

    @staticmethod
    def get_by_id(db: Session, event_id: int) -> Optional[Event]:
        return db.query(Event).filter(Event.id == event_id).first()

    @staticmethod
    def create(db: Session, tenant_id: int, config: Dict[str, Any]) -> Event:
        now = datetime.utcnow()
        event = Event(
            tenant_id=tenant_id,
            status="offline",
            version=0,
            config=config,
            created_at=now,
            updated_at=now,
        )
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    @staticmethod
    def compare_and_swap(db: Session, event_id: int, expected_version: int, values: Dict[str, Any]) -> bool:
        """Apply `values` only if the stored version still equals `expected_version`.

        Issues a single UPDATE ... WHERE version = :expected so two writers
        holding the same version cannot both succeed. Returns False on a
        stale version; the caller decides whether that is a conflict.
        """
        values = dict(values)
        values["version"] = Event.version + 1
        values["updated_at"] = datetime.utcnow()
        updated = db.query(Event).filter(
            Event.id == event_id,
            Event.version == expected_version
        ).update(values, synchronize_session=False)
        db.commit()
        return updated == 1


# -------- Song request repository --------

class RequestRepo:
    @staticmethod
    def get(db: Session, tenant_id: int, request_id: str) -> Optional[SongRequest]:
        return db.query(SongRequest).filter(
            SongRequest.id == request_id,
            SongRequest.tenant_id == tenant_id
        ).first()

    @staticmethod
    def create(db: Session, tenant_id: int, **fields) -> SongRequest:
        song_request = SongRequest(tenant_id=tenant_id, **fields)
        db.add(song_request)
        db.commit()
        db.refresh(song_request)
        return song_request

    @staticmethod
    def list(
        db: Session,
        tenant_id: int,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[SongRequest], int]:
        query = db.query(SongRequest).filter(SongRequest.tenant_id == tenant_id)
        if status:
            query = query.filter(SongRequest.status == status)
        total = query.count()
        items = query.order_by(SongRequest.created_at.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def with_status(db: Session, tenant_id: int, statuses: Iterable[str]) -> List[SongRequest]:
        return db.query(SongRequest).filter(
            SongRequest.tenant_id == tenant_id,
            SongRequest.status.in_(list(statuses))
        ).order_by(SongRequest.created_at.asc()).all()

    @staticmethod
    def count_by_status(db: Session, tenant_id: int) -> Dict[str, int]:
        rows = db.query(SongRequest.status, func.count(SongRequest.id)).filter(
            SongRequest.tenant_id == tenant_id
        ).group_by(SongRequest.status).all()
        counts = {status: 0 for status in ("pending", "approved", "rejected", "queued", "played")}
        for status, count in rows:
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    @staticmethod
    def find_recent_duplicate(
        db: Session,
        tenant_id: int,
        track_uri: str,
        since: datetime
    ) -> Optional[SongRequest]:
        """A still-open request for the same track created after `since`"""
        return db.query(SongRequest).filter(
            SongRequest.tenant_id == tenant_id,
            SongRequest.track_uri == track_uri,
            SongRequest.created_at > since,
            SongRequest.status.in_(["pending", "approved", "queued"])
        ).first()

    @staticmethod
    def played_before(db: Session, tenant_id: int, cutoff: datetime) -> List[SongRequest]:
        return db.query(SongRequest).filter(
            SongRequest.tenant_id == tenant_id,
            SongRequest.status == "played",
            SongRequest.played_at.isnot(None),
            SongRequest.played_at < cutoff
        ).all()

    @staticmethod
    def delete_with_status(db: Session, tenant_id: int, status: str) -> int:
        deleted = db.query(SongRequest).filter(
            SongRequest.tenant_id == tenant_id,
            SongRequest.status == status
        ).delete(synchronize_session=False)
        db.commit()
        return deleted
