"""
Event state, page gating and guest access credentials
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core import errors
from app.core.config import settings
from app.models import AccessCredential, Event, EVENT_STATUSES, Tenant
from app.schemas.event import EventConfig, EventConfigPatch
from app.services import notifications
from app.services.notifications import NotificationService
from app.services.repositories import EventRepo, RequestRepo, TenantRepo
from app.utils.security import digest_secret

logger = logging.getLogger(__name__)

AVOIDED_PINS = {
    "1234", "4321", "0000", "1111", "2222", "3333", "4444", "5555",
    "6666", "7777", "8888", "9999", "1212", "6969", "0420",
}

# Retries for writes that carry no caller version (end event, admin sessions)
FORCED_WRITE_ATTEMPTS = 5


def generate_pin() -> str:
    while True:
        pin = str(1000 + secrets.randbelow(9000))
        if pin not in AVOIDED_PINS:
            return pin


def generate_bypass_token() -> str:
    return f"bp_{secrets.token_hex(29)}"


def active_message(config: EventConfig, now: Optional[datetime] = None) -> Dict[str, Any]:
    """The display message, or all-None once its duration has run out"""
    message = {
        "message_text": config.message_text,
        "message_duration": config.message_duration,
        "message_created_at": config.message_created_at,
    }
    if config.message_text and config.message_duration and config.message_created_at:
        expires_at = datetime.fromisoformat(config.message_created_at) + timedelta(seconds=config.message_duration)
        if (now or datetime.utcnow()) > expires_at:
            return dict.fromkeys(message)
    return message


def _schema_error(message: str, exc: SchemaValidationError) -> errors.ValidationError:
    return errors.ValidationError(message, {
        "errors": [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
    })


class EventService:
    """Owns the one authoritative event per tenant.

    Every mutation goes through EventRepo.compare_and_swap so concurrent admin
    tabs cannot overwrite each other: a writer with a stale version gets a
    ConflictError carrying the current version.
    """

    def __init__(self, notifier: NotificationService):
        self.notifier = notifier

    @staticmethod
    def config_of(event: Event) -> EventConfig:
        return EventConfig.model_validate(event.config or {})

    def get_or_create_event(self, db: Session, tenant: Tenant) -> Event:
        event = EventRepo.get_for_tenant(db, tenant.id)
        if event:
            return event
        try:
            event = EventRepo.create(db, tenant.id, EventConfig().model_dump())
            logger.info(f"Created event {event.id} for {tenant.username}")
            return event
        except IntegrityError:
            # Another request created it first; tenant_id is unique
            db.rollback()
            return EventRepo.get_for_tenant(db, tenant.id)

    def get_event(self, db: Session, tenant: Tenant) -> Event:
        event = EventRepo.get_for_tenant(db, tenant.id)
        if not event:
            raise errors.NotFoundError("Event")
        return event

    # -------- versioned writes --------

    def _merge(self, event: Event, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Validate a patch against the stored event and return the new column values"""
        status = patch.get("status") or event.status
        if status not in EVENT_STATUSES:
            raise errors.ValidationError(f"Invalid status '{status}'. Must be one of: {', '.join(EVENT_STATUSES)}")

        try:
            config_patch = EventConfigPatch.model_validate(patch.get("config") or {})
        except SchemaValidationError as e:
            raise _schema_error("Invalid event settings", e)

        config = self.config_of(event).model_dump()
        changes = config_patch.model_dump(exclude_unset=True)
        pages_patch = changes.pop("pages_enabled", None) or {}
        config.update(changes)
        config["pages_enabled"].update({k: v for k, v in pages_patch.items() if v is not None})

        if status == "offline":
            if any(pages_patch.get(page) for page in ("requests", "display")):
                raise errors.ValidationError("Pages cannot be enabled while the event is offline")
            config["pages_enabled"] = {"requests": False, "display": False}

        try:
            config = EventConfig.model_validate(config).model_dump()
        except SchemaValidationError as e:
            raise _schema_error("Invalid event settings", e)

        return {"status": status, "config": config}

    @staticmethod
    def _check_version(event: Event, expected_version: int) -> None:
        """Refuse a patch written against a version other than the one just read"""
        if event.version != expected_version:
            logger.info(f"Version conflict on event {event.id}: expected {expected_version}, current {event.version}")
            raise errors.ConflictError(
                "Event was changed by someone else. Reload and try again.",
                {"current_version": event.version}
            )

    def _swap(self, db: Session, event: Event, expected_version: int, values: Dict[str, Any]) -> Event:
        if not EventRepo.compare_and_swap(db, event.id, expected_version, values):
            db.refresh(event)
            logger.info(f"Version conflict on event {event.id}: expected {expected_version}, current {event.version}")
            raise errors.ConflictError(
                "Event was changed by someone else. Reload and try again.",
                {"current_version": event.version}
            )
        db.refresh(event)
        return event

    def _force_swap(self, db: Session, event: Event, build_values) -> Event:
        """Write against whatever version is current, re-reading on conflict"""
        for _ in range(FORCED_WRITE_ATTEMPTS):
            db.refresh(event)
            if EventRepo.compare_and_swap(db, event.id, event.version, build_values(event)):
                db.refresh(event)
                return event
        raise errors.ConflictError(
            "Event is being changed too quickly. Try again.",
            {"current_version": event.version}
        )

    async def update_event(
        self,
        db: Session,
        tenant: Tenant,
        patch: Dict[str, Any],
        expected_version: int
    ) -> Event:
        """Apply a status/config patch if `expected_version` is still current"""
        event = self.get_or_create_event(db, tenant)
        self._check_version(event, expected_version)
        values = self._merge(event, patch)
        previous_status = event.status
        event = self._swap(db, event, expected_version, values)

        if previous_status != event.status:
            logger.info(f"Event {event.id} for {tenant.username}: {previous_status} -> {event.status} (v{event.version})")
        else:
            logger.info(f"Event {event.id} for {tenant.username} updated (v{event.version})")

        await self.notifier.state_update(db, event, tenant.username)
        return event

    async def set_page_enabled(
        self,
        db: Session,
        tenant: Tenant,
        page: str,
        enabled: bool,
        expected_version: int
    ) -> Event:
        if page not in ("requests", "display"):
            raise errors.ValidationError(f"Unknown page '{page}'")
        event = self.get_or_create_event(db, tenant)
        self._check_version(event, expected_version)
        values = self._merge(event, {"config": {"pages_enabled": {page: enabled}}})
        event = self._swap(db, event, expected_version, values)

        logger.info(f"Event {event.id}: {page} page {'enabled' if enabled else 'disabled'} (v{event.version})")
        await self.notifier.page_toggled(db, event, page, enabled)
        await self.notifier.state_update(db, event, tenant.username)
        return event

    async def end_event(self, db: Session, tenant: Tenant) -> Dict[str, Any]:
        """Reset to offline with both pages off, drop pending requests and credentials"""
        event = self.get_or_create_event(db, tenant)

        def offline(current: Event) -> Dict[str, Any]:
            config = self.config_of(current).model_dump()
            config["pages_enabled"] = {"requests": False, "display": False}
            return {"status": "offline", "config": config, "active_admin_session": None}

        event = self._force_swap(db, event, offline)

        db.query(AccessCredential).filter(
            AccessCredential.event_id == event.id,
            AccessCredential.active.is_(True)
        ).update({"active": False}, synchronize_session=False)
        db.commit()

        purged = RequestRepo.delete_with_status(db, tenant.id, "pending")
        logger.info(f"Event {event.id} for {tenant.username} ended; purged {purged} pending request(s)")

        await self.notifier.state_update(db, event, tenant.username)
        return {"event": event, "purged_pending": purged}

    # -------- admin sessions --------

    async def start_admin_session(self, db: Session, tenant: Tenant) -> Tuple[Event, str]:
        event = self.get_or_create_event(db, tenant)
        session_id = secrets.token_hex(16)
        event = self._force_swap(db, event, lambda current: {"active_admin_session": session_id})
        logger.info(f"Admin session started for {tenant.username}")
        await self.notifier.admin_session(db, event, notifications.ADMIN_LOGIN, tenant.username)
        return event, session_id

    async def end_admin_session(self, db: Session, tenant: Tenant) -> Dict[str, Any]:
        result = await self.end_event(db, tenant)
        logger.info(f"Admin session ended for {tenant.username}")
        await self.notifier.admin_session(db, result["event"], notifications.ADMIN_LOGOUT, tenant.username)
        return result

    # -------- display message --------

    async def post_message(
        self,
        db: Session,
        tenant: Tenant,
        text: str,
        duration: Optional[int] = None
    ) -> Dict[str, Any]:
        """Show a message on the display page, for `duration` seconds or until cleared"""
        text = (text or "").strip()
        if not text:
            raise errors.ValidationError("Message text is required")
        if len(text) > 500:
            raise errors.ValidationError("Message text must be at most 500 characters")
        if duration is not None and duration < 0:
            raise errors.ValidationError("Invalid message duration")

        message = {
            "message_text": text,
            "message_duration": duration,
            "message_created_at": datetime.utcnow().isoformat(),
        }
        event = self._force_swap(db, self.get_or_create_event(db, tenant), lambda current: {
            "config": {**self.config_of(current).model_dump(), **message}
        })
        expiry = f"{duration}s" if duration else "no"
        logger.info(f"Display message set for event {event.id} ({expiry} expiry)")

        await self.notifier.message_update(db, event, message)
        return message

    async def clear_message(self, db: Session, tenant: Tenant) -> Event:
        cleared = {"message_text": None, "message_duration": None, "message_created_at": None}
        event = self._force_swap(db, self.get_or_create_event(db, tenant), lambda current: {
            "config": {**self.config_of(current).model_dump(), **cleared}
        })
        logger.info(f"Display message cleared for event {event.id}")

        await self.notifier.message_cleared(db, event)
        return event

    # -------- access credentials --------

    def _issue(
        self,
        db: Session,
        event: Event,
        kind: str,
        value: str,
        expires_at: datetime,
        uses_remaining: Optional[int] = None
    ) -> AccessCredential:
        # Deactivate and insert in one commit so two credentials of a kind are never live together
        db.query(AccessCredential).filter(
            AccessCredential.event_id == event.id,
            AccessCredential.kind == kind,
            AccessCredential.active.is_(True)
        ).update({"active": False}, synchronize_session=False)

        credential = AccessCredential(
            event_id=event.id,
            kind=kind,
            secret_digest=digest_secret(f"{event.id}:{value}"),
            uses_remaining=uses_remaining,
            active=True,
            expires_at=expires_at,
        )
        db.add(credential)
        db.commit()
        db.refresh(credential)
        return credential

    def issue_pin(self, db: Session, tenant: Tenant, hours_valid: int = None) -> Dict[str, Any]:
        """New 4-digit PIN; the plaintext is returned here and nowhere else"""
        event = self.get_or_create_event(db, tenant)
        pin = generate_pin()
        expires_at = datetime.utcnow() + timedelta(hours=hours_valid or settings.PIN_HOURS_VALID)
        credential = self._issue(db, event, "pin", pin, expires_at)
        logger.info(f"Issued PIN credential {credential.id} for event {event.id}")
        return {
            "id": credential.id,
            "kind": "pin",
            "value": pin,
            "expires_at": credential.expires_at,
            "uses_remaining": None,
            "share_url": None,
        }

    def issue_bypass_token(
        self,
        db: Session,
        tenant: Tenant,
        uses_remaining: Optional[int] = 3,
        hours_valid: int = 24
    ) -> Dict[str, Any]:
        event = self.get_or_create_event(db, tenant)
        token = generate_bypass_token()
        expires_at = datetime.utcnow() + timedelta(hours=hours_valid)
        credential = self._issue(db, event, "bypass", token, expires_at, uses_remaining)
        logger.info(f"Issued bypass credential {credential.id} for event {event.id} ({uses_remaining} uses)")
        return {
            "id": credential.id,
            "kind": "bypass",
            "value": token,
            "expires_at": credential.expires_at,
            "uses_remaining": credential.uses_remaining,
            "share_url": f"{settings.BASE_URL}/{tenant.username}/display?bypass={token}",
        }

    def revoke_credential(self, db: Session, tenant: Tenant, credential_id: int) -> AccessCredential:
        credential = db.query(AccessCredential).join(Event).filter(
            AccessCredential.id == credential_id,
            Event.tenant_id == tenant.id
        ).first()
        if not credential:
            raise errors.NotFoundError("Credential")
        credential.active = False
        db.commit()
        logger.info(f"Revoked credential {credential_id} for {tenant.username}")
        return credential

    def list_credentials(self, db: Session, tenant: Tenant) -> List[Dict[str, Any]]:
        event = EventRepo.get_for_tenant(db, tenant.id)
        if not event:
            return []
        now = datetime.utcnow()
        credentials = db.query(AccessCredential).filter(
            AccessCredential.event_id == event.id
        ).order_by(AccessCredential.created_at.desc()).all()
        return [
            {
                "id": credential.id,
                "kind": credential.kind,
                "active": credential.active,
                "usable": credential.is_usable(now),
                "uses_remaining": credential.uses_remaining,
                "expires_at": credential.expires_at,
                "created_at": credential.created_at,
                "last_used_at": credential.last_used_at,
            }
            for credential in credentials
        ]

    def verify_access(
        self,
        db: Session,
        username: str,
        pin: Optional[str] = None,
        bypass_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """Admit a guest holding a PIN or bypass token for the tenant's event.

        Fails closed: an unknown tenant, a missing event, or a credential that
        is inactive, expired or out of uses all produce the same
        UnauthorizedError.
        """
        if bool(pin) == bool(bypass_token):
            raise errors.ValidationError("Provide exactly one of pin or bypass_token")

        kind, value = ("pin", pin) if pin else ("bypass", bypass_token)
        denied = errors.UnauthorizedError("Invalid or expired PIN" if pin else "Invalid or expired access link")

        tenant = TenantRepo.get_by_username(db, username)
        if not tenant or not tenant.is_active:
            raise denied
        event = EventRepo.get_for_tenant(db, tenant.id)
        if not event:
            raise denied

        now = datetime.utcnow()
        credential = db.query(AccessCredential).filter(
            AccessCredential.event_id == event.id,
            AccessCredential.kind == kind,
            AccessCredential.secret_digest == digest_secret(f"{event.id}:{value}"),
            AccessCredential.active.is_(True)
        ).first()
        if not credential or not credential.is_usable(now):
            logger.info(f"Rejected {kind} for {tenant.username}")
            raise denied

        if credential.uses_remaining is not None:
            # Conditional decrement so two guests cannot both spend the last use
            consumed = db.query(AccessCredential).filter(
                AccessCredential.id == credential.id,
                AccessCredential.uses_remaining > 0
            ).update({
                "uses_remaining": AccessCredential.uses_remaining - 1,
                "last_used_at": now,
            }, synchronize_session=False)
            if not consumed:
                db.rollback()
                raise denied
            db.commit()
            db.refresh(credential)
            if credential.uses_remaining == 0:
                credential.active = False
                db.commit()
        else:
            credential.last_used_at = now
            db.commit()

        config = self.config_of(event)
        return {
            "event_id": event.id,
            "username": tenant.username,
            "status": event.status,
            "pages_enabled": config.pages_enabled.model_dump(),
            "auth_method": kind,
            "uses_remaining": credential.uses_remaining,
        }

    # -------- public view --------

    def public_descriptor(self, db: Session, username: str) -> Dict[str, Any]:
        """Guest-visible status and config; a tenant with no event reads as offline"""
        tenant = TenantRepo.get_by_username(db, username)
        if not tenant or not tenant.is_active:
            raise errors.NotFoundError("Event")

        event = EventRepo.get_for_tenant(db, tenant.id)
        config = self.config_of(event) if event else EventConfig()
        status = event.status if event else "offline"
        if status == "offline":
            config.pages_enabled.requests = False
            config.pages_enabled.display = False

        return {
            "username": tenant.username,
            "status": status,
            "pages_enabled": config.pages_enabled.model_dump(),
            "event_title": config.event_title,
            "dj_name": config.dj_name,
            "venue_info": config.venue_info,
            "welcome_message": config.welcome_message,
            "secondary_message": config.secondary_message,
            "tertiary_message": config.tertiary_message,
            "show_qr_code": config.show_qr_code,
            "display_refresh_interval": config.display_refresh_interval,
            "force_polling": config.force_polling,
            **active_message(config),
        }

    def require_requests_open(self, db: Session, tenant: Tenant) -> Event:
        """The tenant's event, if it is live with the requests page enabled"""
        event = EventRepo.get_for_tenant(db, tenant.id)
        if not event or event.status != "live" or not self.config_of(event).pages_enabled.requests:
            raise errors.ForbiddenError("Requests are not open right now")
        return event
