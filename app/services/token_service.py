"""
Per-tenant Spotify authorization: PKCE connect flow, token storage and
refresh, and the registry of provider clients and connection monitors.
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from app.core import errors
from app.core.config import settings
from app.models import ProviderToken
from app.services.spotify_client import ConnectionMonitor, SpotifyClient

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 10 * 60


@dataclass
class PendingAuthorization:
    tenant_id: int
    code_verifier: str
    created_at: float


def generate_pkce_pair():
    """Return (code_verifier, code_challenge) for the S256 method"""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode()).digest()
    challenge = base64.urlsafe_b64encode(digest).decode().rstrip("=")
    return verifier, challenge


class ProviderRegistry:
    """Tenant-keyed owner of provider credentials and clients.

    One shared httpx.AsyncClient serves every tenant. Each tenant gets its own
    ConnectionMonitor (so one tenant's outage does not back off another) and
    its own asyncio.Lock, which serializes refreshes so concurrent callers
    coalesce onto a single refresh exchange.
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None):
        self.http = http or httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        self.client_id = settings.SPOTIFY_CLIENT_ID
        self.client_secret = settings.SPOTIFY_CLIENT_SECRET
        self.redirect_uri = settings.SPOTIFY_REDIRECT_URI
        self.accounts_url = settings.SPOTIFY_ACCOUNTS_URL.rstrip("/")
        self.refresh_margin = timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS)
        self._locks: Dict[int, asyncio.Lock] = {}
        self._monitors: Dict[int, ConnectionMonitor] = {}
        self._pending: Dict[str, PendingAuthorization] = {}

    # -------- connect flow --------

    def authorization_url(self, tenant_id: int) -> Dict[str, str]:
        """Start a PKCE authorization; returns the URL to send the admin to and its state"""
        self._purge_expired_states()

        verifier, challenge = generate_pkce_pair()
        state = secrets.token_hex(16)
        self._pending[state] = PendingAuthorization(tenant_id, verifier, time.time())

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "code_challenge_method": "S256",
            "code_challenge": challenge,
            "state": state,
            "scope": settings.SPOTIFY_SCOPES,
        }
        return {"url": f"{self.accounts_url}/authorize?{urlencode(params)}", "state": state}

    async def complete_authorization(self, db: Session, state: str, code: str) -> ProviderToken:
        """Exchange the callback code for tokens and store them for the tenant that started the flow"""
        pending = self._pending.pop(state, None)
        if pending is None or time.time() - pending.created_at > STATE_TTL_SECONDS:
            raise errors.ValidationError("Invalid or expired authorization state. Start the connection again.")

        data = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": pending.code_verifier,
        }, pending.tenant_id)

        record = self._store_tokens(db, pending.tenant_id, data)
        self.reset_connection_state(pending.tenant_id)
        logger.info(f"Spotify connected for tenant {pending.tenant_id}")
        return record

    # -------- token lifecycle --------

    def _needs_refresh(self, record: ProviderToken, now: datetime) -> bool:
        return now >= record.expires_at - self.refresh_margin

    async def get_valid_access_token(self, db: Session, tenant_id: int, force_refresh: bool = False) -> str:
        """Cached access token, refreshed when it is within the margin of expiry.

        With force_refresh the stored token is refreshed even if it looks
        valid, unless another caller already replaced it while this one
        waited for the lock.
        """
        record = db.get(ProviderToken, tenant_id)
        if record is None:
            raise errors.ProviderUnauthorizedError("Spotify is not connected. Connect your Spotify account first.")

        if not force_refresh and not self._needs_refresh(record, datetime.utcnow()):
            return record.access_token

        seen_token = record.access_token
        async with self._lock_for(tenant_id):
            db.refresh(record)
            fresh = not self._needs_refresh(record, datetime.utcnow())
            if fresh and (not force_refresh or record.access_token != seen_token):
                return record.access_token
            await self._refresh(db, record)
            return record.access_token

    async def _refresh(self, db: Session, record: ProviderToken) -> None:
        if not record.refresh_token:
            self.monitor_for(record.tenant_id).record_fatal("no refresh token stored")
            raise errors.ProviderUnauthorizedError("Spotify session expired. Reconnect your Spotify account.")

        data = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": record.refresh_token,
            "client_id": self.client_id,
        }, record.tenant_id)

        self._apply_token_data(record, data)
        db.commit()
        logger.info(f"Spotify token refreshed for tenant {record.tenant_id}, expires {record.expires_at.isoformat()}")

    async def _token_request(self, form: dict, tenant_id: int) -> dict:
        monitor = self.monitor_for(tenant_id)
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if self.client_secret:
            basic = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
            headers["Authorization"] = f"Basic {basic}"

        try:
            response = await self.http.post(
                f"{self.accounts_url}/api/token",
                data=form,
                headers=headers,
                timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException:
            monitor.record_failure("token endpoint timeout")
            raise errors.ProviderUnavailableError("Spotify did not respond in time.")
        except httpx.HTTPError as e:
            monitor.record_failure(f"token endpoint network error: {e}")
            raise errors.ProviderUnavailableError("Could not reach Spotify.")

        if response.status_code == 200:
            data = response.json()
            if not data.get("access_token"):
                raise errors.ProviderError("Spotify returned no access token.")
            return data

        if response.status_code == 400 and "invalid_grant" in response.text:
            logger.warning(f"Spotify rejected the grant for tenant {tenant_id}")
            monitor.record_fatal("invalid_grant")
            raise errors.ProviderUnauthorizedError(
                "Spotify authorization was revoked or expired. Reconnect your Spotify account."
            )

        if response.status_code == 429 or response.status_code >= 500:
            monitor.record_failure(f"token endpoint {response.status_code}")
            raise errors.ProviderUnavailableError("Spotify is having problems. Try again shortly.")

        logger.error(f"Spotify token request failed for tenant {tenant_id}: {response.status_code}")
        raise errors.ProviderError(f"Spotify token request failed ({response.status_code}).")

    @staticmethod
    def _apply_token_data(record: ProviderToken, data: dict) -> None:
        record.access_token = data["access_token"]
        # Spotify only sometimes rotates the refresh token
        if data.get("refresh_token"):
            record.refresh_token = data["refresh_token"]
        record.expires_at = datetime.utcnow() + timedelta(seconds=int(data.get("expires_in", 3600)))
        if data.get("scope"):
            record.scope = data["scope"]
        record.updated_at = datetime.utcnow()

    def _store_tokens(self, db: Session, tenant_id: int, data: dict) -> ProviderToken:
        record = db.get(ProviderToken, tenant_id)
        if record is None:
            record = ProviderToken(tenant_id=tenant_id)
            db.add(record)
        self._apply_token_data(record, data)
        db.commit()
        db.refresh(record)
        return record

    def disconnect(self, db: Session, tenant_id: int) -> bool:
        """Forget the tenant's tokens; True if there was anything to forget"""
        record = db.get(ProviderToken, tenant_id)
        if record is not None:
            db.delete(record)
            db.commit()
        self._monitors.pop(tenant_id, None)
        logger.info(f"Spotify disconnected for tenant {tenant_id}")
        return record is not None

    def is_connected(self, db: Session, tenant_id: int) -> bool:
        """Tokens are stored and authorization has not been lost; may still need a refresh"""
        monitor = self._monitors.get(tenant_id)
        if monitor and monitor.fatal:
            return False
        return db.get(ProviderToken, tenant_id) is not None

    def is_connected_and_valid(self, db: Session, tenant_id: int) -> bool:
        """Stored, unexpired and not fatally disconnected; never refreshes"""
        record = db.get(ProviderToken, tenant_id)
        if record is None or record.expires_at <= datetime.utcnow():
            return False
        monitor = self._monitors.get(tenant_id)
        return not (monitor and monitor.fatal)

    @staticmethod
    def connected_tenant_ids(db: Session) -> List[int]:
        return [row.tenant_id for row in db.query(ProviderToken.tenant_id).all()]

    # -------- clients and connectivity --------

    def monitor_for(self, tenant_id: int) -> ConnectionMonitor:
        if tenant_id not in self._monitors:
            self._monitors[tenant_id] = ConnectionMonitor()
        return self._monitors[tenant_id]

    def client_for(self, db: Session, tenant_id: int) -> SpotifyClient:
        async def token_source(force_refresh: bool) -> str:
            return await self.get_valid_access_token(db, tenant_id, force_refresh=force_refresh)

        return SpotifyClient(self.http, token_source, self.monitor_for(tenant_id))

    def reset_connection_state(self, tenant_id: int) -> None:
        self.monitor_for(tenant_id).reset()
        logger.info(f"Spotify connection state reset for tenant {tenant_id}")

    def _lock_for(self, tenant_id: int) -> asyncio.Lock:
        if tenant_id not in self._locks:
            self._locks[tenant_id] = asyncio.Lock()
        return self._locks[tenant_id]

    def _purge_expired_states(self) -> None:
        cutoff = time.time() - STATE_TTL_SECONDS
        for state in [s for s, p in self._pending.items() if p.created_at < cutoff]:
            del self._pending[state]

    async def aclose(self) -> None:
        await self.http.aclose()
