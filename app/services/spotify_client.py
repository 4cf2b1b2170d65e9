"""
Spotify Web API client and provider connectivity state.

The client never retries on its own beyond one token refresh on 401. Every
failure is classified into a ProviderError subclass and fed into the
tenant's ConnectionMonitor, which both the reconciliation loop and admin
actions consult before calling out.
"""

import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from app.core import errors
from app.core.config import settings
from app.schemas.song_request import TrackInfo

logger = logging.getLogger(__name__)

TokenSource = Callable[[bool], Awaitable[str]]

TRACK_URI_RE = re.compile(r"^spotify:track:([A-Za-z0-9]+)$")
TRACK_URL_RE = re.compile(r"^https?://open\.spotify\.com/(?:intl-[a-z]{2}(?:-[a-z]{2})?/)?track/([A-Za-z0-9]+)")


class ConnectionMonitor:
    """Per-tenant provider connectivity: connected -> degraded -> disconnected.

    Transient failures put the monitor in `degraded` with exponential backoff
    (base * 2^(n-1), capped). After `disconnect_threshold` consecutive
    failures, or a single fatal one, it is `disconnected` and stays there
    until reset() is called.
    """

    CONNECTED = "connected"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"

    def __init__(
        self,
        base_backoff: float = None,
        max_backoff: float = None,
        disconnect_threshold: int = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.base_backoff = base_backoff if base_backoff is not None else settings.BACKOFF_BASE_SECONDS
        self.max_backoff = max_backoff if max_backoff is not None else settings.BACKOFF_MAX_SECONDS
        self.disconnect_threshold = disconnect_threshold or settings.DISCONNECT_THRESHOLD
        self.clock = clock
        self.reset()

    def reset(self) -> None:
        self.failure_count = 0
        self.backoff_until: Optional[float] = None
        self.last_error: Optional[str] = None
        self.fatal = False
        self.disconnected = False

    @property
    def status(self) -> str:
        if self.disconnected:
            return self.DISCONNECTED
        if self.failure_count > 0:
            return self.DEGRADED
        return self.CONNECTED

    def backoff_remaining(self, now: Optional[float] = None) -> float:
        if self.backoff_until is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, self.backoff_until - now)

    def should_attempt(self, now: Optional[float] = None) -> bool:
        if self.disconnected:
            return False
        return self.backoff_remaining(now) == 0.0

    def record_success(self) -> None:
        if self.failure_count:
            logger.info(f"Spotify: connection recovered after {self.failure_count} failure(s)")
        self.failure_count = 0
        self.backoff_until = None
        self.last_error = None

    def record_failure(self, message: str, retry_after: Optional[float] = None, now: Optional[float] = None) -> None:
        now = self.clock() if now is None else now
        self.failure_count += 1
        self.last_error = message

        if self.failure_count >= self.disconnect_threshold:
            self.disconnected = True
            self.backoff_until = None
            logger.warning(
                f"Spotify: marked disconnected after {self.failure_count} failures. "
                f"Manual reconnection required. Last error: {message}"
            )
            return

        backoff = min(self.base_backoff * (2 ** (self.failure_count - 1)), self.max_backoff)
        if retry_after:
            backoff = max(backoff, float(retry_after))
        self.backoff_until = now + backoff
        logger.warning(
            f"Spotify: failure {self.failure_count}/{self.disconnect_threshold}, "
            f"backing off {backoff:.0f}s. Error: {message}"
        )

    def record_fatal(self, message: str) -> None:
        self.failure_count += 1
        self.last_error = message
        self.fatal = True
        self.disconnected = True
        self.backoff_until = None
        logger.warning(f"Spotify: authorization lost, disconnected. Error: {message}")

    def blocked_error(self) -> errors.ProviderError:
        """The error to raise when should_attempt() is False"""
        if self.fatal:
            return errors.ProviderUnauthorizedError(
                "Spotify authorization was revoked. Reconnect your Spotify account."
            )
        if self.disconnected:
            return errors.ProviderUnavailableError(
                "Spotify is disconnected after repeated failures. Reset the connection to retry."
            )
        seconds = int(self.backoff_remaining()) + 1
        return errors.ProviderUnavailableError(
            f"Spotify is temporarily unavailable. Retrying in {seconds}s.",
            {"retry_after": seconds}
        )

    def message(self) -> str:
        if self.status == self.CONNECTED:
            return "Connected"
        if self.status == self.DISCONNECTED:
            return "Disconnected - manual reconnection required"
        remaining = self.backoff_remaining()
        if remaining > 0:
            return f"Retrying in {int(remaining) + 1}s (attempt {self.failure_count}/{self.disconnect_threshold})"
        return f"Connection issues detected ({self.failure_count}/{self.disconnect_threshold} failures)"

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "failure_count": self.failure_count,
            "backoff_remaining": round(self.backoff_remaining(), 1),
            "last_error": self.last_error,
            "message": self.message(),
        }


def track_from_json(item: Dict[str, Any]) -> TrackInfo:
    album = item.get("album") or {}
    images = album.get("images") or []
    return TrackInfo(
        id=item.get("id") or "",
        uri=item.get("uri") or "",
        name=item.get("name") or "Unknown Track",
        artists=[artist.get("name", "") for artist in item.get("artists") or []],
        album=album.get("name"),
        album_art=images[0]["url"] if images else None,
        duration_ms=item.get("duration_ms"),
        explicit=bool(item.get("explicit", False)),
    )


class SpotifyClient:
    """Bearer-authenticated calls against the Spotify Web API for one tenant"""

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_source: TokenSource,
        monitor: ConnectionMonitor,
        api_url: str = None,
        timeout: float = None
    ):
        self.http = http
        self.token_source = token_source
        self.monitor = monitor
        self.api_url = (api_url or settings.SPOTIFY_API_URL).rstrip("/")
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        player: bool = False
    ) -> Any:
        if not self.monitor.should_attempt():
            raise self.monitor.blocked_error()

        token = await self.token_source(False)
        response = await self._send(method, path, token, params, json)

        if response.status_code == 401:
            token = await self.token_source(True)
            response = await self._send(method, path, token, params, json)
            if response.status_code == 401:
                self.monitor.record_fatal("401 after token refresh")
                raise errors.ProviderUnauthorizedError(
                    "Spotify rejected the access token. Reconnect your Spotify account."
                )

        status = response.status_code

        if status == 429:
            retry_after = _retry_after(response)
            self.monitor.record_failure("429 rate limited", retry_after=retry_after)
            raise errors.ProviderRateLimitedError(
                "Spotify rate limit reached. Please wait a moment.", retry_after
            )

        if status >= 500:
            self.monitor.record_failure(f"{status} server error")
            raise errors.ProviderUnavailableError(f"Spotify is having problems ({status}). Try again shortly.")

        if status == 403:
            reason = _error_reason(response)
            if reason == "PREMIUM_REQUIRED" or player:
                raise errors.PremiumRequiredError("Spotify Premium required for playback control.")
            raise errors.ProviderError(f"Spotify refused the request: {reason or status}", {"status": status})

        if status == 404 and player:
            raise errors.NoActiveDeviceError(
                "No active device found. Start playing Spotify on a device, then try again."
            )

        if status >= 400:
            raise errors.ProviderError(f"Spotify API error: {status}", {"status": status})

        self.monitor.record_success()
        if status == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def _send(self, method, path, token, params, json) -> httpx.Response:
        try:
            return await self.http.request(
                method,
                f"{self.api_url}{path}",
                headers={"Authorization": f"Bearer {token}"},
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            self.monitor.record_failure("timeout")
            raise errors.ProviderUnavailableError("Spotify did not respond in time.")
        except httpx.HTTPError as e:
            self.monitor.record_failure(f"network error: {e}")
            raise errors.ProviderUnavailableError("Could not reach Spotify.")

    # -------- reads --------

    async def get_current_playback(self) -> Optional[Dict[str, Any]]:
        """Playback state, or None when nothing is active"""
        return await self._request("GET", "/me/player")

    async def get_queue(self) -> Dict[str, Any]:
        data = await self._request("GET", "/me/player/queue") or {}
        return {
            "currently_playing": track_from_json(data["currently_playing"]) if data.get("currently_playing") else None,
            "queue": [track_from_json(item) for item in data.get("queue") or [] if item],
        }

    async def get_devices(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/me/player/devices") or {}
        return data.get("devices", [])

    async def search_tracks(self, query: str, limit: int = 10) -> List[TrackInfo]:
        if not query or len(query.strip()) < 2:
            return []
        data = await self._request("GET", "/search", params={"q": query.strip(), "type": "track", "limit": limit}) or {}
        items = data.get("tracks", {}).get("items", [])
        return [track_from_json(item) for item in items if item]

    async def get_track(self, track_id: str) -> TrackInfo:
        try:
            data = await self._request("GET", f"/tracks/{track_id}")
        except errors.ProviderError as e:
            if type(e) is errors.ProviderError and e.details.get("status") in (400, 404):
                raise errors.TrackNotFoundError("Unable to find track on Spotify. Please check the URL/URI.")
            raise
        if not data:
            raise errors.TrackNotFoundError("Unable to find track on Spotify. Please check the URL/URI.")
        return track_from_json(data)

    # -------- playback control --------

    async def add_to_queue(self, track_uri: str, device_id: Optional[str] = None) -> None:
        params = {"uri": track_uri}
        if device_id:
            params["device_id"] = device_id
        await self._request("POST", "/me/player/queue", params=params, player=True)

    async def pause(self, device_id: Optional[str] = None) -> None:
        await self._request("PUT", "/me/player/pause", params=_device(device_id), player=True)

    async def resume(self, device_id: Optional[str] = None) -> None:
        await self._request("PUT", "/me/player/play", params=_device(device_id), player=True)

    async def skip_next(self, device_id: Optional[str] = None) -> None:
        await self._request("POST", "/me/player/next", params=_device(device_id), player=True)

    async def skip_previous(self, device_id: Optional[str] = None) -> None:
        await self._request("POST", "/me/player/previous", params=_device(device_id), player=True)

    async def set_volume(self, volume_percent: int, device_id: Optional[str] = None) -> None:
        params = {"volume_percent": volume_percent, **_device(device_id)}
        await self._request("PUT", "/me/player/volume", params=params, player=True)

    async def transfer_playback(self, device_id: str, play: bool = True) -> None:
        await self._request("PUT", "/me/player", json={"device_ids": [device_id], "play": play}, player=True)


def currently_playing(playback: Optional[Dict[str, Any]]) -> Optional[TrackInfo]:
    """The track in a playback state, if any"""
    if not playback or not playback.get("item"):
        return None
    return track_from_json(playback["item"])


def _device(device_id: Optional[str]) -> dict:
    return {"device_id": device_id} if device_id else {}


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    try:
        return float(value) if value else None
    except ValueError:
        return None


def _error_reason(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("reason") or error.get("message")
    return None


def parse_track_reference(reference: str) -> str:
    """Normalize a track URI or open.spotify.com URL to `spotify:track:<id>`"""
    reference = (reference or "").strip()
    match = TRACK_URI_RE.match(reference) or TRACK_URL_RE.match(reference)
    if not match:
        raise errors.ValidationError("Invalid Spotify URL or URI format")
    return f"spotify:track:{match.group(1)}"
