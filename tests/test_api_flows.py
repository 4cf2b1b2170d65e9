"""
End-to-end API tests against a mocked Spotify
"""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from app.api.ws import WebSocketRelay
from app.core.config import settings
from app.core.db import get_db
from app.models import ProviderToken
from app.services.account_service import AccountService
from app.services.event_service import EventService
from app.services.notifications import NotificationService
from app.services.rate_limiter import InMemorySubmissionGuard
from app.services.reconciliation import PlaybackReconciler
from app.services.request_service import RequestService
from app.services.token_service import ProviderRegistry
import main

SONG_A = "4uLU6hMCjMI75M1A2tKUQC"
SONG_B = "6JEK0CvvjDjjMUBFoXShNZ"


class MockSpotify:
    def __init__(self, track_payload):
        self.track_payload = track_payload
        self.playing = None
        self.queued = []

    def __call__(self, request):
        path = request.url.path
        if path.startswith("/v1/tracks/"):
            track_id = path.rsplit("/", 1)[-1]
            try:
                return httpx.Response(200, json=self.track_payload(track_id))
            except KeyError:
                return httpx.Response(404, json={"error": {"status": 404, "message": "Not found"}})
        if path == "/v1/me/player/queue" and request.method == "POST":
            self.queued.append(request.url.params["uri"])
            return httpx.Response(204)
        if path == "/v1/me/player":
            if self.playing is None:
                return httpx.Response(204)
            return httpx.Response(200, json={"is_playing": True, "item": self.track_payload(self.playing)})
        return httpx.Response(404)


@pytest.fixture
def mock_spotify(track_payload):
    return MockSpotify(track_payload)


@pytest.fixture
def client(session_factory, mock_spotify):
    """TestClient with fresh services bound to the test database"""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app = main.app
    relay = WebSocketRelay()
    notifier = NotificationService(relay)
    event_service = EventService(notifier)
    request_service = RequestService(notifier, InMemorySubmissionGuard(cooldown_seconds=0))
    registry = ProviderRegistry(http=httpx.AsyncClient(transport=httpx.MockTransport(mock_spotify)))

    app.state.relay = relay
    app.state.notifier = notifier
    app.state.event_service = event_service
    app.state.request_service = request_service
    app.state.account_service = AccountService(event_service)
    app.state.provider_registry = registry
    app.state.reconciler = PlaybackReconciler(registry, request_service, notifier, session_factory=session_factory)
    app.dependency_overrides[get_db] = override_get_db

    yield TestClient(app)

    app.dependency_overrides.clear()


def operator_headers():
    return {"Authorization": f"Bearer {settings.ADMIN_TOKEN}"}


def onboard(client, username="djane"):
    """Create and verify a tenant; returns its admin headers"""
    response = client.post(
        "/superadmin/tenants",
        json={"username": username, "email": f"{username}@example.com"},
        headers=operator_headers()
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["account_status"] == "pending_verification"

    response = client.post("/auth/verify-email", json={"token": data["verification_token"]})
    assert response.status_code == 200
    assert response.json()["data"]["already_verified"] is False

    return {"Authorization": f"Bearer {data['api_token']}"}, data["id"]


def go_live(client, headers):
    version = client.get("/admin/event", headers=headers).json()["data"]["version"]
    response = client.patch("/admin/event", json={
        "status": "live",
        "config": {"pages_enabled": {"requests": True, "display": True}},
        "expected_version": version,
    }, headers=headers)
    assert response.status_code == 200
    return response.json()["data"]


def connect_spotify(db_session, tenant_id):
    db_session.add(ProviderToken(
        tenant_id=tenant_id,
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=datetime.utcnow() + timedelta(hours=1),
    ))
    db_session.commit()


class TestRequestFlow:
    """Test the full guest-to-played flow"""

    def test_song_request_end_to_end(self, client, db_session, mock_spotify):
        headers, tenant_id = onboard(client)
        connect_spotify(db_session, tenant_id)
        event = go_live(client, headers)

        # Guest submits song A
        response = client.post("/public/djane/requests", json={
            "track_url": f"https://open.spotify.com/track/{SONG_A}?si=abc",
            "requester_nickname": "Sam",
        })
        assert response.status_code == 201
        request_id = response.json()["data"]["id"]
        assert response.json()["data"]["status"] == "pending"
        assert response.json()["data"]["track"]["artist"] == "Rick Astley"

        # Same song again is a duplicate
        response = client.post("/public/djane/requests", json={"track_uri": f"spotify:track:{SONG_A}"})
        assert response.status_code == 409
        assert response.json()["error_code"] == "duplicate_request"

        # Admin approves, which queues it on Spotify
        response = client.post(f"/admin/requests/{request_id}/approve", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "queued"
        assert mock_spotify.queued == [f"spotify:track:{SONG_A}"]

        # Song A starts playing and the next tick marks it played
        mock_spotify.playing = SONG_A
        app_state = main.app.state
        result = asyncio.run(app_state.reconciler.tick(tenant_id))
        assert result.marked_played == [request_id]

        response = client.get("/admin/requests", params={"status": "played"}, headers=headers)
        assert response.json()["data"]["pagination"]["total"] == 1
        assert response.json()["data"]["stats"]["played"] == 1

        # Guests can follow along through polling
        response = client.get(f"/events/{event['id']}/poll")
        actions = [e["action"] for e in response.json()["data"]["events"]]
        assert actions.index("request_submitted") < actions.index("request_approved") < actions.index("playback_update")

    def test_poll_cursor_pages_through_every_event(self, client):
        headers, _ = onboard(client)
        event = go_live(client, headers)
        client.put("/admin/event/pages/display", json={"enabled": False, "expected_version": event["version"]}, headers=headers)

        everything = client.get(f"/events/{event['id']}/poll").json()["data"]["events"]
        assert len(everything) >= 3

        seen = []
        params = {"limit": 1}
        for _ in range(len(everything) + 1):
            page = client.get(f"/events/{event['id']}/poll", params=params).json()["data"]
            if not page["events"]:
                break
            seen.extend(e["version"] for e in page["events"])
            params = {"limit": 1, "since": page["latest_timestamp"], "since_version": page["latest_version"]}

        assert seen == [e["version"] for e in everything]

    def test_stale_version_conflict(self, client):
        headers, _ = onboard(client)
        event = go_live(client, headers)

        response = client.patch("/admin/event", json={
            "config": {"dj_name": "DJ Late"},
            "expected_version": event["version"] - 1,
        }, headers=headers)

        assert response.status_code == 409
        assert response.json()["success"] is False
        assert response.json()["details"] == {"current_version": event["version"]}

    def test_offline_event_refuses_requests(self, client, db_session):
        headers, tenant_id = onboard(client)
        connect_spotify(db_session, tenant_id)
        go_live(client, headers)

        response = client.post("/admin/event/end", headers=headers)
        assert response.status_code == 200

        public = client.get("/public/djane/event").json()["data"]
        assert public["status"] == "offline"
        assert public["pages_enabled"] == {"requests": False, "display": False}

        response = client.post("/public/djane/requests", json={"track_uri": f"spotify:track:{SONG_A}"})
        assert response.status_code == 403

    def test_rate_limit_returns_retry_after(self, client, db_session, monkeypatch):
        monkeypatch.setattr(settings, "TRUSTED_PROXIES", ["testclient"])
        headers, tenant_id = onboard(client)
        connect_spotify(db_session, tenant_id)
        event = go_live(client, headers)
        client.patch("/admin/event", json={
            "config": {"request_limit": 1},
            "expected_version": event["version"],
        }, headers=headers)

        assert client.post("/public/djane/requests", json={"track_uri": f"spotify:track:{SONG_A}"}).status_code == 201
        response = client.post("/public/djane/requests", json={"track_uri": f"spotify:track:{SONG_B}"})

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0

        # A different guest still gets through
        response = client.post(
            "/public/djane/requests",
            json={"track_uri": f"spotify:track:{SONG_B}"},
            headers={"X-Forwarded-For": "203.0.113.7"}
        )
        assert response.status_code == 201

    def test_forwarded_header_ignored_from_untrusted_peer(self, client, db_session, monkeypatch):
        monkeypatch.setattr(settings, "TRUSTED_PROXIES", [])
        headers, tenant_id = onboard(client)
        connect_spotify(db_session, tenant_id)
        event = go_live(client, headers)
        client.patch("/admin/event", json={
            "config": {"request_limit": 1},
            "expected_version": event["version"],
        }, headers=headers)

        assert client.post("/public/djane/requests", json={"track_uri": f"spotify:track:{SONG_A}"}).status_code == 201
        response = client.post(
            "/public/djane/requests",
            json={"track_uri": f"spotify:track:{SONG_B}"},
            headers={"X-Forwarded-For": "203.0.113.7"}
        )

        assert response.status_code == 429

    def test_invalid_reference(self, client, db_session):
        headers, tenant_id = onboard(client)
        connect_spotify(db_session, tenant_id)
        go_live(client, headers)

        response = client.post("/public/djane/requests", json={"track_uri": "not-a-track"})

        assert response.status_code == 422
        assert response.json()["message"] == "Invalid Spotify URL or URI format"


class TestAdminAccess:
    """Test authentication and tenant isolation"""

    def test_invalid_token(self, client):
        onboard(client)
        response = client.get("/admin/event", headers={"Authorization": "Bearer pq_wrong"})
        assert response.status_code == 401

    def test_requests_are_tenant_scoped(self, client, db_session):
        alice_headers, alice_id = onboard(client, "alice")
        bob_headers, _ = onboard(client, "bob")
        connect_spotify(db_session, alice_id)
        go_live(client, alice_headers)

        request_id = client.post(
            "/public/alice/requests", json={"track_uri": f"spotify:track:{SONG_A}"}
        ).json()["data"]["id"]

        response = client.post(f"/admin/requests/{request_id}/reject", headers=bob_headers)
        assert response.status_code == 404
        assert client.get("/admin/requests", headers=bob_headers).json()["data"]["pagination"]["total"] == 0

    def test_suspended_tenant_loses_access(self, client):
        headers, tenant_id = onboard(client)

        response = client.put(
            f"/superadmin/tenants/{tenant_id}/status",
            json={"account_status": "suspended"},
            headers=operator_headers()
        )
        assert response.status_code == 200

        assert client.get("/admin/event", headers=headers).status_code == 403
        assert client.get("/public/djane/event").status_code == 404

    def test_relay_auth_only_for_own_channel(self, client):
        headers, tenant_id = onboard(client)
        _, other_id = onboard(client, "other")

        response = client.post("/admin/relay/auth", json={
            "socket_id": "1.234",
            "channel_name": f"private-tenant-{tenant_id}",
        }, headers=headers)
        assert response.status_code == 200
        relay = main.app.state.relay
        assert relay.verify_private_auth("1.234", f"private-tenant-{tenant_id}", response.json()["auth"])

        response = client.post("/admin/relay/auth", json={
            "socket_id": "1.234",
            "channel_name": f"private-tenant-{other_id}",
        }, headers=headers)
        assert response.status_code == 403


class TestGuestAccess:
    """Test PIN and bypass link endpoints"""

    def test_pin_flow(self, client):
        headers, _ = onboard(client)

        response = client.post("/admin/event/pin", headers=headers)
        assert response.status_code == 201
        pin = response.json()["data"]["value"]

        response = client.post("/public/djane/verify-pin", json={"pin": pin})
        assert response.status_code == 200
        assert response.json()["data"]["auth_method"] == "pin"

        wrong = "5678" if pin != "5678" else "5679"
        response = client.post("/public/djane/verify-pin", json={"pin": wrong})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid or expired PIN"

    def test_bypass_link_uses(self, client):
        headers, _ = onboard(client)

        response = client.post("/admin/event/bypass-token", json={"uses_remaining": 1}, headers=headers)
        token = response.json()["data"]["value"]

        assert client.post("/public/djane/verify-bypass", json={"bypass_token": token}).status_code == 200
        assert client.post("/public/djane/verify-bypass", json={"bypass_token": token}).status_code == 401


class TestPublicPages:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_qr_code(self, client):
        onboard(client)

        response = client.get("/public/djane/qr.png")

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content.startswith(b"\x89PNG")

    def test_now_playing(self, client, db_session, mock_spotify):
        headers, tenant_id = onboard(client)
        connect_spotify(db_session, tenant_id)
        go_live(client, headers)
        mock_spotify.playing = SONG_B

        data = client.get("/public/djane/now-playing").json()["data"]

        assert data["status"] == "live"
        assert data["now_playing"]["track"]["name"] == "Sandstorm"
        assert data["upcoming"] == []

    def test_now_playing_without_spotify(self, client):
        headers, _ = onboard(client)
        go_live(client, headers)

        data = client.get("/public/djane/now-playing").json()["data"]

        assert data["now_playing"] is None

    def test_display_message(self, client):
        headers, _ = onboard(client)
        go_live(client, headers)

        response = client.post("/admin/event/message", json={"message_text": "Last call", "message_duration": 300}, headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["message_text"] == "Last call"

        public = client.get("/public/djane/event").json()["data"]
        assert public["message_text"] == "Last call"
        assert public["message_duration"] == 300

        assert client.delete("/admin/event/message", headers=headers).status_code == 200
        assert client.get("/public/djane/event").json()["data"]["message_text"] is None

        response = client.post("/admin/event/message", json={"message_text": ""}, headers=headers)
        assert response.status_code == 422

    def test_unknown_tenant(self, client):
        response = client.get("/public/nobody/event")
        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"
