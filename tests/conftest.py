"""
Shared test fixtures
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core import errors
from app.core.db import Base
from app.models import Tenant
from app.schemas.song_request import TrackInfo
from app.services.account_service import AccountService
from app.services.event_service import EventService
from app.services.notifications import NotificationService
from app.services.rate_limiter import InMemorySubmissionGuard
from app.services.request_service import RequestService
from app.utils.security import digest_secret

# Test database setup
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_party_queue.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CATALOG = {
    "4uLU6hMCjMI75M1A2tKUQC": ("Never Gonna Give You Up", "Rick Astley", False),
    "6JEK0CvvjDjjMUBFoXShNZ": ("Sandstorm", "Darude", False),
    "2takcwOaAZWiXQijPHIx7B": ("Time To Pretend", "MGMT", True),
}


class RecordingRelay:
    """Relay stand-in that keeps everything published"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    async def publish(self, channel_name, event_name, payload):
        if self.fail:
            raise RuntimeError("relay unreachable")
        self.published.append((channel_name, event_name, payload))

    def actions(self, channel_name=None):
        return [
            event_name for channel, event_name, _ in self.published
            if channel_name is None or channel == channel_name
        ]


class FakeSpotify:
    """In-memory replacement for SpotifyClient in service tests"""

    def __init__(self):
        self.queued = []
        self.queue_error = None
        self.playback = None

    async def get_track(self, track_id):
        if track_id not in CATALOG:
            raise errors.TrackNotFoundError("Unable to find track on Spotify. Please check the URL/URI.")
        return make_track(track_id)

    async def add_to_queue(self, track_uri, device_id=None):
        if self.queue_error:
            raise self.queue_error
        self.queued.append(track_uri)

    async def get_current_playback(self):
        return self.playback


def make_track(track_id: str) -> TrackInfo:
    name, artist, explicit = CATALOG[track_id]
    return TrackInfo(
        id=track_id,
        uri=f"spotify:track:{track_id}",
        name=name,
        artists=[artist],
        album=f"{name} (Single)",
        duration_ms=210000,
        explicit=explicit,
    )


def track_json(track_id: str) -> dict:
    """Spotify Web API representation of a catalog track"""
    name, artist, explicit = CATALOG[track_id]
    return {
        "id": track_id,
        "uri": f"spotify:track:{track_id}",
        "name": name,
        "artists": [{"name": artist}],
        "album": {"name": f"{name} (Single)", "images": [{"url": f"https://i.scdn.co/image/{track_id}"}]},
        "duration_ms": 210000,
        "explicit": explicit,
    }


@pytest.fixture
def db_session():
    """Create test database session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session):
    return TestingSessionLocal


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def notifier(relay):
    return NotificationService(relay)


@pytest.fixture
def event_service(notifier):
    return EventService(notifier)


@pytest.fixture
def guard():
    return InMemorySubmissionGuard(max_per_window=10, window_seconds=3600, cooldown_seconds=0)


@pytest.fixture
def request_service(notifier, guard):
    return RequestService(notifier, guard)


@pytest.fixture
def account_service(event_service):
    return AccountService(event_service)


@pytest.fixture
def spotify():
    return FakeSpotify()


@pytest.fixture
def make_tenant(db_session):
    """Factory for active tenants whose API token is `pq_<username>`"""
    def _make(username="djane", account_status="active"):
        tenant = Tenant(
            username=username,
            email=f"{username}@example.com",
            account_status=account_status,
            api_token_hash=digest_secret(f"pq_{username}"),
        )
        db_session.add(tenant)
        db_session.commit()
        db_session.refresh(tenant)
        return tenant
    return _make


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
async def live_event(db_session, tenant, event_service):
    """The tenant's event, live with both pages enabled"""
    event = event_service.get_or_create_event(db_session, tenant)
    return await event_service.update_event(
        db_session,
        tenant,
        {"status": "live", "config": {"pages_enabled": {"requests": True, "display": True}}},
        event.version
    )


@pytest.fixture
def track_factory():
    return make_track


@pytest.fixture
def track_payload():
    return track_json
