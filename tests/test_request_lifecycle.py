"""
Tests for the song request lifecycle
"""

from datetime import datetime, timedelta

import pytest

from app.core import errors
from app.models import SongRequest
from app.schemas.song_request import TrackInfo
from app.services.request_service import AUTO_APPROVER, tracks_match

SONG_A = "4uLU6hMCjMI75M1A2tKUQC"
SONG_B = "6JEK0CvvjDjjMUBFoXShNZ"
EXPLICIT_SONG = "2takcwOaAZWiXQijPHIx7B"


async def submit(request_service, db, tenant, event, client, track_id=SONG_A, ip_hash="ip-1", nickname="Sam"):
    return await request_service.submit(
        db, tenant, event, f"spotify:track:{track_id}", nickname, ip_hash, client
    )


class TestSubmission:
    """Test guest submissions"""

    async def test_submit_creates_pending_request(self, db_session, tenant, live_event, request_service, spotify, relay):
        song_request = await submit(request_service, db_session, tenant, live_event, spotify)

        assert song_request.status == "pending"
        assert song_request.track_uri == f"spotify:track:{SONG_A}"
        assert song_request.track_name == "Never Gonna Give You Up"
        assert song_request.artist_name == "Rick Astley"
        assert song_request.requester_nickname == "Sam"
        assert "request_submitted" in relay.actions(f"event-{live_event.id}")
        assert spotify.queued == []

    async def test_submit_accepts_share_url(self, db_session, tenant, live_event, request_service, spotify):
        song_request = await request_service.submit(
            db_session, tenant, live_event,
            f"https://open.spotify.com/intl-de/track/{SONG_B}?si=abc123", None, "ip-1", spotify
        )

        assert song_request.track_uri == f"spotify:track:{SONG_B}"
        assert song_request.to_dict()["requester_nickname"] == "Anonymous"

    async def test_invalid_reference(self, db_session, tenant, live_event, request_service, spotify):
        with pytest.raises(errors.ValidationError):
            await request_service.submit(
                db_session, tenant, live_event, "https://youtube.com/watch?v=dQw4w9WgXcQ", None, "ip-1", spotify
            )

    async def test_closed_event_rejects_submission(self, db_session, tenant, event_service, request_service, spotify):
        event = event_service.get_or_create_event(db_session, tenant)

        with pytest.raises(errors.ForbiddenError):
            await submit(request_service, db_session, tenant, event, spotify)

    async def test_requests_page_disabled(self, db_session, tenant, live_event, event_service, request_service, spotify):
        event = await event_service.set_page_enabled(db_session, tenant, "requests", False, live_event.version)

        with pytest.raises(errors.ForbiddenError):
            await submit(request_service, db_session, tenant, event, spotify)

    async def test_unknown_track(self, db_session, tenant, live_event, request_service, spotify):
        with pytest.raises(errors.TrackNotFoundError):
            await submit(request_service, db_session, tenant, live_event, spotify, track_id="0000000000000000000000")
        assert db_session.query(SongRequest).count() == 0

    async def test_duplicate_suppressed_while_open(self, db_session, tenant, live_event, request_service, spotify):
        await submit(request_service, db_session, tenant, live_event, spotify, ip_hash="ip-1")

        with pytest.raises(errors.DuplicateRequestError) as exc_info:
            await submit(request_service, db_session, tenant, live_event, spotify, ip_hash="ip-2")
        assert exc_info.value.status_code == 409

    async def test_rejected_track_can_be_requested_again(self, db_session, tenant, live_event, request_service, spotify):
        first = await submit(request_service, db_session, tenant, live_event, spotify)
        await request_service.review(db_session, tenant, first.id, "reject")

        second = await submit(request_service, db_session, tenant, live_event, spotify, ip_hash="ip-2")
        assert second.id != first.id

    async def test_played_track_can_be_requested_again(self, db_session, tenant, live_event, request_service, spotify):
        first = await submit(request_service, db_session, tenant, live_event, spotify)
        await request_service.review(db_session, tenant, first.id, "approve", client=spotify)
        request_service.mark_played(db_session, tenant, first.id)

        second = await submit(request_service, db_session, tenant, live_event, spotify, ip_hash="ip-2")

        assert second.id != first.id
        assert second.status == "pending"

    @pytest.mark.parametrize("minutes_ago, suppressed", [(29, True), (31, False)])
    async def test_duplicate_window_is_thirty_minutes(
        self, db_session, tenant, live_event, request_service, spotify, minutes_ago, suppressed
    ):
        first = await submit(request_service, db_session, tenant, live_event, spotify)
        first.created_at = datetime.utcnow() - timedelta(minutes=minutes_ago)
        db_session.commit()

        if suppressed:
            with pytest.raises(errors.DuplicateRequestError):
                await submit(request_service, db_session, tenant, live_event, spotify, ip_hash="ip-2")
        else:
            second = await submit(request_service, db_session, tenant, live_event, spotify, ip_hash="ip-2")
            assert second.id != first.id
        assert db_session.get(SongRequest, first.id).status == "pending"

    async def test_duplicates_are_per_tenant(self, db_session, make_tenant, event_service, request_service, spotify):
        events = {}
        for username in ("alice", "bob"):
            owner = make_tenant(username)
            event = event_service.get_or_create_event(db_session, owner)
            events[username] = (owner, await event_service.update_event(
                db_session, owner,
                {"status": "live", "config": {"pages_enabled": {"requests": True}}},
                event.version
            ))

        for owner, event in events.values():
            await submit(request_service, db_session, owner, event, spotify)
        assert db_session.query(SongRequest).count() == 2

    async def test_explicit_tracks_declined(self, db_session, tenant, live_event, event_service, request_service, spotify):
        event = await event_service.update_event(
            db_session, tenant, {"config": {"decline_explicit": True}}, live_event.version
        )

        with pytest.raises(errors.ValidationError):
            await submit(request_service, db_session, tenant, event, spotify, track_id=EXPLICIT_SONG)
        await submit(request_service, db_session, tenant, event, spotify, track_id=SONG_A)

    async def test_guard_slot_spent_before_lookup(self, db_session, tenant, live_event, event_service, request_service, spotify):
        event = await event_service.update_event(
            db_session, tenant, {"config": {"request_limit": 1}}, live_event.version
        )

        with pytest.raises(errors.TrackNotFoundError):
            await submit(request_service, db_session, tenant, event, spotify, track_id="0000000000000000000000")
        with pytest.raises(errors.RateLimitedError):
            await submit(request_service, db_session, tenant, event, spotify)

        # Another guest is unaffected
        await submit(request_service, db_session, tenant, event, spotify, ip_hash="ip-2")

    async def test_auto_approve_queues_immediately(self, db_session, tenant, live_event, event_service, request_service, spotify, relay):
        event = await event_service.update_event(
            db_session, tenant, {"config": {"auto_approve": True}}, live_event.version
        )

        song_request = await submit(request_service, db_session, tenant, event, spotify)

        assert song_request.status == "queued"
        assert song_request.approved_by == AUTO_APPROVER
        assert song_request.added_to_provider_queue is True
        assert spotify.queued == [f"spotify:track:{SONG_A}"]
        assert relay.actions(f"event-{event.id}")[-2:] == ["request_submitted", "request_approved"]

    async def test_auto_approve_survives_queue_failure(self, db_session, tenant, live_event, event_service, request_service, spotify):
        event = await event_service.update_event(
            db_session, tenant, {"config": {"auto_approve": True}}, live_event.version
        )
        spotify.queue_error = errors.NoActiveDeviceError("No active device found.")

        song_request = await submit(request_service, db_session, tenant, event, spotify)

        assert song_request.status == "approved"
        assert song_request.added_to_provider_queue is False


class TestReview:
    """Test approve/reject decisions"""

    async def test_approve_and_queue(self, db_session, tenant, live_event, request_service, spotify):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)

        result = await request_service.review(db_session, tenant, pending.id, "approve", client=spotify)

        assert result.queued is True
        assert result.request.status == "queued"
        assert result.request.approved_by == tenant.username
        assert result.request.approved_at is not None

    async def test_approve_without_queueing(self, db_session, tenant, live_event, request_service, spotify):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)

        result = await request_service.review(db_session, tenant, pending.id, "approve")

        assert result.queued is False
        assert result.request.status == "approved"
        assert spotify.queued == []

    async def test_queue_failure_keeps_approval(self, db_session, tenant, live_event, request_service, spotify):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)
        spotify.queue_error = errors.PremiumRequiredError("Spotify Premium required for playback control.")

        result = await request_service.review(db_session, tenant, pending.id, "approve", client=spotify)

        assert result.queued is False
        assert result.queue_error == "Spotify Premium required for playback control."
        assert result.request.status == "approved"

    async def test_repeat_decision_is_noop(self, db_session, tenant, live_event, request_service, spotify, relay):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)
        await request_service.review(db_session, tenant, pending.id, "approve", client=spotify)
        published = len(relay.published)

        result = await request_service.review(db_session, tenant, pending.id, "approve", client=spotify)

        assert result.request.status == "queued"
        assert result.queued is True
        assert len(spotify.queued) == 1
        assert len(relay.published) == published

    async def test_opposite_decision_conflicts(self, db_session, tenant, live_event, request_service, spotify):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)
        await request_service.review(db_session, tenant, pending.id, "reject")

        with pytest.raises(errors.ConflictError):
            await request_service.review(db_session, tenant, pending.id, "approve")

    async def test_unknown_decision(self, db_session, tenant, live_event, request_service, spotify):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)
        with pytest.raises(errors.ValidationError):
            await request_service.review(db_session, tenant, pending.id, "maybe")

    async def test_other_tenant_cannot_review(self, db_session, tenant, make_tenant, live_event, request_service, spotify):
        intruder = make_tenant("intruder")
        pending = await submit(request_service, db_session, tenant, live_event, spotify)

        with pytest.raises(errors.NotFoundError):
            await request_service.review(db_session, intruder, pending.id, "approve")
        with pytest.raises(errors.NotFoundError):
            await request_service.delete(db_session, intruder, pending.id)
        assert db_session.get(SongRequest, pending.id).status == "pending"


class TestPlaybackAndCleanup:
    """Test replay, reconciliation and cleanup"""

    async def test_replay_does_not_change_status(self, db_session, tenant, live_event, request_service, spotify):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)
        await request_service.review(db_session, tenant, pending.id, "approve", client=spotify)
        request_service.mark_played(db_session, tenant, pending.id)

        replayed = await request_service.enqueue_to_provider(db_session, tenant, pending.id, spotify)

        assert replayed.status == "played"
        assert len(spotify.queued) == 2

    async def test_provider_error_leaves_request_untouched(self, db_session, tenant, live_event, request_service, spotify):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)
        await request_service.review(db_session, tenant, pending.id, "approve")
        spotify.queue_error = errors.ProviderUnavailableError("Spotify did not respond in time.")

        with pytest.raises(errors.ProviderUnavailableError):
            await request_service.enqueue_to_provider(db_session, tenant, pending.id, spotify)

        refreshed = db_session.get(SongRequest, pending.id)
        assert refreshed.status == "approved"
        assert refreshed.added_to_provider_queue is False

    async def test_reconcile_marks_every_match(self, db_session, tenant, live_event, request_service, spotify, track_factory):
        first = await submit(request_service, db_session, tenant, live_event, spotify)
        await request_service.review(db_session, tenant, first.id, "approve", client=spotify)
        # A second approved copy of the same song, added directly
        second = SongRequest(
            tenant_id=tenant.id, track_uri=f"spotify:track:{SONG_A}",
            track_name="Never Gonna Give You Up", artist_name="Rick Astley", status="approved"
        )
        other = await submit(request_service, db_session, tenant, live_event, spotify, track_id=SONG_B)
        db_session.add(second)
        db_session.commit()

        marked = request_service.reconcile_against_playback(db_session, tenant, track_factory(SONG_A))

        assert {r.id for r in marked} == {first.id, second.id}
        assert all(r.status == "played" and r.played_at for r in marked)
        assert db_session.get(SongRequest, other.id).status == "pending"

    async def test_reconcile_ignores_pending(self, db_session, tenant, live_event, request_service, spotify, track_factory):
        await submit(request_service, db_session, tenant, live_event, spotify)

        assert request_service.reconcile_against_playback(db_session, tenant, track_factory(SONG_A)) == []
        assert request_service.reconcile_against_playback(db_session, tenant, None) == []

    def test_tracks_match_by_title_and_artist(self):
        song_request = SongRequest(
            track_uri="spotify:track:aaaaaaaaaaaaaaaaaaaaaa",
            track_name="Sandstorm", artist_name="Darude"
        )
        remaster = TrackInfo(id="b", uri="spotify:track:bbbbbbbbbbbbbbbbbbbbbb", name=" SANDSTORM ", artists=["darude"])
        cover = TrackInfo(id="c", uri="spotify:track:cccccccccccccccccccccc", name="Sandstorm", artists=["Someone Else"])

        assert tracks_match(song_request, remaster)
        assert not tracks_match(song_request, cover)

    async def test_cleanup_is_idempotent(self, db_session, tenant, live_event, request_service, spotify):
        played = await submit(request_service, db_session, tenant, live_event, spotify)
        await request_service.review(db_session, tenant, played.id, "approve")
        request_service.mark_played(db_session, tenant, played.id)
        recent = await submit(request_service, db_session, tenant, live_event, spotify, track_id=SONG_B)
        await request_service.review(db_session, tenant, recent.id, "approve")
        request_service.mark_played(db_session, tenant, recent.id)

        later = datetime.utcnow() + timedelta(minutes=45)
        recent_row = db_session.get(SongRequest, recent.id)
        recent_row.played_at = later - timedelta(minutes=5)
        db_session.get(SongRequest, played.id).played_at = later - timedelta(minutes=90)
        db_session.commit()

        deleted = request_service.cleanup_played(db_session, tenant, now=later)

        assert [d["id"] for d in deleted] == [played.id]
        assert request_service.cleanup_played(db_session, tenant, now=later) == []
        assert db_session.get(SongRequest, recent.id) is not None

    async def test_mark_played_requires_approval(self, db_session, tenant, live_event, request_service, spotify):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)

        with pytest.raises(errors.ConflictError):
            request_service.mark_played(db_session, tenant, pending.id)


class TestListing:

    async def test_list_with_stats(self, db_session, tenant, live_event, request_service, spotify):
        first = await submit(request_service, db_session, tenant, live_event, spotify)
        await submit(request_service, db_session, tenant, live_event, spotify, track_id=SONG_B)
        await request_service.review(db_session, tenant, first.id, "approve")

        items, total, stats = request_service.list_requests(db_session, tenant, status="pending")

        assert total == 1
        assert items[0].track_uri == f"spotify:track:{SONG_B}"
        assert stats["pending"] == 1
        assert stats["approved"] == 1
        assert stats["total"] == 2

    async def test_upcoming_in_approval_order(self, db_session, tenant, live_event, request_service, spotify):
        first = await submit(request_service, db_session, tenant, live_event, spotify)
        second = await submit(request_service, db_session, tenant, live_event, spotify, track_id=SONG_B)
        await request_service.review(db_session, tenant, second.id, "approve")
        await request_service.review(db_session, tenant, first.id, "approve")

        assert [r.id for r in request_service.upcoming(db_session, tenant)] == [second.id, first.id]

    async def test_delete_notifies_before_removal(self, db_session, tenant, live_event, request_service, spotify, relay):
        pending = await submit(request_service, db_session, tenant, live_event, spotify)

        snapshot = await request_service.delete(db_session, tenant, pending.id)

        assert snapshot["id"] == pending.id
        assert relay.actions()[-1] == "request_deleted"
        assert db_session.get(SongRequest, pending.id) is None

    async def test_purge_pending(self, db_session, tenant, live_event, request_service, spotify):
        first = await submit(request_service, db_session, tenant, live_event, spotify)
        await submit(request_service, db_session, tenant, live_event, spotify, track_id=SONG_B)
        await request_service.review(db_session, tenant, first.id, "approve")

        assert request_service.purge_pending(db_session, tenant) == 1
        assert request_service.purge_pending(db_session, tenant) == 0
