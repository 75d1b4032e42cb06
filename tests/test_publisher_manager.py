"""
Tests for the publishing orchestrator: multi-channel publish, premieres and
live-stream provisioning and lifecycle. Every YouTube call is patched.
"""
import os
import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeProcess, make_channel, make_video
from database.models import Channel, LiveStream, Token, Video
from services import publisher_manager
from services.errors import (
    AuthorizationError,
    LiveStreamingNotEnabled,
    NotFoundError,
    NotRunning,
    PlatformError,
    PreconditionError,
    PremiereTooSoon,
    VideoFileMissing,
)
from services.stream_supervisor import StreamSupervisor


def _reload(db, model, object_id):
    db.expire_all()
    return db.get(model, object_id)


class TestPublishVideo:

    @patch("publishers.youtube.upload_video")
    def test_partial_failure_publishes_to_surviving_channel(self, mock_upload, db_session, user,
                                                             channel_a, channel_b, video, upload_dir):
        def fake_upload(access_token, *args, **kwargs):
            if access_token == "access-b":
                raise PlatformError("quota exceeded", http_status=403)
            return {"id": "yt-A"}

        mock_upload.side_effect = fake_upload

        result = publisher_manager.publish_video(db_session, user.id, video.id, [channel_a.id, channel_b.id])

        assert result.published_channels == [channel_a.id]
        assert result.youtube_video_ids == {channel_a.id: "yt-A"}
        failed = [o for o in result.outcomes if not o.succeeded]
        assert failed[0].channel_id == channel_b.id
        assert "quota exceeded" in failed[0].error

        stored = _reload(db_session, Video, video.id)
        assert stored.status == "published"
        assert stored.published_channels == [channel_a.id]
        assert stored.youtube_video_id == "yt-A"
        assert stored.file_path is None
        assert not os.path.exists(os.path.join(upload_dir, "video-1.mp4"))

    @patch("publishers.youtube.upload_video")
    def test_channels_are_published_in_order(self, mock_upload, db_session, user, channel_a, channel_b, video):
        mock_upload.side_effect = [{"id": "yt-B"}, {"id": "yt-A"}]

        result = publisher_manager.publish_video(db_session, user.id, video.id, [channel_b.id, channel_a.id])

        assert [call.args[0] for call in mock_upload.call_args_list] == ["access-b", "access-a"]
        assert result.published_channels == [channel_b.id, channel_a.id]
        assert _reload(db_session, Video, video.id).youtube_video_id == "yt-B"

    @patch("publishers.youtube.upload_video")
    def test_all_channels_failing_still_finalizes_video(self, mock_upload, db_session, user, channel_a, video,
                                                        upload_dir):
        mock_upload.side_effect = PlatformError("boom")

        result = publisher_manager.publish_video(db_session, user.id, video.id, [channel_a.id])

        assert result.published_channels == []
        assert result.outcomes[0].error == "boom"
        stored = _reload(db_session, Video, video.id)
        assert stored.status == "published"
        assert stored.published_channels == []
        assert stored.youtube_video_id is None
        assert stored.file_path is None
        assert not os.path.exists(os.path.join(upload_dir, "video-1.mp4"))

    @patch("publishers.youtube.upload_video")
    def test_expired_channel_without_refresh_token_is_skipped(self, mock_upload, db_session, user, channel_a,
                                                              video, upload_dir):
        channel_b = make_channel(db_session, user, "Channel B", access_token="access-b", refresh_token=None,
                                 expires_at=datetime.utcnow() - timedelta(minutes=5))
        mock_upload.return_value = {"id": "yt-A"}

        result = publisher_manager.publish_video(db_session, user.id, video.id, [channel_a.id, channel_b.id])

        assert result.published_channels == [channel_a.id]
        skipped = [o for o in result.outcomes if o.channel_id == channel_b.id][0]
        assert not skipped.succeeded
        assert mock_upload.call_count == 1
        assert all(call.args[0] != "access-b" for call in mock_upload.call_args_list)

        stored = _reload(db_session, Video, video.id)
        assert stored.status == "published"
        assert stored.published_channels == [channel_a.id]
        assert not os.path.exists(os.path.join(upload_dir, "video-1.mp4"))

    @patch("publishers.youtube.upload_video")
    def test_missing_file_contacts_no_channel(self, mock_upload, db_session, user, channel_a, upload_dir):
        video = make_video(db_session, user, upload_dir, filename="gone.mp4", with_file=False)

        with pytest.raises(VideoFileMissing):
            publisher_manager.publish_video(db_session, user.id, video.id, [channel_a.id])
        mock_upload.assert_not_called()

    @patch("publishers.youtube.upload_video")
    def test_unowned_channel_rejects_whole_request(self, mock_upload, db_session, user, other_user,
                                                   channel_a, video):
        foreign = make_channel(db_session, other_user, "Foreign")

        with pytest.raises(AuthorizationError):
            publisher_manager.publish_video(db_session, user.id, video.id, [channel_a.id, foreign.id])

        mock_upload.assert_not_called()
        assert _reload(db_session, Video, video.id).status == "draft"

    def test_other_users_video_is_forbidden(self, db_session, other_user, channel_a, video):
        with pytest.raises(AuthorizationError):
            publisher_manager.publish_video(db_session, other_user.id, video.id, [channel_a.id])

    def test_video_already_processing(self, db_session, user, channel_a, upload_dir):
        video = make_video(db_session, user, upload_dir, status="processing")
        with pytest.raises(PreconditionError):
            publisher_manager.publish_video(db_session, user.id, video.id, [channel_a.id])

    def test_scheduled_time_in_the_past(self, db_session, user, channel_a, video):
        with pytest.raises(PreconditionError):
            publisher_manager.publish_video(db_session, user.id, video.id, [channel_a.id],
                                            scheduled_time=datetime.utcnow() - timedelta(minutes=1))

    @patch("publishers.youtube.schedule_upload")
    @patch("publishers.youtube.upload_video")
    def test_scheduled_publish_uses_scheduled_upload(self, mock_upload, mock_schedule, db_session, user,
                                                     channel_a, video):
        when = datetime.utcnow() + timedelta(days=1)
        mock_schedule.return_value = {"video_id": "yt-S", "scheduled_time": "later"}

        result = publisher_manager.publish_video(db_session, user.id, video.id, [channel_a.id],
                                                 privacy="public", scheduled_time=when)

        assert result.youtube_video_ids == {channel_a.id: "yt-S"}
        mock_upload.assert_not_called()
        assert mock_schedule.call_args.args[4] == when


class TestSchedulePremiere:

    @patch("publishers.youtube.schedule_premiere")
    def test_less_than_five_minutes_ahead_is_rejected(self, mock_premiere, db_session, user, channel_a, video):
        with pytest.raises(PremiereTooSoon):
            publisher_manager.schedule_premiere(db_session, user.id, video.id, channel_a.id,
                                                datetime.utcnow() + timedelta(minutes=2))
        mock_premiere.assert_not_called()

    @patch("publishers.youtube.schedule_premiere")
    def test_premiere_is_recorded_and_file_removed(self, mock_premiere, db_session, user, channel_a, video,
                                                   upload_dir):
        when = datetime.utcnow() + timedelta(hours=2)
        mock_premiere.return_value = {"video_id": "yt-P", "scheduled_start_time": "2030-01-01T00:00:00.000Z"}

        result = publisher_manager.schedule_premiere(db_session, user.id, video.id, channel_a.id, when)

        assert result["youtube_video_id"] == "yt-P"
        stored = _reload(db_session, Video, video.id)
        assert stored.status == "premiere_scheduled"
        assert stored.premiere_status == "scheduled"
        assert stored.premiere_channel_id == channel_a.id
        assert stored.file_path is None
        assert not os.path.exists(os.path.join(upload_dir, "video-1.mp4"))

    @patch("publishers.youtube.schedule_premiere")
    def test_unowned_channel(self, mock_premiere, db_session, user, other_user, video):
        foreign = make_channel(db_session, other_user, "Foreign")
        with pytest.raises(AuthorizationError):
            publisher_manager.schedule_premiere(db_session, user.id, video.id, foreign.id,
                                                datetime.utcnow() + timedelta(hours=1))
        mock_premiere.assert_not_called()


BROADCAST = {"id": "broadcast-1"}
INGESTION = {"id": "ingest-1", "ingestion_address": "rtmp://a.rtmp.youtube.com/live2",
             "stream_name": "abcd-key", "raw": {}}


class TestCreateLiveStream:

    @patch("publishers.youtube.bind_broadcast_to_stream")
    @patch("publishers.youtube.create_ingestion_stream")
    @patch("publishers.youtube.create_broadcast")
    def test_provisions_in_order(self, mock_broadcast, mock_ingestion, mock_bind, db_session, user, channel_a):
        calls = []
        mock_broadcast.side_effect = lambda *a, **k: calls.append("broadcast") or BROADCAST
        mock_ingestion.side_effect = lambda *a, **k: calls.append("ingestion") or INGESTION
        mock_bind.side_effect = lambda *a, **k: calls.append("bind") or {}

        stream = publisher_manager.create_live_stream(
            db_session, user.id, channel_a.id, "Show", "Desc", datetime.utcnow() + timedelta(hours=1)
        )

        assert calls == ["broadcast", "ingestion", "bind"]
        mock_ingestion.assert_called_once_with("access-a", "Show - Stream")
        mock_bind.assert_called_once_with("access-a", "broadcast-1", "ingest-1")
        assert stream.status == "created"
        assert stream.rtmp_url == "rtmp://a.rtmp.youtube.com/live2/abcd-key"
        assert stream.youtube_broadcast_id == "broadcast-1"

    @patch("publishers.youtube.upload_thumbnail")
    @patch("publishers.youtube.bind_broadcast_to_stream")
    @patch("publishers.youtube.create_ingestion_stream", return_value=INGESTION)
    @patch("publishers.youtube.create_broadcast", return_value=BROADCAST)
    def test_thumbnail_is_set_on_broadcast(self, mock_broadcast, mock_ingestion, mock_bind, mock_thumbnail,
                                           db_session, user, channel_a, upload_dir):
        stream = publisher_manager.create_live_stream(
            db_session, user.id, channel_a.id, "Show", "", datetime.utcnow() + timedelta(hours=1),
            thumbnail_path="thumb-1.png",
        )

        mock_thumbnail.assert_called_once_with("access-a", "broadcast-1", os.path.join(upload_dir, "thumb-1.png"))
        assert stream.thumbnail_path == "thumb-1.png"

    @patch("publishers.youtube.upload_thumbnail")
    @patch("publishers.youtube.bind_broadcast_to_stream")
    @patch("publishers.youtube.create_ingestion_stream", return_value=INGESTION)
    @patch("publishers.youtube.create_broadcast", return_value=BROADCAST)
    def test_rejected_thumbnail_keeps_stream(self, mock_broadcast, mock_ingestion, mock_bind, mock_thumbnail,
                                             db_session, user, channel_a, upload_dir):
        mock_thumbnail.side_effect = PlatformError("invalid image", http_status=400)

        stream = publisher_manager.create_live_stream(
            db_session, user.id, channel_a.id, "Show", "", datetime.utcnow() + timedelta(hours=1),
            thumbnail_path="thumb-1.png",
        )

        assert stream.status == "created"
        assert db_session.query(LiveStream).count() == 1

    @patch("publishers.youtube.delete_broadcast")
    @patch("publishers.youtube.bind_broadcast_to_stream")
    @patch("publishers.youtube.create_ingestion_stream")
    @patch("publishers.youtube.create_broadcast")
    def test_failed_bind_discards_broadcast(self, mock_broadcast, mock_ingestion, mock_bind, mock_delete,
                                            db_session, user, channel_a):
        mock_broadcast.return_value = BROADCAST
        mock_ingestion.return_value = INGESTION
        mock_bind.side_effect = PlatformError("bind failed")

        with pytest.raises(PlatformError):
            publisher_manager.create_live_stream(db_session, user.id, channel_a.id, "Show", "",
                                                 datetime.utcnow() + timedelta(hours=1))

        mock_delete.assert_called_once_with("access-a", "broadcast-1")
        assert db_session.query(LiveStream).count() == 0

    @patch("publishers.youtube.create_ingestion_stream")
    @patch("publishers.youtube.create_broadcast")
    def test_live_streaming_not_enabled_gets_guidance(self, mock_broadcast, mock_ingestion, db_session, user,
                                                      channel_a):
        mock_broadcast.side_effect = LiveStreamingNotEnabled("liveStreamingNotEnabled", http_status=403)

        with pytest.raises(LiveStreamingNotEnabled) as exc_info:
            publisher_manager.create_live_stream(db_session, user.id, channel_a.id, "Show", "",
                                                 datetime.utcnow() + timedelta(hours=1))

        assert "YouTube Studio" in exc_info.value.message
        mock_ingestion.assert_not_called()

    def test_video_stream_requires_video(self, db_session, user, channel_a):
        with pytest.raises(PreconditionError):
            publisher_manager.create_live_stream(db_session, user.id, channel_a.id, "Show", "",
                                                 datetime.utcnow(), stream_type="video")


def _video_stream(db, user, channel, video, status="created"):
    stream = LiveStream(
        user_id=user.id, channel_id=channel.id, video_id=video.id, title="Loop",
        stream_type="video", stream_url="rtmp://a.rtmp.youtube.com/live2", stream_key="key",
        youtube_broadcast_id="broadcast-1", status=status,
    )
    db.add(stream)
    db.commit()
    return stream


class TestLiveStreamLifecycle:

    def test_start_marks_stream_live(self, db_session, user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video)
        supervisor = MagicMock()
        supervisor.is_active.return_value = True

        result = publisher_manager.start_live_stream(db_session, supervisor, user.id, stream.id, loop=False)

        assert result == {"stream_id": stream.id, "loop": False}
        supervisor.start.assert_called_once_with(
            stream.id, "video-1.mp4", "rtmp://a.rtmp.youtube.com/live2/key", False
        )
        stored = _reload(db_session, LiveStream, stream.id)
        assert stored.status == "live"
        assert stored.actual_start_time is not None

    def test_process_gone_before_commit_marks_complete(self, db_session, user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video)
        supervisor = MagicMock()
        supervisor.is_active.return_value = False

        publisher_manager.start_live_stream(db_session, supervisor, user.id, stream.id)

        assert _reload(db_session, LiveStream, stream.id).status == "complete"

    def test_start_without_video_file(self, db_session, user, channel_a, upload_dir):
        video = make_video(db_session, user, upload_dir, filename=None, with_file=False)
        stream = _video_stream(db_session, user, channel_a, video)
        supervisor = MagicMock()

        with pytest.raises(VideoFileMissing):
            publisher_manager.start_live_stream(db_session, supervisor, user.id, stream.id)
        supervisor.start.assert_not_called()

    def test_rtmp_stream_cannot_be_started(self, db_session, user, channel_a):
        stream = LiveStream(user_id=user.id, channel_id=channel_a.id, title="Live", stream_type="rtmp")
        db_session.add(stream)
        db_session.commit()

        with pytest.raises(PreconditionError):
            publisher_manager.start_live_stream(db_session, MagicMock(), user.id, stream.id)

    def test_stop_when_not_running(self, db_session, user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video)
        supervisor = MagicMock()
        supervisor.is_active.return_value = False

        with pytest.raises(NotRunning):
            publisher_manager.stop_live_stream(db_session, supervisor, user.id, stream.id)
        supervisor.stop.assert_not_called()

    def test_stop_marks_complete(self, db_session, user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video, status="live")
        supervisor = MagicMock()
        supervisor.is_active.return_value = True

        publisher_manager.stop_live_stream(db_session, supervisor, user.id, stream.id)

        supervisor.stop.assert_called_once_with(stream.id)
        stored = _reload(db_session, LiveStream, stream.id)
        assert stored.status == "complete"
        assert stored.actual_end_time is not None

    def test_status_of_another_users_stream(self, db_session, user, other_user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video)
        with pytest.raises(AuthorizationError):
            publisher_manager.get_stream_status(db_session, MagicMock(), other_user.id, stream.id)

    @patch("publishers.youtube.delete_broadcast")
    def test_delete_tolerates_broadcast_already_gone(self, mock_delete, db_session, user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video)
        mock_delete.side_effect = PlatformError("not found", http_status=404)
        supervisor = MagicMock()
        supervisor.is_active.return_value = False

        publisher_manager.delete_live_stream(db_session, supervisor, user.id, stream.id)

        assert db_session.query(LiveStream).count() == 0

    @patch("publishers.youtube.delete_broadcast")
    def test_delete_keeps_row_when_youtube_refuses(self, mock_delete, db_session, user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video)
        mock_delete.side_effect = PlatformError("forbidden", http_status=403)
        supervisor = MagicMock()
        supervisor.is_active.return_value = False

        with pytest.raises(PlatformError) as exc_info:
            publisher_manager.delete_live_stream(db_session, supervisor, user.id, stream.id)

        assert exc_info.value.message.startswith("Failed to delete YouTube broadcast")
        assert db_session.query(LiveStream).count() == 1

    @patch("publishers.youtube.transition_broadcast")
    def test_transition_to_complete(self, mock_transition, db_session, user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video, status="live")

        updated = publisher_manager.transition_live_stream(db_session, user.id, stream.id, "complete")

        mock_transition.assert_called_once_with("access-a", "broadcast-1", "complete")
        assert updated.status == "complete"
        assert updated.actual_end_time is not None


class TestStreamEndHandler:

    def test_crashed_stream_is_marked_complete(self, db_session, session_factory, user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video, status="live")
        handler = publisher_manager.make_stream_end_handler(session_factory)

        handler(stream.id, 1)

        stored = _reload(db_session, LiveStream, stream.id)
        assert stored.status == "complete"
        assert stored.actual_end_time is not None

    def test_existing_end_time_is_kept(self, db_session, session_factory, user, channel_a, video):
        stream = _video_stream(db_session, user, channel_a, video, status="complete")
        ended = datetime(2030, 1, 1, 12, 0)
        stream.actual_end_time = ended
        db_session.commit()

        publisher_manager.make_stream_end_handler(session_factory)(stream.id, 0)

        assert _reload(db_session, LiveStream, stream.id).actual_end_time == ended

    def test_unknown_stream_is_ignored(self, session_factory):
        publisher_manager.make_stream_end_handler(session_factory)("missing", 0)

    def test_launch_failure_completes_never_started_stream(self, db_session, session_factory, user, channel_a,
                                                           video):
        stream = _video_stream(db_session, user, channel_a, video, status="created")

        publisher_manager.make_stream_end_handler(session_factory)(stream.id, None)

        stored = _reload(db_session, LiveStream, stream.id)
        assert stored.status == "complete"
        assert stored.actual_end_time is not None

    @patch("services.stream_supervisor.subprocess.Popen")
    def test_crash_under_supervisor_leaves_nothing_to_stop(self, mock_popen, db_session, session_factory, user,
                                                           channel_a, video, upload_dir):
        process = FakeProcess()
        mock_popen.return_value = process
        ended = threading.Event()
        handle_end = publisher_manager.make_stream_end_handler(session_factory)

        def on_exit(stream_id, code):
            handle_end(stream_id, code)
            ended.set()

        supervisor = StreamSupervisor(upload_dir, on_exit=on_exit)
        stream = _video_stream(db_session, user, channel_a, video)
        publisher_manager.start_live_stream(db_session, supervisor, user.id, stream.id)
        assert _reload(db_session, LiveStream, stream.id).status == "live"

        process.exit(1)
        assert ended.wait(3)

        with pytest.raises(NotRunning):
            publisher_manager.stop_live_stream(db_session, supervisor, user.id, stream.id)
        stored = _reload(db_session, LiveStream, stream.id)
        assert stored.status == "complete"
        assert stored.actual_end_time is not None


class TestDisconnectChannel:

    @patch("publishers.youtube.revoke_token")
    @patch("publishers.youtube.delete_broadcast")
    @patch("services.stream_supervisor.subprocess.Popen")
    def test_running_stream_is_stopped_and_broadcast_removed_first(self, mock_popen, mock_delete, mock_revoke,
                                                                   db_session, user, channel_a, video, upload_dir):
        process = FakeProcess()
        mock_popen.return_value = process
        calls = []
        mock_delete.side_effect = lambda *a: calls.append("delete_broadcast")
        mock_revoke.side_effect = lambda *a: calls.append("revoke")
        supervisor = StreamSupervisor(upload_dir)
        stream_id = _video_stream(db_session, user, channel_a, video).id
        publisher_manager.start_live_stream(db_session, supervisor, user.id, stream_id)

        result = publisher_manager.disconnect_channel(db_session, supervisor, user.id, channel_a.id)

        assert result == {"message": "Channel disconnected successfully"}
        assert process.terminated
        assert not supervisor.is_active(stream_id)
        mock_delete.assert_called_once_with("access-a", "broadcast-1")
        assert calls == ["delete_broadcast", "revoke"]
        assert db_session.query(LiveStream).count() == 0
        assert db_session.query(Channel).count() == 0
        assert db_session.query(Token).count() == 0

    @patch("publishers.youtube.revoke_token")
    @patch("publishers.youtube.delete_broadcast")
    def test_broadcast_cleanup_failure_does_not_block(self, mock_delete, mock_revoke, db_session, user,
                                                      channel_a, video):
        _video_stream(db_session, user, channel_a, video, status="complete")
        mock_delete.side_effect = PlatformError("forbidden", http_status=403)
        supervisor = MagicMock()
        supervisor.is_active.return_value = False

        publisher_manager.disconnect_channel(db_session, supervisor, user.id, channel_a.id)

        supervisor.stop.assert_not_called()
        mock_revoke.assert_called_once_with("refresh-a")
        assert db_session.query(Channel).count() == 0

    def test_other_users_channel(self, db_session, other_user, channel_a):
        with pytest.raises(NotFoundError):
            publisher_manager.disconnect_channel(db_session, MagicMock(), other_user.id, channel_a.id)
        assert db_session.query(Channel).count() == 1


class TestDeleteVideo:

    def test_removes_row_and_file(self, db_session, user, video, upload_dir):
        publisher_manager.delete_video(db_session, user.id, video.id)

        assert db_session.query(Video).count() == 0
        assert not os.path.exists(os.path.join(upload_dir, "video-1.mp4"))
