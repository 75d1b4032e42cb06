# services/publisher_manager.py
import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from sqlalchemy.orm import Session

from database import crud
from database.models import LiveStream, Video
from publishers import youtube
from services.errors import (
    AuthorizationError,
    LiveStreamingNotEnabled,
    NotFoundError,
    NotRunning,
    PlatformError,
    PreconditionError,
    PremiereTooSoon,
    PublisherError,
    VideoFileMissing,
)
from services.stream_supervisor import StreamSupervisor
from services import token_manager
from services.token_manager import get_valid_access_token
from storage.uploads import delete_uploaded_file, get_upload_path

logger = logging.getLogger("Publisher-Manager")

PREMIERE_MIN_LEAD = timedelta(minutes=5)
STREAM_TYPES = ("rtmp", "video")


@dataclass
class ChannelOutcome:
    channel_id: str
    succeeded: bool
    youtube_video_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PublishResult:
    video_id: str
    outcomes: List[ChannelOutcome] = field(default_factory=list)

    @property
    def published_channels(self) -> List[str]:
        return [o.channel_id for o in self.outcomes if o.succeeded]

    @property
    def youtube_video_ids(self) -> Dict[str, str]:
        return {o.channel_id: o.youtube_video_id for o in self.outcomes if o.succeeded}


# --- HELPERS ---

def to_utc_naive(value: datetime) -> datetime:
    """The database stores naive UTC; aware datetimes are converted."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _get_owned_video(db: Session, user_id: str, video_id: str) -> Video:
    video = crud.get_video(db, video_id)
    if not video:
        raise NotFoundError("Video not found")
    if video.user_id != user_id:
        raise AuthorizationError("Not authorized to use this video")
    return video


def _get_owned_stream(db: Session, user_id: str, stream_id: str) -> LiveStream:
    stream = crud.get_live_stream(db, stream_id)
    if not stream:
        raise NotFoundError("Live stream not found")
    if stream.user_id != user_id:
        raise AuthorizationError("Not authorized to access this live stream")
    return stream


def _require_video_file(video: Video) -> str:
    """Returns the absolute path of the video's file, which must still be on disk."""
    if not video.file_path:
        raise VideoFileMissing()
    path = get_upload_path(video.file_path)
    if not os.path.exists(path):
        raise VideoFileMissing()
    return path


def _thumbnail_path(video: Video) -> Optional[str]:
    return get_upload_path(video.thumbnail_path) if video.thumbnail_path else None


# --- A. MULTI-CHANNEL PUBLISH ---

def _publish_to_channel(db: Session, video: Video, channel_id: str, video_path: str,
                        privacy: str, scheduled_time: Optional[datetime]) -> ChannelOutcome:
    try:
        access_token = get_valid_access_token(db, channel_id)

        if scheduled_time:
            result = youtube.schedule_upload(
                access_token, video_path, video.title, video.description or "",
                scheduled_time, privacy=privacy, tags=video.tags or None,
                thumbnail_path=_thumbnail_path(video),
            )
            youtube_video_id = result["video_id"]
        else:
            response = youtube.upload_video(
                access_token, video_path, video.title, video.description or "",
                privacy=privacy, tags=video.tags or None,
                thumbnail_path=_thumbnail_path(video),
            )
            youtube_video_id = response["id"]

        logger.info(f"[Manager] ✅ Video {video.id} published to channel {channel_id} as {youtube_video_id}")
        return ChannelOutcome(channel_id=channel_id, succeeded=True, youtube_video_id=youtube_video_id)

    except Exception as e:
        db.rollback()
        logger.error(f"[Manager] ❌ Error publishing video {video.id} to channel {channel_id}: {e}")
        return ChannelOutcome(channel_id=channel_id, succeeded=False, error=str(e))


def publish_video(db: Session, user_id: str, video_id: str, channel_ids: List[str],
                  privacy: str = "private", scheduled_time: datetime = None) -> PublishResult:
    """
    Uploads one video to several channels, one channel at a time.

    Ownership of the video and of every channel is checked before any channel is
    contacted. A failing channel is logged and skipped. Once every channel has
    been tried the video is marked published with the channels that succeeded
    (possibly none) and its local file is removed. Callers decide how to report
    an empty result.
    """
    video = _get_owned_video(db, user_id, video_id)
    video_path = _require_video_file(video)

    if video.status == "processing":
        raise PreconditionError("Video is already being published")

    if not channel_ids:
        raise PreconditionError("At least one channel is required")

    owned_channel_ids = {c.id for c in crud.get_channels(db, user_id)}
    for channel_id in channel_ids:
        if channel_id not in owned_channel_ids:
            raise AuthorizationError(f"Channel {channel_id} not found or not authorized")

    if scheduled_time is not None:
        scheduled_time = to_utc_naive(scheduled_time)
        if scheduled_time <= datetime.utcnow():
            raise PreconditionError("Scheduled time must be in the future")

    logger.info(f"[Manager] Starting publish of video {video_id} to {len(channel_ids)} channel(s)")

    # Mark as processing to avoid duplicate runs
    video.status = "processing"
    db.commit()

    result = PublishResult(video_id=video_id)
    for channel_id in channel_ids:
        result.outcomes.append(
            _publish_to_channel(db, video, channel_id, video_path, privacy, scheduled_time)
        )

    # Every channel has been tried: the video leaves the library either way
    ids = result.youtube_video_ids
    video.status = "published"
    video.published_channels = result.published_channels
    video.youtube_video_ids = ids
    video.youtube_video_id = ids[result.published_channels[0]] if result.published_channels else None
    stored_file = video.file_path
    video.file_path = None
    db.commit()

    if result.published_channels:
        logger.info(f"[Manager] Publish finished. Channels: {result.published_channels}")
    else:
        logger.error(f"[Manager] Video {video_id} could not be published to any channel")

    delete_uploaded_file(stored_file)
    return result


# --- B. PREMIERE ---

def schedule_premiere(db: Session, user_id: str, video_id: str, channel_id: str,
                      scheduled_time: datetime) -> dict:
    scheduled_time = to_utc_naive(scheduled_time)
    now = datetime.utcnow()
    if scheduled_time <= now:
        raise PremiereTooSoon("Scheduled time must be in the future")
    if scheduled_time < now + PREMIERE_MIN_LEAD:
        raise PremiereTooSoon("Scheduled time must be at least 5 minutes in the future")

    video = _get_owned_video(db, user_id, video_id)
    video_path = _require_video_file(video)

    channel = crud.get_user_channel(db, user_id, channel_id)
    if not channel:
        raise AuthorizationError("Channel not found or not authorized")

    access_token = get_valid_access_token(db, channel.id)

    result = youtube.schedule_premiere(
        access_token, video_path, video.title, video.description or "",
        scheduled_time, tags=video.tags or None, thumbnail_path=_thumbnail_path(video),
    )

    video.premiere_scheduled_time = scheduled_time
    video.premiere_channel_id = channel.id
    video.youtube_video_id = result["video_id"]
    video.premiere_status = "scheduled"
    video.status = "premiere_scheduled"
    stored_file = video.file_path
    video.file_path = None
    db.commit()
    logger.info(f"[Manager] Premiere scheduled for video {video_id} at {result['scheduled_start_time']}")

    # Only now that the premiere exists on YouTube
    delete_uploaded_file(stored_file)

    return {"youtube_video_id": result["video_id"], "scheduled_time": result["scheduled_start_time"]}


# --- C. LIVE STREAM PROVISIONING ---

def _discard_broadcast(access_token: str, broadcast_id: str):
    try:
        youtube.delete_broadcast(access_token, broadcast_id)
        logger.info(f"[Manager] Discarded half-provisioned broadcast {broadcast_id}")
    except Exception as e:
        logger.error(f"[Manager] Broadcast {broadcast_id} left on YouTube after failed provisioning: {e}")


def create_live_stream(db: Session, user_id: str, channel_id: str, title: str, description: str,
                       scheduled_start_time: datetime, privacy: str = "private", stream_type: str = "rtmp",
                       video_id: str = None, tags: List[str] = None, thumbnail_path: str = None) -> LiveStream:
    if stream_type not in STREAM_TYPES:
        raise PreconditionError(f"Unsupported stream type: {stream_type}")

    channel = crud.get_user_channel(db, user_id, channel_id)
    if not channel:
        raise AuthorizationError("Channel not found or not authorized")

    if stream_type == "video":
        if not video_id:
            raise PreconditionError("videoId is required when streamType is 'video'")
        _get_owned_video(db, user_id, video_id)

    access_token = get_valid_access_token(db, channel.id)
    scheduled_start_time = to_utc_naive(scheduled_start_time)

    try:
        broadcast = youtube.create_broadcast(access_token, title, description, scheduled_start_time, privacy)
        try:
            ingestion = youtube.create_ingestion_stream(access_token, f"{title} - Stream")
            youtube.bind_broadcast_to_stream(access_token, broadcast["id"], ingestion["id"])
        except Exception:
            _discard_broadcast(access_token, broadcast["id"])
            raise
    except LiveStreamingNotEnabled as e:
        raise LiveStreamingNotEnabled(LiveStreamingNotEnabled.USER_MESSAGE, http_status=e.http_status, reason=e.reason) from e

    # Cosmetic: a rejected thumbnail never undoes a provisioned broadcast
    if thumbnail_path:
        try:
            youtube.upload_thumbnail(access_token, broadcast["id"], get_upload_path(thumbnail_path))
        except PublisherError as e:
            logger.warning(f"[Manager] Thumbnail not applied to broadcast {broadcast['id']}: {e}")

    stream_key = ingestion.get("stream_name")
    stream_url = ingestion.get("ingestion_address")

    live_stream = LiveStream(
        user_id=user_id,
        channel_id=channel.id,
        video_id=video_id if stream_type == "video" else None,
        title=title,
        description=description,
        thumbnail_path=thumbnail_path,
        tags=tags or None,
        stream_type=stream_type,
        scheduled_start_time=scheduled_start_time,
        youtube_broadcast_id=broadcast["id"],
        youtube_stream_id=ingestion["id"],
        stream_key=stream_key,
        stream_url=stream_url,
        rtmp_url=f"{stream_url}/{stream_key}" if stream_url and stream_key else None,
        status="created",
        privacy_status=privacy,
    )
    db.add(live_stream)
    db.commit()
    db.refresh(live_stream)
    logger.info(f"[Manager] Live stream {live_stream.id} provisioned (broadcast {broadcast['id']})")
    return live_stream


# --- D. LIVE STREAM LIFECYCLE ---

def start_live_stream(db: Session, supervisor: StreamSupervisor, user_id: str, stream_id: str,
                      loop: bool = True) -> dict:
    stream = _get_owned_stream(db, user_id, stream_id)

    if stream.stream_type != "video":
        raise PreconditionError("This operation is only for video-based streams")
    if not stream.video_id:
        raise PreconditionError("No video associated with this stream")

    video = crud.get_video(db, stream.video_id)
    if not video:
        raise NotFoundError("Associated video not found")
    if not video.file_path:
        raise VideoFileMissing()

    if not stream.stream_url or not stream.stream_key:
        raise PreconditionError("Stream URL and key not available for this stream")

    rtmp_url = f"{stream.stream_url}/{stream.stream_key}"
    supervisor.start(stream.id, video.file_path, rtmp_url, loop)

    stream.status = "live"
    stream.actual_start_time = datetime.utcnow()
    db.commit()

    # The process may already have exited before the status above was written
    if not supervisor.is_active(stream.id):
        stream.status = "complete"
        stream.actual_end_time = datetime.utcnow()
        db.commit()

    return {"stream_id": stream.id, "loop": loop}


def stop_live_stream(db: Session, supervisor: StreamSupervisor, user_id: str, stream_id: str) -> dict:
    stream = _get_owned_stream(db, user_id, stream_id)

    if not supervisor.is_active(stream.id):
        raise NotRunning()

    supervisor.stop(stream.id)

    stream.status = "complete"
    stream.actual_end_time = datetime.utcnow()
    db.commit()
    return {"message": "Video stream stopped successfully"}


def delete_live_stream(db: Session, supervisor: StreamSupervisor, user_id: str, stream_id: str) -> dict:
    stream = _get_owned_stream(db, user_id, stream_id)

    if supervisor.is_active(stream.id):
        try:
            supervisor.stop(stream.id)
        except NotRunning:
            logger.debug(f"[Manager] Stream {stream.id} exited while being deleted")

    if stream.youtube_broadcast_id and crud.get_token(db, stream.channel_id):
        access_token = get_valid_access_token(db, stream.channel_id)
        try:
            youtube.delete_broadcast(access_token, stream.youtube_broadcast_id)
        except PlatformError as e:
            if e.http_status != 404:
                raise PlatformError(f"Failed to delete YouTube broadcast: {e.message}", http_status=e.http_status)
            logger.warning(f"[Manager] Broadcast {stream.youtube_broadcast_id} already gone on YouTube")

    thumbnail = stream.thumbnail_path
    db.delete(stream)
    db.commit()
    logger.info(f"[Manager] Live stream {stream_id} deleted")
    if thumbnail:
        delete_uploaded_file(thumbnail)
    return {"message": "Live stream deleted successfully"}


def get_live_stream(db: Session, user_id: str, stream_id: str) -> LiveStream:
    return _get_owned_stream(db, user_id, stream_id)


def get_stream_status(db: Session, supervisor: StreamSupervisor, user_id: str, stream_id: str) -> dict:
    stream = _get_owned_stream(db, user_id, stream_id)
    info = supervisor.get_info(stream.id)

    return {
        "stream_id": stream.id,
        "is_active": info is not None,
        "status": stream.status,
        "active_info": {"start_time": info.start_time, "video_path": info.video_path} if info else None,
    }


def transition_live_stream(db: Session, user_id: str, stream_id: str, status: str) -> LiveStream:
    """Moves the YouTube broadcast to testing, live or complete and mirrors it locally."""
    stream = _get_owned_stream(db, user_id, stream_id)
    if not stream.youtube_broadcast_id:
        raise PreconditionError("This live stream has no YouTube broadcast")

    access_token = get_valid_access_token(db, stream.channel_id)
    youtube.transition_broadcast(access_token, stream.youtube_broadcast_id, status)

    stream.status = status
    if status == "live":
        stream.actual_start_time = datetime.utcnow()
    elif status == "complete":
        stream.actual_end_time = datetime.utcnow()
    db.commit()
    db.refresh(stream)
    return stream


def make_stream_end_handler(session_factory):
    """
    Builds the supervisor's exit callback. It runs on the watcher thread, so it
    opens its own session. This is the only path that corrects a stream whose
    ffmpeg process crashed.
    """

    def handle_stream_end(stream_id: str, code: Optional[int]):
        db = session_factory()
        try:
            stream = crud.get_live_stream(db, stream_id)
            if not stream:
                logger.warning(f"[DB] Stream {stream_id} ended but no longer exists")
                return
            if stream.status != "complete":
                stream.status = "complete"
                stream.actual_end_time = datetime.utcnow()
                db.commit()
            logger.info(f"[DB] Updated stream {stream_id} status to complete (exit code {code})")
        except Exception as e:
            db.rollback()
            logger.error(f"[DB] Failed to update stream {stream_id} status: {e}")
        finally:
            db.close()

    return handle_stream_end


# --- CHANNELS ---

def disconnect_channel(db: Session, supervisor: StreamSupervisor, user_id: str, channel_id: str) -> dict:
    """
    Tears down everything live on the channel, then revokes its token and deletes
    it. The channel's live-stream rows go with it, so their processes are stopped
    and their broadcasts removed first. Broadcast cleanup is best effort: a
    disconnect is never blocked by YouTube.
    """
    channel = crud.get_user_channel(db, user_id, channel_id)
    if not channel:
        raise NotFoundError("Channel not found")

    access_token = None
    for stream in list(channel.live_streams):
        if supervisor.is_active(stream.id):
            try:
                supervisor.stop(stream.id)
            except NotRunning:
                logger.debug(f"[Manager] Stream {stream.id} exited while its channel was disconnected")

        if not stream.youtube_broadcast_id:
            continue
        try:
            access_token = access_token or get_valid_access_token(db, channel.id)
            youtube.delete_broadcast(access_token, stream.youtube_broadcast_id)
        except PublisherError as e:
            db.rollback()
            logger.warning(f"[Manager] Broadcast {stream.youtube_broadcast_id} not removed on disconnect: {e}")

    token_manager.disconnect_channel(db, user_id, channel_id)
    return {"message": "Channel disconnected successfully"}


# --- VIDEO LIBRARY ---

def delete_video(db: Session, user_id: str, video_id: str) -> dict:
    video = _get_owned_video(db, user_id, video_id)

    if video.file_path and os.path.exists(get_upload_path(video.file_path)):
        delete_uploaded_file(video.file_path)
    if video.thumbnail_path and os.path.exists(get_upload_path(video.thumbnail_path)):
        delete_uploaded_file(video.thumbnail_path)

    db.delete(video)
    db.commit()
    return {"message": "Video deleted successfully"}
