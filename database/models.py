# database/models.py
import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Boolean, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime

from database.session import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB, "postgresql")


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships to navigate in Python (e.g., user.channels)
    credentials = relationship("YoutubeCredentials", back_populates="user", uselist=False, cascade="all, delete")
    channels = relationship("Channel", back_populates="user", cascade="all, delete")
    videos = relationship("Video", back_populates="user", cascade="all, delete")
    live_streams = relationship("LiveStream", back_populates="user", cascade="all, delete")


class YoutubeCredentials(Base):
    """OAuth client id/secret the user registered in Google Cloud Console."""
    __tablename__ = "youtube_credentials"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    client_id = Column(Text, nullable=False)
    client_secret = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="credentials")


class Channel(Base):
    __tablename__ = "youtube_channels"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    channel_id = Column(String(64), nullable=False)     # YouTube's channel id (UC...)
    channel_title = Column(String(255), nullable=False)
    channel_description = Column(Text, nullable=True)
    thumbnail_url = Column(String(512), nullable=True)
    subscriber_count = Column(String(32), nullable=True)
    video_count = Column(String(32), nullable=True)
    is_connected = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="channels")
    token = relationship("Token", back_populates="channel", uselist=False, cascade="all, delete-orphan")
    live_streams = relationship("LiveStream", back_populates="channel", cascade="all, delete")


class Token(Base):
    __tablename__ = "youtube_tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    channel_id = Column(String(36), ForeignKey("youtube_channels.id", ondelete="CASCADE"), unique=True, nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    scope = Column(Text, nullable=True)

    channel = relationship("Channel", back_populates="token")


class Video(Base):
    __tablename__ = "videos"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    tags = Column(JSONType, nullable=True)
    file_path = Column(String(512), nullable=True)       # Filename under UPLOAD_DIR, cleared after publish
    thumbnail_path = Column(String(512), nullable=True)
    file_size = Column(String(32), nullable=True)
    status = Column(String(32), default="draft", nullable=False, index=True)  # draft, processing, published, failed, premiere_scheduled

    published_channels = Column(JSONType, nullable=True)
    youtube_video_id = Column(String(64), nullable=True)  # First id obtained, kept for display
    youtube_video_ids = Column(JSONType, nullable=True)   # {channel_id: youtube_video_id}

    premiere_scheduled_time = Column(DateTime, nullable=True)
    premiere_channel_id = Column(String(36), nullable=True)
    youtube_broadcast_id = Column(String(64), nullable=True)
    premiere_status = Column(String(32), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="videos")


class LiveStream(Base):
    __tablename__ = "live_streams"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    channel_id = Column(String(36), ForeignKey("youtube_channels.id", ondelete="CASCADE"), nullable=False)
    video_id = Column(String(36), ForeignKey("videos.id", ondelete="SET NULL"), nullable=True)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    thumbnail_path = Column(String(512), nullable=True)
    tags = Column(JSONType, nullable=True)
    stream_type = Column(String(16), default="rtmp", nullable=False)  # rtmp, video

    scheduled_start_time = Column(DateTime, nullable=True)
    actual_start_time = Column(DateTime, nullable=True)
    actual_end_time = Column(DateTime, nullable=True)

    youtube_broadcast_id = Column(String(64), nullable=True)
    youtube_stream_id = Column(String(64), nullable=True)
    stream_key = Column(Text, nullable=True)
    stream_url = Column(Text, nullable=True)
    rtmp_url = Column(Text, nullable=True)

    status = Column(String(16), default="created", nullable=False, index=True)  # created, testing, live, complete
    privacy_status = Column(String(16), default="private", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="live_streams")
    channel = relationship("Channel", back_populates="live_streams")
    video = relationship("Video")


class OAuthState(Base):
    """One-time state for the channel-connect flow (CSRF + PKCE verifier)."""
    __tablename__ = "oauth_states"

    state = Column(String(128), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    code_verifier = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
