# database/crud.py
"""
Small query helpers over the ORM models. Callers own the session and commit.
"""
from typing import List, Optional
from sqlalchemy.orm import Session

from database.models import Channel, LiveStream, Token, Video, YoutubeCredentials


def get_credentials(db: Session, user_id: str) -> Optional[YoutubeCredentials]:
    return db.query(YoutubeCredentials).filter_by(user_id=user_id).first()


def upsert_credentials(db: Session, user_id: str, client_id: str, client_secret: str) -> YoutubeCredentials:
    creds = get_credentials(db, user_id)
    if creds:
        creds.client_id = client_id
        creds.client_secret = client_secret
    else:
        creds = YoutubeCredentials(user_id=user_id, client_id=client_id, client_secret=client_secret)
        db.add(creds)
    db.commit()
    db.refresh(creds)
    return creds


def get_channels(db: Session, user_id: str) -> List[Channel]:
    return db.query(Channel).filter_by(user_id=user_id).order_by(Channel.created_at).all()


def get_channel(db: Session, channel_id: str) -> Optional[Channel]:
    return db.query(Channel).filter(Channel.id == channel_id).first()


def get_user_channel(db: Session, user_id: str, channel_id: str) -> Optional[Channel]:
    return db.query(Channel).filter_by(user_id=user_id, id=channel_id).first()


def get_token(db: Session, channel_id: str) -> Optional[Token]:
    return db.query(Token).filter_by(channel_id=channel_id).first()


def get_videos(db: Session, user_id: str) -> List[Video]:
    return db.query(Video).filter_by(user_id=user_id).order_by(Video.created_at.desc()).all()


def get_video(db: Session, video_id: str) -> Optional[Video]:
    return db.query(Video).filter(Video.id == video_id).first()


def get_live_streams(db: Session, user_id: str) -> List[LiveStream]:
    return db.query(LiveStream).filter_by(user_id=user_id).order_by(LiveStream.created_at.desc()).all()


def get_live_stream(db: Session, stream_id: str) -> Optional[LiveStream]:
    return db.query(LiveStream).filter(LiveStream.id == stream_id).first()
