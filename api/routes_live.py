# api/routes_live.py
import logging
from datetime import datetime
from typing import List, Literal, Optional
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.deps import get_current_user_id, get_supervisor, parse_tags_field
from database import crud
from database.session import get_db
from services import publisher_manager
from services.errors import PublisherError
from services.stream_supervisor import StreamSupervisor
from storage.uploads import ALLOWED_IMAGE_TYPES, delete_uploaded_file, save_upload

logger = logging.getLogger("Live-API")

PRIVACY_STATUSES = ("private", "public", "unlisted")


# --- 1. PYDANTIC SCHEMAS ---

class LiveStreamResponse(BaseModel):
    id: str
    channel_id: str
    video_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    stream_type: str
    scheduled_start_time: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    youtube_broadcast_id: Optional[str] = None
    youtube_stream_id: Optional[str] = None
    stream_key: Optional[str] = None
    stream_url: Optional[str] = None
    thumbnail_path: Optional[str] = None
    rtmp_url: Optional[str] = None
    status: str
    privacy_status: str
    created_at: datetime

    class Config:
        from_attributes = True


class StartStreamRequest(BaseModel):
    loop: bool = True


class TransitionRequest(BaseModel):
    status: Literal["testing", "live", "complete"]


# --- 2. ROUTER DEFINITION ---

router = APIRouter(
    prefix="/api/v1/live-streams",
    tags=["Live Streaming Operations"]
)


# --- 3. ENDPOINTS ---

@router.get("", response_model=List[LiveStreamResponse])
def list_live_streams(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return crud.get_live_streams(db, user_id)


@router.post("", response_model=LiveStreamResponse, status_code=status.HTTP_201_CREATED)
def create_live_stream(
        channel_id: str = Form(...),
        title: str = Form(...),
        scheduled_start_time: datetime = Form(...),
        description: str = Form(""),
        privacy: str = Form("private"),
        stream_type: str = Form("rtmp"),
        video_id: Optional[str] = Form(None),
        tags: Optional[str] = Form(None),
        thumbnail: Optional[UploadFile] = File(None),
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db)
):
    """Creates the YouTube broadcast and ingestion stream, binds them and stores the result."""
    title = title.strip()
    if not title or len(title) > 100:
        raise HTTPException(status_code=400, detail="Title must be between 1 and 100 characters")
    if len(description) > 5000:
        raise HTTPException(status_code=400, detail="Description must be at most 5000 characters")
    if privacy not in PRIVACY_STATUSES:
        raise HTTPException(status_code=400, detail=f"Privacy must be one of {', '.join(PRIVACY_STATUSES)}")
    if thumbnail is not None and thumbnail.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Invalid thumbnail type. Only image files are allowed.")
    parsed_tags = parse_tags_field(tags)

    thumbnail_name = None
    if thumbnail is not None:
        thumbnail_name, _ = save_upload(thumbnail.file, thumbnail.filename, "thumbnail")

    logger.info(f"📡 Provisioning live stream '{title}' for user {user_id}")
    try:
        return publisher_manager.create_live_stream(
            db, user_id, channel_id, title, description, scheduled_start_time,
            privacy=privacy, stream_type=stream_type, video_id=video_id or None,
            tags=parsed_tags, thumbnail_path=thumbnail_name,
        )
    except PublisherError:
        if thumbnail_name:
            delete_uploaded_file(thumbnail_name)
        raise


@router.get("/{stream_id}", response_model=LiveStreamResponse)
def get_live_stream(stream_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return publisher_manager.get_live_stream(db, user_id, stream_id)


@router.post("/{stream_id}/start")
def start_live_stream(stream_id: str, payload: Optional[StartStreamRequest] = None,
                      user_id: str = Depends(get_current_user_id),
                      db: Session = Depends(get_db),
                      supervisor: StreamSupervisor = Depends(get_supervisor)):
    loop = payload.loop if payload else True
    result = publisher_manager.start_live_stream(db, supervisor, user_id, stream_id, loop=loop)
    return {"message": "Video stream started successfully", **result}


@router.post("/{stream_id}/stop")
def stop_live_stream(stream_id: str, user_id: str = Depends(get_current_user_id),
                     db: Session = Depends(get_db),
                     supervisor: StreamSupervisor = Depends(get_supervisor)):
    return publisher_manager.stop_live_stream(db, supervisor, user_id, stream_id)


@router.post("/{stream_id}/transition", response_model=LiveStreamResponse)
def transition_live_stream(stream_id: str, payload: TransitionRequest,
                           user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return publisher_manager.transition_live_stream(db, user_id, stream_id, payload.status)


@router.get("/{stream_id}/status")
def get_stream_status(stream_id: str, user_id: str = Depends(get_current_user_id),
                      db: Session = Depends(get_db),
                      supervisor: StreamSupervisor = Depends(get_supervisor)):
    return publisher_manager.get_stream_status(db, supervisor, user_id, stream_id)


@router.delete("/{stream_id}")
def delete_live_stream(stream_id: str, user_id: str = Depends(get_current_user_id),
                       db: Session = Depends(get_db),
                       supervisor: StreamSupervisor = Depends(get_supervisor)):
    return publisher_manager.delete_live_stream(db, supervisor, user_id, stream_id)
