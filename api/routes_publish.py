# api/routes_publish.py
import logging
from datetime import datetime
from typing import Dict, List, Literal, Optional
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.deps import get_current_user_id, parse_tags_field
from database import crud
from database.models import Video
from database.session import get_db
from services import publisher_manager
from storage.uploads import ALLOWED_IMAGE_TYPES, ALLOWED_VIDEO_TYPES, format_file_size, save_upload

logger = logging.getLogger("Publish-API")

Privacy = Literal["private", "public", "unlisted"]


# --- 1. PYDANTIC SCHEMAS ---

class VideoResponse(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    file_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    file_size: Optional[str] = None
    status: str
    published_channels: Optional[List[str]] = None
    youtube_video_id: Optional[str] = None
    youtube_video_ids: Optional[Dict[str, str]] = None
    premiere_scheduled_time: Optional[datetime] = None
    premiere_channel_id: Optional[str] = None
    premiere_status: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PublishRequest(BaseModel):
    channel_ids: List[str] = Field(..., min_length=1, description="Connected channel ids to publish to")
    privacy: Privacy = Field(default="private", description="Ignored (forced private) when scheduled_time is set")
    scheduled_time: Optional[datetime] = Field(default=None, description="Publish time; omit to publish now")


class ChannelOutcomeResponse(BaseModel):
    channel_id: str
    succeeded: bool
    youtube_video_id: Optional[str] = None
    error: Optional[str] = None


class PublishResponse(BaseModel):
    message: str
    published_channels: List[str]
    youtube_video_ids: Dict[str, str]
    outcomes: List[ChannelOutcomeResponse]


class PremiereRequest(BaseModel):
    channel_id: str
    scheduled_time: datetime


# --- 2. ROUTER DEFINITION ---

router = APIRouter(
    prefix="/api/v1/videos",
    tags=["Publishing Operations"]
)


# --- 3. ENDPOINTS ---

@router.get("", response_model=List[VideoResponse])
def list_videos(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return crud.get_videos(db, user_id)


@router.post("/upload", response_model=VideoResponse, status_code=status.HTTP_201_CREATED)
def upload_video(
        video: UploadFile = File(...),
        thumbnail: Optional[UploadFile] = File(None),
        title: Optional[str] = Form(None),
        description: str = Form(""),
        tags: Optional[str] = Form(None),
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db)
):
    """Stores the uploaded file (and optional thumbnail) and creates a draft video."""
    if video.content_type not in ALLOWED_VIDEO_TYPES:
        raise HTTPException(status_code=400, detail="Invalid file type. Only video files are allowed.")
    if thumbnail is not None and thumbnail.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Invalid thumbnail type. Only image files are allowed.")

    parsed_tags = parse_tags_field(tags)

    title = (title or video.filename or "").strip()
    if not title or len(title) > 100:
        raise HTTPException(status_code=400, detail="Title must be between 1 and 100 characters")
    if len(description) > 5000:
        raise HTTPException(status_code=400, detail="Description must be at most 5000 characters")

    filename, size = save_upload(video.file, video.filename, "video")
    thumbnail_name = None
    if thumbnail is not None:
        thumbnail_name, _ = save_upload(thumbnail.file, thumbnail.filename, "thumbnail")

    new_video = Video(
        user_id=user_id,
        title=title,
        description=description,
        tags=parsed_tags,
        file_path=filename,
        thumbnail_path=thumbnail_name,
        file_size=format_file_size(size),
        status="draft",
    )
    db.add(new_video)
    db.commit()
    db.refresh(new_video)
    logger.info(f"[Upload] ✅ Draft video {new_video.id} created for user {user_id}")
    return new_video


@router.post("/{video_id}/publish", response_model=PublishResponse)
def publish_video(video_id: str, payload: PublishRequest, user_id: str = Depends(get_current_user_id),
                  db: Session = Depends(get_db)):
    result = publisher_manager.publish_video(
        db, user_id, video_id, payload.channel_ids,
        privacy=payload.privacy, scheduled_time=payload.scheduled_time,
    )

    if not result.published_channels:
        raise HTTPException(status_code=502, detail="Video could not be published to any channel")

    return PublishResponse(
        message="Video published successfully",
        published_channels=result.published_channels,
        youtube_video_ids=result.youtube_video_ids,
        outcomes=[ChannelOutcomeResponse(**vars(o)) for o in result.outcomes],
    )


@router.post("/{video_id}/premiere")
def schedule_premiere(video_id: str, payload: PremiereRequest, user_id: str = Depends(get_current_user_id),
                      db: Session = Depends(get_db)):
    result = publisher_manager.schedule_premiere(db, user_id, video_id, payload.channel_id, payload.scheduled_time)
    return {"message": "Premiere scheduled successfully", **result}


@router.delete("/{video_id}")
def delete_video(video_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return publisher_manager.delete_video(db, user_id, video_id)
