# publishers/youtube.py
"""
Thin boundary around every YouTube Data/Live API call.

Each operation takes an access token (already validated by the token manager)
and returns plain dicts. HttpError is translated into PlatformError, or into
LiveStreamingNotEnabled when the channel cannot go live.
"""
import os
import time
import logging
import mimetypes
from datetime import datetime, timezone

import requests
from google.oauth2.credentials import Credentials
from google.auth.transport.requests import Request
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from services.errors import LiveStreamingNotEnabled, PlatformError, PreconditionError

logger = logging.getLogger("YouTube-API")

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"

YOUTUBE_SCOPES = [
    "https://www.googleapis.com/auth/youtube.readonly",
    "https://www.googleapis.com/auth/youtube.upload",
    "https://www.googleapis.com/auth/youtube.force-ssl",
]

BROADCAST_STATUSES = ("testing", "live", "complete")
RETRYABLE_STATUSES = (500, 502, 503, 504)
MAX_UPLOAD_RETRIES = 10


# --- OAUTH ---

def build_oauth_flow(client_id: str, client_secret: str, redirect_uri: str, code_verifier: str = None) -> Flow:
    """Creates an OAuth flow from the user's own Google Cloud client credentials."""
    client_config = {
        "web": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
            "redirect_uris": [redirect_uri],
        }
    }
    return Flow.from_client_config(
        client_config,
        scopes=YOUTUBE_SCOPES,
        redirect_uri=redirect_uri,
        code_verifier=code_verifier,
    )


def refresh_access_token(refresh_token: str, client_id: str, client_secret: str):
    """
    Exchanges a refresh token for a new access token.
    Returns (access_token, expiry) where expiry is a naive UTC datetime or None.
    Raises google.auth.exceptions.RefreshError when Google rejects the grant.
    """
    credentials = Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=TOKEN_URI,
        client_id=client_id,
        client_secret=client_secret,
    )
    credentials.refresh(Request())
    logger.info("Access token refreshed.")
    return credentials.token, credentials.expiry


def revoke_token(token: str) -> bool:
    """Revokes a token with Google. Best effort: failures are logged and reported as False."""
    try:
        response = requests.post(
            REVOKE_URI,
            params={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=10,
        )
        if response.status_code != 200:
            logger.warning(f"Token revocation returned {response.status_code}: {response.text}")
            return False
        return True
    except requests.RequestException as e:
        logger.error(f"Token revocation failed: {e}")
        return False


# --- SERVICE / ERRORS ---

def get_youtube_service(access_token: str):
    credentials = Credentials(token=access_token)
    return build("youtube", "v3", credentials=credentials, cache_discovery=False)


def _error_reasons(error: HttpError) -> list:
    details = getattr(error, "error_details", None)
    if not isinstance(details, list):
        return []
    return [d.get("reason") for d in details if isinstance(d, dict) and d.get("reason")]


def translate_http_error(error: HttpError) -> PlatformError:
    status = getattr(error.resp, "status", None)
    message = getattr(error, "reason", None) or str(error)
    reasons = _error_reasons(error)

    text = f"{message} {error}".lower()
    if "livestreamingnotenabled" in [r.lower() for r in reasons] or "not enabled for live streaming" in text:
        return LiveStreamingNotEnabled(message, http_status=status, reason="liveStreamingNotEnabled")

    return PlatformError(message, http_status=status, reason=reasons[0] if reasons else None)


def _execute(request, action: str):
    try:
        return request.execute()
    except HttpError as e:
        logger.error(f"❌ {action} failed: {e}")
        raise translate_http_error(e)


def _to_rfc3339(value) -> str:
    """Accepts a datetime (naive means UTC) or an ISO string; returns RFC 3339 in UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _guess_mimetype(path: str, default: str) -> str:
    return mimetypes.guess_type(path)[0] or default


# --- CHANNELS ---

def list_channels(access_token: str) -> list:
    """Returns the authenticated user's channels with snippet and statistics."""
    youtube = get_youtube_service(access_token)
    response = _execute(
        youtube.channels().list(part="snippet,statistics", mine=True),
        "Channel listing",
    )
    return response.get("items", [])


# --- VIDEOS ---

def _insert_video(youtube, video_path: str, body: dict) -> dict:
    """Resumable upload with retries on transient server errors."""
    if not os.path.exists(video_path):
        raise FileNotFoundError(f"Video file not found: {video_path}")

    media = MediaFileUpload(video_path, mimetype=_guess_mimetype(video_path, "video/mp4"), resumable=True)
    insert_request = youtube.videos().insert(
        part=",".join(body.keys()),
        body=body,
        media_body=media,
    )

    logger.info(f"Sending file to YouTube: {video_path}")
    response = None
    retry = 0

    while response is None:
        try:
            status, response = insert_request.next_chunk()
            if status:
                logger.debug(f"Uploading... {int(status.progress() * 100)}%")
        except HttpError as e:
            if e.resp.status in RETRYABLE_STATUSES and retry < MAX_UPLOAD_RETRIES:
                retry += 1
                logger.warning(f"Server error {e.resp.status}, retrying ({retry}/{MAX_UPLOAD_RETRIES})...")
                time.sleep(2 ** retry)
                continue
            logger.error(f"❌ Video upload failed: {e}")
            raise translate_http_error(e)

    if not response.get("id"):
        raise PlatformError("Upload failed: YouTube returned no video id")

    logger.info(f"✅ SUCCESS! YouTube Video ID: {response.get('id')}")
    return response


def upload_thumbnail(access_token: str, video_id: str, thumbnail_path: str) -> dict:
    youtube = get_youtube_service(access_token)
    media = MediaFileUpload(thumbnail_path, mimetype=_guess_mimetype(thumbnail_path, "image/jpeg"))
    return _execute(
        youtube.thumbnails().set(videoId=video_id, media_body=media),
        "Thumbnail upload",
    )


def _attach_thumbnail(access_token: str, video_id: str, thumbnail_path: str):
    # The video is already on YouTube at this point; a thumbnail failure must not undo it
    try:
        upload_thumbnail(access_token, video_id, thumbnail_path)
    except Exception as e:
        logger.error(f"Thumbnail upload failed for video {video_id}: {e}")


def _video_body(title, description, tags, status: dict) -> dict:
    snippet = {"title": title, "description": description or ""}
    if tags:
        snippet["tags"] = tags
    return {"snippet": snippet, "status": status}


def upload_video(access_token: str, video_path: str, title: str, description: str,
                 privacy: str = "private", tags: list = None, thumbnail_path: str = None) -> dict:
    """Uploads a video immediately. Returns the API's video resource."""
    logger.info(f"Starting YouTube upload process for: {title}")
    youtube = get_youtube_service(access_token)

    body = _video_body(title, description, tags, {"privacyStatus": privacy})
    response = _insert_video(youtube, video_path, body)

    if thumbnail_path:
        _attach_thumbnail(access_token, response["id"], thumbnail_path)
    return response


def schedule_upload(access_token: str, video_path: str, title: str, description: str,
                    scheduled_time, privacy: str = "private", tags: list = None,
                    thumbnail_path: str = None) -> dict:
    """
    Uploads a video that goes public at `scheduled_time`.

    YouTube only accepts publishAt on private videos, so the requested privacy is
    ignored and the upload is always private. The parameter exists so that
    scheduled and immediate uploads share one call signature.
    """
    publish_at = _to_rfc3339(scheduled_time)
    if privacy != "private":
        logger.info(f"Scheduled upload '{title}': privacy '{privacy}' overridden to 'private'")

    youtube = get_youtube_service(access_token)
    body = _video_body(title, description, tags, {
        "privacyStatus": "private",
        "publishAt": publish_at,
        "selfDeclaredMadeForKids": False,
    })
    response = _insert_video(youtube, video_path, body)

    if thumbnail_path:
        _attach_thumbnail(access_token, response["id"], thumbnail_path)
    return {"video_id": response["id"], "scheduled_time": publish_at}


def schedule_premiere(access_token: str, video_path: str, title: str, description: str,
                      scheduled_start_time, tags: list = None, thumbnail_path: str = None) -> dict:
    """
    YouTube has no premiere primitive: a private upload with a future publishAt
    is what the platform treats as a premiere.
    """
    result = schedule_upload(
        access_token, video_path, title, description, scheduled_start_time,
        privacy="private", tags=tags, thumbnail_path=thumbnail_path,
    )
    return {"video_id": result["video_id"], "scheduled_start_time": result["scheduled_time"]}


# --- LIVE ---

def create_broadcast(access_token: str, title: str, description: str,
                     scheduled_start_time, privacy: str = "private") -> dict:
    youtube = get_youtube_service(access_token)
    body = {
        "snippet": {
            "title": title,
            "description": description or "",
            "scheduledStartTime": _to_rfc3339(scheduled_start_time),
        },
        "status": {
            "privacyStatus": privacy,
            "selfDeclaredMadeForKids": False,
        },
        "contentDetails": {
            "enableAutoStart": True,
            "enableAutoStop": True,
        },
    }
    response = _execute(
        youtube.liveBroadcasts().insert(part="snippet,status,contentDetails", body=body),
        "Broadcast creation",
    )
    logger.info(f"Broadcast created: {response.get('id')}")
    return response


def create_ingestion_stream(access_token: str, title: str) -> dict:
    """
    Creates an RTMP ingestion endpoint (30fps / 1080p).
    Returns {"id", "ingestion_address", "stream_name", "raw"}.
    """
    youtube = get_youtube_service(access_token)
    body = {
        "snippet": {"title": title},
        "cdn": {
            "frameRate": "30fps",
            "ingestionType": "rtmp",
            "resolution": "1080p",
        },
    }
    response = _execute(
        youtube.liveStreams().insert(part="snippet,cdn", body=body),
        "Ingestion stream creation",
    )
    ingestion = response.get("cdn", {}).get("ingestionInfo", {})
    logger.info(f"Ingestion stream created: {response.get('id')}")
    return {
        "id": response.get("id"),
        "ingestion_address": ingestion.get("ingestionAddress"),
        "stream_name": ingestion.get("streamName"),
        "raw": response,
    }


def bind_broadcast_to_stream(access_token: str, broadcast_id: str, stream_id: str) -> dict:
    youtube = get_youtube_service(access_token)
    return _execute(
        youtube.liveBroadcasts().bind(part="id,snippet,status", id=broadcast_id, streamId=stream_id),
        "Broadcast binding",
    )


def transition_broadcast(access_token: str, broadcast_id: str, status: str) -> dict:
    if status not in BROADCAST_STATUSES:
        raise PreconditionError(f"Unsupported broadcast status: {status}")

    youtube = get_youtube_service(access_token)
    return _execute(
        youtube.liveBroadcasts().transition(part="id,status", broadcastStatus=status, id=broadcast_id),
        f"Broadcast transition to '{status}'",
    )


def delete_broadcast(access_token: str, broadcast_id: str):
    youtube = get_youtube_service(access_token)
    _execute(youtube.liveBroadcasts().delete(id=broadcast_id), "Broadcast deletion")
    logger.info(f"Broadcast deleted: {broadcast_id}")
