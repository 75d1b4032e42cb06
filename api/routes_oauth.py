# api/routes_oauth.py
import os
import secrets
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from dotenv import load_dotenv

from api.deps import get_current_user_id, get_supervisor
from database import crud
from database.models import OAuthState
from database.session import get_db
from publishers import youtube
from services import publisher_manager
from services.stream_supervisor import StreamSupervisor
from services.token_manager import save_channel_tokens

# Load environment variables
load_dotenv()

logger = logging.getLogger("OAuth-API")

# Allow insecure transport for development (Ensure HTTPS in production)
if os.getenv("OAUTHLIB_INSECURE_TRANSPORT") is None:
    os.environ["OAUTHLIB_INSECURE_TRANSPORT"] = "1"
# Google may grant a superset of the requested scopes
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

router = APIRouter(
    prefix="/api/v1",
    tags=["OAuth Operations"]
)

# --- GLOBAL CONFIGURATION ---
BASE_URL = os.getenv("PUBLIC_URL") or os.getenv("DOMAIN_URL", "http://localhost:8000")
REDIRECT_URI = f"{BASE_URL}/api/v1/oauth/callback"
STATE_TTL = timedelta(minutes=15)


# --- PYDANTIC SCHEMAS ---

class CredentialsIn(BaseModel):
    client_id: str = Field(..., min_length=1, description="Google OAuth client id")
    client_secret: str = Field(..., min_length=1, description="Google OAuth client secret")


class CredentialsOut(BaseModel):
    has_credentials: bool
    client_id: Optional[str] = None
    client_secret_masked: Optional[str] = None
    updated_at: Optional[datetime] = None


class ChannelResponse(BaseModel):
    id: str
    channel_id: str
    channel_title: str
    channel_description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    subscriber_count: Optional[str] = None
    video_count: Optional[str] = None
    is_connected: bool
    created_at: datetime

    class Config:
        from_attributes = True


def _masked(creds) -> CredentialsOut:
    return CredentialsOut(
        has_credentials=True,
        client_id=creds.client_id,
        client_secret_masked="••••••••",
        updated_at=creds.updated_at,
    )


# --- CREDENTIALS ---

@router.get("/youtube/credentials", response_model=CredentialsOut)
def get_credentials(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    creds = crud.get_credentials(db, user_id)
    if not creds:
        return CredentialsOut(has_credentials=False)
    return _masked(creds)


@router.post("/youtube/credentials", response_model=CredentialsOut)
def save_credentials(payload: CredentialsIn, user_id: str = Depends(get_current_user_id),
                     db: Session = Depends(get_db)):
    creds = crud.upsert_credentials(db, user_id, payload.client_id, payload.client_secret)
    logger.info(f"💾 Saved YouTube API credentials for user {user_id}")
    return _masked(creds)


@router.delete("/youtube/credentials")
def delete_credentials(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    creds = crud.get_credentials(db, user_id)
    if creds:
        db.delete(creds)
        db.commit()
    return {"message": "Credentials deleted successfully"}


# --- OAUTH FLOW ---

@router.get("/oauth/url")
def get_oauth_url(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """
    Builds the Google consent URL with the user's own client credentials.
    """
    creds = crud.get_credentials(db, user_id)
    if not creds:
        raise HTTPException(status_code=400, detail="Please configure your YouTube API credentials in Settings first")

    state = secrets.token_hex(32)
    flow = youtube.build_oauth_flow(creds.client_id, creds.client_secret, REDIRECT_URI)
    authorization_url, _ = flow.authorization_url(
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",
        state=state,
    )

    db.add(OAuthState(state=state, user_id=user_id, code_verifier=flow.code_verifier))
    db.commit()

    logger.info(f"🟢 Initializing YouTube login for user: {user_id}")
    return {"auth_url": authorization_url}


@router.get("/oauth/callback")
def oauth_callback(code: str = None, state: str = None, error: str = None, db: Session = Depends(get_db)):
    """
    Handles Google's redirect: exchanges the code for tokens and stores every
    channel the account owns, each with its own token row.
    """
    if error:
        logger.error(f"❌ YouTube OAuth Error: {error}")
        return RedirectResponse("/?error=oauth_failed")

    if not code or not state:
        return RedirectResponse("/?error=oauth_failed")

    pending = db.query(OAuthState).filter_by(state=state).first()
    if not pending or pending.created_at < datetime.utcnow() - STATE_TTL:
        return RedirectResponse("/?error=invalid_state")

    user_id = pending.user_id
    code_verifier = pending.code_verifier
    # One-time use
    db.delete(pending)
    db.commit()

    creds = crud.get_credentials(db, user_id)
    if not creds:
        return RedirectResponse("/settings?error=missing_credentials")

    try:
        flow = youtube.build_oauth_flow(creds.client_id, creds.client_secret, REDIRECT_URI, code_verifier=code_verifier)
        flow.fetch_token(code=code)
        credentials = flow.credentials

        channels = youtube.list_channels(credentials.token)
        for channel_data in channels:
            save_channel_tokens(db, user_id, channel_data, credentials)
    except Exception as e:
        db.rollback()
        logger.error(f"OAuth callback error: {e}")
        return RedirectResponse("/?error=oauth_failed")

    logger.info(f"🎉 YouTube linking complete for user {user_id} ({len(channels)} channel(s))")
    return RedirectResponse("/channels?success=true")


# --- CHANNELS ---

@router.get("/youtube/channels", response_model=List[ChannelResponse])
def list_channels(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return crud.get_channels(db, user_id)


@router.delete("/youtube/channels/{channel_id}")
def remove_channel(channel_id: str, user_id: str = Depends(get_current_user_id),
                   db: Session = Depends(get_db),
                   supervisor: StreamSupervisor = Depends(get_supervisor)):
    return publisher_manager.disconnect_channel(db, supervisor, user_id, channel_id)
