# services/token_manager.py
import os
import logging
from datetime import datetime, timedelta
from google.auth.exceptions import RefreshError
from sqlalchemy.orm import Session
from dotenv import load_dotenv

from database import crud
from database.models import Channel, Token
from publishers import youtube
from services.errors import CredentialsMissing, NotFoundError, ReauthRequired

load_dotenv()
logger = logging.getLogger("Token-Manager")

# 0 keeps the exact `expires_at <= now` comparison
TOKEN_EXPIRY_SKEW_SECONDS = int(os.getenv("TOKEN_EXPIRY_SKEW_SECONDS", "0"))


def is_token_expired(token: Token, now: datetime = None) -> bool:
    """A token without an expiry timestamp never counts as expired."""
    if token.expires_at is None:
        return False
    now = now or datetime.utcnow()
    return token.expires_at <= now + timedelta(seconds=TOKEN_EXPIRY_SKEW_SECONDS)


def get_valid_access_token(db: Session, channel_id: str) -> str:
    """
    Returns a usable access token for the channel, refreshing it when expired.

    The refreshed token and its expiry are committed before returning, so later
    calls in this or any other request see the new token.

    Raises:
        NotFoundError: the channel does not exist
        ReauthRequired: no token, no refresh token, or Google rejected the refresh
        CredentialsMissing: the owner never configured OAuth client credentials
    """
    channel = crud.get_channel(db, channel_id)
    if not channel:
        raise NotFoundError(f"Channel {channel_id} not found")

    token = crud.get_token(db, channel_id)
    if not token:
        raise ReauthRequired("Channel not authenticated. Please reconnect the channel.")

    if not is_token_expired(token):
        return token.access_token

    if not token.refresh_token:
        logger.warning(f"No refresh token for channel {channel_id}")
        raise ReauthRequired()

    credentials = crud.get_credentials(db, channel.user_id)
    if not credentials:
        raise CredentialsMissing()

    logger.info(f"Access token expired for channel {channel_id}. Refreshing...")
    try:
        access_token, expiry = youtube.refresh_access_token(
            token.refresh_token, credentials.client_id, credentials.client_secret
        )
    except RefreshError as e:
        logger.error(f"Token refresh rejected for channel {channel_id}: {e}")
        raise ReauthRequired("YouTube rejected the stored refresh token. Please reconnect the channel.")

    token.access_token = access_token
    token.expires_at = expiry
    db.commit()
    logger.info(f"💾 Refreshed token persisted for channel {channel_id}")
    return access_token


def save_channel_tokens(db: Session, user_id: str, channel_data: dict, oauth_credentials) -> Channel:
    """
    Upserts a connected channel and its token from an OAuth callback.
    `channel_data` is a channels.list item; `oauth_credentials` is the flow's
    google.oauth2.credentials.Credentials.
    """
    snippet = channel_data.get("snippet", {})
    statistics = channel_data.get("statistics", {})

    channel = db.query(Channel).filter_by(user_id=user_id, channel_id=channel_data["id"]).first()
    if not channel:
        channel = Channel(user_id=user_id, channel_id=channel_data["id"])
        db.add(channel)

    channel.channel_title = snippet.get("title") or "Untitled Channel"
    channel.channel_description = snippet.get("description")
    channel.thumbnail_url = snippet.get("thumbnails", {}).get("default", {}).get("url")
    channel.subscriber_count = statistics.get("subscriberCount")
    channel.video_count = statistics.get("videoCount")
    channel.is_connected = True
    db.flush()

    scopes = oauth_credentials.scopes or []
    token = crud.get_token(db, channel.id)
    if not token:
        token = Token(channel_id=channel.id, access_token=oauth_credentials.token)
        db.add(token)

    token.access_token = oauth_credentials.token
    # Keep the old refresh token when Google does not resend one
    if oauth_credentials.refresh_token:
        token.refresh_token = oauth_credentials.refresh_token
    token.expires_at = oauth_credentials.expiry
    token.scope = " ".join(scopes)

    db.commit()
    logger.info(f"💾 Saved channel '{channel.channel_title}' for user {user_id}")
    return channel


def disconnect_channel(db: Session, user_id: str, channel_id: str):
    """Revokes the channel's token with Google (best effort) and deletes the channel and its token."""
    channel = crud.get_user_channel(db, user_id, channel_id)
    if not channel:
        raise NotFoundError("Channel not found")

    token = crud.get_token(db, channel.id)
    if token:
        # Revoking the refresh token also revokes every access token issued from it
        youtube.revoke_token(token.refresh_token or token.access_token)

    db.delete(channel)
    db.commit()
    logger.info(f"🗑️ Channel {channel_id} disconnected for user {user_id}")
