# services/errors.py
"""
Error taxonomy shared by the orchestrator, the token manager, the YouTube
adapter and the stream supervisor.

Every error carries a human-readable message and the HTTP status the API layer
answers with. Nothing here knows about FastAPI.
"""


class PublisherError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# --- Authorization / lookup ---

class NotFoundError(PublisherError):
    status_code = 404


class AuthorizationError(PublisherError):
    status_code = 403


# --- Preconditions (always raised before any external call) ---

class PreconditionError(PublisherError):
    status_code = 400


class VideoFileMissing(PreconditionError):
    def __init__(self, message: str = "Video file not found"):
        super().__init__(message)


class PathValidationError(PreconditionError):
    pass


class CredentialsMissing(PreconditionError):
    def __init__(self, message: str = "YouTube API credentials not configured. Please add them in Settings first."):
        super().__init__(message)


class ReauthRequired(PreconditionError):
    def __init__(self, message: str = "YouTube access token expired and no refresh token available. Please reconnect the channel."):
        super().__init__(message)


class PremiereTooSoon(PreconditionError):
    pass


class AlreadyRunning(PreconditionError):
    status_code = 409

    def __init__(self, message: str = "Stream is already running"):
        super().__init__(message)


class NotRunning(PreconditionError):
    def __init__(self, message: str = "Stream is not currently running"):
        super().__init__(message)


# --- Process level ---

class StreamLaunchError(PublisherError):
    status_code = 500


# --- External platform ---

class PlatformError(PublisherError):
    """A YouTube API call failed. The platform's message is kept verbatim."""

    status_code = 502

    def __init__(self, message: str, http_status: int = None, reason: str = None):
        super().__init__(message)
        self.http_status = http_status
        self.reason = reason


class LiveStreamingNotEnabled(PlatformError):
    status_code = 403

    USER_MESSAGE = (
        "Your YouTube channel is not enabled for live streaming. Please enable it in "
        "YouTube Studio first (may take up to 24 hours after verification)."
    )
