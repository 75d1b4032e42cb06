# storage/uploads.py
import os
import random
import shutil
import time
import logging
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger("Storage")

# Root directory for uploaded videos and thumbnails
UPLOAD_DIR = os.path.abspath(os.getenv("UPLOAD_DIR", "uploads"))

ALLOWED_VIDEO_TYPES = {"video/mp4", "video/mpeg", "video/quicktime", "video/x-msvideo", "video/x-matroska"}
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}


def get_upload_path(file_path: str, upload_dir: str = None) -> str:
    """Absolute paths are returned as-is; bare filenames resolve under the upload directory."""
    if os.path.isabs(file_path):
        return file_path
    return os.path.join(upload_dir or UPLOAD_DIR, file_path)


def save_upload(file_obj, original_name: str, fieldname: str, upload_dir: str = None) -> tuple:
    """
    Copies an incoming upload stream into the upload directory under a unique name.
    Returns (filename, size_in_bytes).
    """
    target_dir = upload_dir or UPLOAD_DIR
    os.makedirs(target_dir, exist_ok=True)

    extension = os.path.splitext(original_name or "")[1]
    filename = f"{fieldname}-{int(time.time() * 1000)}-{random.randint(0, 10**9)}{extension}"
    destination = os.path.join(target_dir, filename)

    with open(destination, "wb") as buffer:
        shutil.copyfileobj(file_obj, buffer)

    size = os.path.getsize(destination)
    logger.info(f"[Upload] Stored {original_name} as {filename} ({size} bytes)")
    return filename, size


def format_file_size(size_in_bytes: int) -> str:
    return f"{size_in_bytes / (1024 * 1024):.2f} MB"


def delete_uploaded_file(file_path: str, upload_dir: str = None) -> bool:
    """Deletes an uploaded file once it is published. Failures are logged, never raised."""
    full_path = get_upload_path(file_path, upload_dir)
    try:
        os.remove(full_path)
        logger.info(f"[Cleanup] Deleted uploaded file: {full_path}")
        return True
    except OSError as e:
        logger.error(f"[Cleanup] Could not delete uploaded file {full_path}: {e}")
        return False
