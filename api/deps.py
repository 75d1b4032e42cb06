# api/deps.py
import json
from typing import List, Optional
from fastapi import Header, HTTPException, Request

from services.stream_supervisor import StreamSupervisor


def get_current_user_id(x_user_id: str = Header(None)) -> str:
    """
    The upstream session layer authenticates the caller and forwards its id in
    the X-User-Id header.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


def get_supervisor(request: Request) -> StreamSupervisor:
    """The single StreamSupervisor created in main.py's lifespan."""
    return request.app.state.supervisor


def parse_tags_field(tags: Optional[str]) -> List[str]:
    """Multipart forms carry tags as a JSON-encoded list of strings."""
    if not tags:
        return []
    try:
        parsed = json.loads(tags)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid tags format")
    if not isinstance(parsed, list) or len(parsed) > 10 or any(
            not isinstance(t, str) or len(t) > 50 for t in parsed):
        raise HTTPException(status_code=400, detail="Tags must be a list of at most 10 strings of 50 characters")
    return parsed
