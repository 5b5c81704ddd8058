"""
Dual Survey Engine - Internal API Key Check

Every endpoint is admin/internal. Identity and role gating live upstream;
this service only checks the shared internal key.
"""
from fastapi import Header, HTTPException

from .config import INTERNAL_API_KEY


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for admin and scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True
