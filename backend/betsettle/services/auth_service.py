"""Owner identity for the HTTP surface.

Authentication happens upstream; the gateway forwards the authenticated
owner id in the `X-User-Id` header.
"""

from typing import Optional

from fastapi import Header, HTTPException, status


async def get_current_owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency: the owner id of the calling user."""
    owner_id = (x_user_id or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated.",
        )
    return owner_id
