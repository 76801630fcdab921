"""Server-side user context injection.

User is taken from auth (Authorization header: Bearer user:<id> or JWT sub/user_id claim).
Client-provided user_id in query/body is rejected by the request schemas.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request


def get_user_id(request: Request) -> str:
    """FastAPI dependency: user_id from request.state (set by auth middleware). 401 if missing."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id or not str(user_id).strip():
        raise HTTPException(status_code=401, detail="User ID required")
    return str(user_id).strip()


UserId = Annotated[str, Depends(get_user_id)]
