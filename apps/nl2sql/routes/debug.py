"""Lightweight debug endpoints for testing. Enabled only when ENV=test.

No embeddings, connectors, or DB; used by auth tests to verify user injection.
"""

from fastapi import APIRouter

from apps.nl2sql.services.user_context import UserId

router = APIRouter()


@router.get("/user")
async def debug_user(user_id: UserId) -> dict:
    """Return user_id from auth. For testing only (ENV=test)."""
    return {"user_id": user_id}
