"""Health check endpoint. No auth required."""

import os
from datetime import datetime, timezone

from fastapi import APIRouter

from apps.nl2sql.config import get_settings
from apps.nl2sql.schemas.health import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Returns ok, version (GIT_SHA or dev), current time (ISO), SQL dialect and index backend."""
    version = os.getenv("GIT_SHA", "dev").strip() or "dev"
    return HealthResponse(
        ok=True,
        version=version,
        time=datetime.now(timezone.utc).isoformat(),
        sql_dialect=get_settings().SQL_DIALECT,
        similarity_index=(os.getenv("SIMILARITY_INDEX") or "pgvector").strip().lower(),
    )
