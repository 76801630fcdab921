"""FastAPI application entry point."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO)

from apps.nl2sql.config import get_settings
from apps.nl2sql.db import ensure_tables
from apps.nl2sql.routes import health, nl2sql, rag
from apps.nl2sql.services.auth import auth_middleware
from apps.nl2sql.services.errors import (
    DeadlineExceededError,
    InputError,
    NL2SQLError,
    NotFoundError,
    QueryDeletionError,
    QueryNotExecutableError,
    SQLRejectedError,
    UpstreamError,
)
from apps.nl2sql.services.owner_guard import UserRequiredError

logger = logging.getLogger(__name__)

# Most specific first: DeadlineExceededError is an UpstreamError, SQLGateError an InputError.
ERROR_STATUS: tuple[tuple[type[NL2SQLError], int], ...] = (
    (DeadlineExceededError, 504),
    (UpstreamError, 502),
    (SQLRejectedError, 422),
    (QueryNotExecutableError, 409),
    (NotFoundError, 404),
    (InputError, 400),
    (QueryDeletionError, 500),
)


def status_for(exc: NL2SQLError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Ensure tables exist on startup where Alembic does not own the schema."""
    ensure_tables()
    yield


app = FastAPI(
    title="NL2SQL API",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(NL2SQLError)
async def nl2sql_error_handler(request: Request, exc: NL2SQLError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    content: dict = {"detail": str(exc)}
    if isinstance(exc, SQLRejectedError) and exc.result is not None:
        content["validation"] = exc.result.model_dump()
    return JSONResponse(status_code=status, content=content)


@app.exception_handler(UserRequiredError)
async def user_required_handler(request: Request, exc: UserRequiredError) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": str(exc)})


# CORS: allow only configured origins (no wildcard). CORS_ALLOW_ORIGINS is comma-separated.
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(auth_middleware)

app.include_router(health.router, tags=["health"])
app.include_router(nl2sql.router, prefix="/nl2sql", tags=["nl2sql"])
app.include_router(rag.router, prefix="/rag", tags=["rag"])

if (os.getenv("ENV") or os.getenv("ENVIRONMENT") or "").lower() == "test":
    from apps.nl2sql.routes import debug

    app.include_router(debug.router, prefix="/debug", tags=["debug"])
