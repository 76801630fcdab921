"""Auth middleware: inject user_id from the Authorization header only.
User comes from Bearer user:<id> or a JWT sub / user_id claim.
Client-provided user_id in query/body/headers is ignored, except X-User-Debug
when ENV=test AND ENABLE_TEST_USER_HEADER=1 (testing only)."""

import logging
import os
import re

import jwt
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

# "Bearer user:42" or "Bearer user=alice"
BEARER_USER_PATTERN = re.compile(r"^Bearer\s+user[:=](.+)$", re.IGNORECASE)

EXEMPT_PATHS = frozenset({"/health"})


def _env() -> str:
    return (os.getenv("ENV") or os.getenv("ENVIRONMENT") or "").lower()


def _allow_user_debug_header() -> bool:
    """X-User-Debug only when ENV=test AND ENABLE_TEST_USER_HEADER=1."""
    if _env() != "test":
        return False
    return os.getenv("ENABLE_TEST_USER_HEADER", "").lower() in ("1", "true", "yes")


def _parse_user_from_jwt(token: str) -> str | None:
    """Decode the JWT and read user_id, falling back to sub.
    Signature is verified (HS256) when JWT_SECRET is set; otherwise decoded unverified."""
    secret = (os.getenv("JWT_SECRET") or "").strip()
    try:
        if secret:
            payload = jwt.decode(token, secret, algorithms=["HS256"])
        else:
            payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.debug("Rejected bearer token: %s", e)
        return None
    if not isinstance(payload, dict):
        return None
    uid = payload.get("user_id") or payload.get("sub")
    if uid is None:
        return None
    return str(uid).strip() or None


def _parse_user_from_debug_header(request: Request) -> str | None:
    if not _allow_user_debug_header():
        return None
    val = request.headers.get("X-User-Debug")
    if not val:
        return None
    return val.strip() or None


def extract_user_id(auth_header: str | None) -> str | None:
    """Parse user_id from an Authorization header value. None if missing or invalid."""
    if not auth_header or not auth_header.strip().lower().startswith("bearer "):
        return None
    header = auth_header.strip()
    m = BEARER_USER_PATTERN.match(header)
    if m:
        return m.group(1).strip() or None
    return _parse_user_from_jwt(header[7:].strip())


async def auth_middleware(request: Request, call_next):
    """Set request.state.user_id from the Authorization header. /health is exempt.
    Never reads user_id from query params or body."""

    if request.url.path.rstrip("/") in EXEMPT_PATHS:
        return await call_next(request)

    user_id = extract_user_id(request.headers.get("Authorization"))
    if user_id is None:
        user_id = _parse_user_from_debug_header(request)

    if not user_id:
        return JSONResponse(
            status_code=401,
            content={"detail": "Missing or invalid user. Use Authorization: Bearer user:<id> or JWT with sub/user_id claim"},
        )

    request.state.user_id = user_id
    return await call_next(request)
