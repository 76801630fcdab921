"""Owner-scoped query choke point. All user-facing repo methods must use require_user_id and owner_where."""

from apps.nl2sql.repositories.owner_filters import owner_where


class UserRequiredError(ValueError):
    """Raised when user_id is None or empty."""

    pass


def require_user_id(user_id: str | None) -> str:
    """
    Validate user_id; return stripped value. Raises UserRequiredError if missing/empty.
    Call at start of every owner-scoped repo method.
    """
    if not user_id or not str(user_id).strip():
        raise UserRequiredError("user_id is required and must be non-empty")
    return str(user_id).strip()


__all__ = ["UserRequiredError", "owner_where", "require_user_id"]
