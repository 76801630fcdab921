"""Error taxonomy for the NL2SQL core. Routes map these to HTTP status codes in main.py."""


class NL2SQLError(Exception):
    """Base class for all expected failures raised by the NL2SQL services."""

    pass


class InputError(NL2SQLError, ValueError):
    """Empty query, missing field, malformed id. Raised before any side effect."""

    pass


class NotFoundError(NL2SQLError):
    """Resource missing or owned by another user. Never distinguishes the two."""

    pass


class QueryNotExecutableError(NL2SQLError):
    """Query record is not in a state that allows execution (failed, running, or can_execute=False)."""

    pass


class SQLGateError(InputError):
    """Limit enforcement or approval requested for SQL that is not a single SELECT."""

    pass


class SQLRejectedError(NL2SQLError):
    """SQL did not pass the execution gate. Carries the validation result."""

    def __init__(self, message: str, result=None) -> None:
        super().__init__(message)
        self.result = result


class UnsupportedDataSourceError(InputError):
    """No connector registered for the data source kind."""

    pass


class UpstreamError(NL2SQLError):
    """Embedding API, connector, or generator failure."""

    pass


class EmbeddingError(UpstreamError):
    pass


class ConnectorError(UpstreamError):
    pass


class ContextBuildError(UpstreamError):
    """A required sub-context (schema search) failed."""

    pass


class GenerationError(UpstreamError):
    pass


class DeadlineExceededError(UpstreamError):
    """Caller-supplied deadline elapsed before the external call finished."""

    pass


class QueryDeletionError(NL2SQLError):
    """Cascade delete of a query record and its results did not complete."""

    pass


__all__ = [
    "ConnectorError",
    "ContextBuildError",
    "DeadlineExceededError",
    "EmbeddingError",
    "GenerationError",
    "InputError",
    "NL2SQLError",
    "NotFoundError",
    "QueryDeletionError",
    "QueryNotExecutableError",
    "SQLGateError",
    "SQLRejectedError",
    "UnsupportedDataSourceError",
    "UpstreamError",
]
