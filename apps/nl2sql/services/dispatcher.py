"""
Execution dispatcher. Routes ApprovedSQL to the connector for a data source kind, under a deadline.

Only ApprovedSQL is accepted; raw strings never reach a connection.
On deadline: connector.cancel(), then DeadlineExceededError. Other connector failures -> ConnectorError.
"""

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from pydantic import BaseModel

from apps.nl2sql.config import Settings, get_settings
from apps.nl2sql.services.connectors import (
    CONFIG_TYPES,
    Connector,
    TabularResult,
    create_connector,
    normalize_kind,
)
from apps.nl2sql.services.deadline import Deadline, wait_for
from apps.nl2sql.services.errors import (
    ConnectorError,
    DeadlineExceededError,
    NL2SQLError,
    UnsupportedDataSourceError,
)
from apps.nl2sql.services.sql_gate import ApprovedSQL

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[str, Any], Connector]

_executor: ThreadPoolExecutor | None = None


def _default_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="dispatch")
    return _executor


def _run(connector: Connector, sql: str, timeout: float | None) -> TabularResult:
    connector.connect()
    try:
        return connector.execute(sql, timeout)
    finally:
        connector.close()


class ExecutionDispatcher:
    def __init__(
        self,
        connector_factory: ConnectorFactory = create_connector,
        executor: ThreadPoolExecutor | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.connector_factory = connector_factory
        self.executor = executor or _default_executor()
        self.default_deadline_seconds = (settings or get_settings()).EXECUTION_DEADLINE_SECONDS

    @staticmethod
    def supports(kind: str) -> bool:
        return normalize_kind(kind) in CONFIG_TYPES

    def connector_for(self, kind: str, config: dict[str, Any] | BaseModel | None) -> Connector:
        if not self.supports(kind):
            raise UnsupportedDataSourceError(f"unsupported data source type: {kind}")
        return self.connector_factory(normalize_kind(kind), config)

    def execute(
        self,
        kind: str,
        config: dict[str, Any] | BaseModel | None,
        approved: ApprovedSQL,
        deadline: Deadline | None = None,
    ) -> TabularResult:
        if not isinstance(approved, ApprovedSQL):
            raise TypeError(f"dispatcher requires ApprovedSQL, got {type(approved).__name__}")
        connector = self.connector_for(kind, config)
        deadline = deadline or Deadline(self.default_deadline_seconds)

        def _cancel() -> None:
            try:
                connector.cancel()
            except Exception as e:
                logger.warning("Cancel failed for %s connector: %s", kind, e)

        fut = self.executor.submit(_run, connector, approved.sql, deadline.remaining())
        try:
            return wait_for(fut, deadline, "query execution", on_timeout=_cancel)
        except (DeadlineExceededError, ConnectorError):
            logger.error("Query execution on %s failed", kind, exc_info=True)
            raise
        except NL2SQLError:
            raise
        except Exception as e:
            logger.error("Query execution on %s failed: %s", kind, e)
            raise ConnectorError(f"query execution failed: {e}") from e


def get_dispatcher() -> ExecutionDispatcher:
    return ExecutionDispatcher()
